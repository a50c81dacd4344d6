"""CLI entry point for loan-auditor."""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table as RichTable

from loan_auditor import SOURCE_FILE_FIELD, __version__
from loan_auditor.io import write_json
from loan_auditor.models import AuditFilter, AuditManifest, IngestReport
from loan_auditor.pipeline import AuditView
from loan_auditor.report import write_audit_report
from loan_auditor.state import AddFilter, AuditSession, Configure, SetQuery
from loan_auditor.utils import sha256_file, utcnow_iso

app = typer.Typer(
    name="loan-audit",
    help="loan-auditor — Trace field-level changes of a loan across spreadsheet snapshots.",
    add_completion=False,
    no_args_is_help=True,
)
console = Console()
logger = logging.getLogger("loan_auditor")

MANIFEST_NAME = "audit_manifest.json"
_MAX_VALUE_WIDTH = 40


class ModeOption(str, Enum):
    summary = "summary"
    full = "full"


class ColumnOrderOption(str, Enum):
    discovery = "discovery"
    alphabetical = "alphabetical"


class GroupKeyOption(str, Enum):
    exact = "exact"
    normalized = "normalized"


def _noop(*_args: object, **_kwargs: object) -> None:
    return None


def _printer(quiet: bool) -> Callable[..., None]:
    return _noop if quiet else console.print


def _err(msg: str) -> None:
    console.print(f"[red]x[/red] {escape(msg)}")


def _configure_logging(verbose: bool) -> None:
    if not any(isinstance(h, RichHandler) for h in logger.handlers):
        logger.addHandler(RichHandler(console=console, show_path=False))
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)


# ── Helpers ──────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"loan-auditor v{__version__}")
        raise typer.Exit()


def _parse_filters(raw: list[str] | None) -> list[AuditFilter]:
    """Parse ``--filter column=values`` pairs into filters."""
    if not raw:
        return []
    filters: list[AuditFilter] = []
    for item in raw:
        if "=" not in item:
            raise ValueError(f"Invalid --filter value: {item!r}  (expected column=values)")
        column, value = item.split("=", 1)
        if not column.strip():
            raise ValueError("--filter entries must name a column (column=values)")
        filters.append(AuditFilter.new(column=column.strip(), value=value))
    return filters


def _load_filters_file(path: Path | None) -> list[str]:
    """Return list of ``column=values`` strings from a filters file."""
    if not path:
        return []
    if not path.exists():
        raise ValueError(f"Filters file not found: {path} (expected lines like Status=Open,Pending)")
    if path.is_dir():
        raise ValueError(f"Filters file is a directory, not a file: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ValueError(f"Cannot read filters file {path}: {exc}") from exc

    lines: list[str] = []
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        lines.append(stripped)
    return lines


def _input_entries(paths: list[Path], report: IngestReport) -> list[dict[str, object]]:
    failed = {failure.path for failure in report.failures}
    loaded = [path for path in paths if str(path) not in failed]
    entries: list[dict[str, object]] = []
    for path, source in zip(loaded, report.files):
        sha256 = ""
        try:
            sha256 = sha256_file(path)
        except OSError:
            pass
        entries.append({"name": source.name, "rows": source.row_count, "sha256": sha256})
    return entries


def _write_manifest(
    out_dir: Path,
    *,
    created_at: str,
    paths: list[Path],
    report: IngestReport,
    query: str,
    filters: list[AuditFilter],
    mode: ModeOption,
    view: AuditView | None = None,
    report_path: Path | None = None,
    status: str = "success",
    error_message: str = "",
) -> Path:
    manifest = AuditManifest(
        version=__version__,
        created_at_utc=created_at,
        inputs=_input_entries(paths, report),
        failures=[failure.to_dict() for failure in report.failures],
        identifier_column=view.identifier if view else None,
        query=query,
        filters=AuditManifest.describe_filters(filters),
        mode=mode.value,
        rows_in=view.rows_in if view else 0,
        rows_matched=view.rows_matched if view else 0,
        report_path=str(report_path.resolve()) if report_path else "",
        status=status,
        error_message=error_message,
    )
    return write_json(out_dir / MANIFEST_NAME, manifest.to_dict())


def _print_failures(report: IngestReport) -> None:
    for failure in report.failures:
        console.print(f"  [yellow]![/yellow] {escape(failure.name)}: {escape(failure.message)}")


def _cell_text(value: object) -> str:
    text = "" if value is None else str(value)
    if len(text) > _MAX_VALUE_WIDTH:
        text = text[: _MAX_VALUE_WIDTH - 1] + "…"
    return escape(text)


def _timeline_table(view: AuditView) -> RichTable:
    tbl = RichTable(title="Change Timeline", show_lines=False)
    key_columns = {SOURCE_FILE_FIELD, view.identifier}
    for column in view.columns:
        tbl.add_column(escape(column), style="dim italic" if column in key_columns else None)
    for result in view.results:
        cells = []
        for column in view.columns:
            text = _cell_text(result.row.get(column, ""))
            if column in result.changes:
                text = f"[bold black on yellow]{text}[/bold black on yellow]"
            cells.append(text)
        tbl.add_row(*cells)
    return tbl


# ── Callbacks ────────────────────────────────────────────────────


@app.callback()
def main(
    version: bool | None = typer.Option(
        None, "--version", "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """loan-auditor CLI."""


# ── audit command ────────────────────────────────────────────────


@app.command()
def audit(
    inputs: list[Path] = typer.Option(
        ..., "--input", "-i",
        help="Snapshot file (CSV or XLSX); repeat in load order.",
    ),
    query: str = typer.Option(
        "", "--query", "-s",
        help="Loan identifier(s) to trace, comma-separated. Empty matches every row.",
    ),
    filter_args: list[str] | None = typer.Option(
        None, "--filter", "-f",
        help="Secondary filter: column=values (comma-separated). E.g. --filter Status=Open,Pending",
    ),
    filters_file: Path | None = typer.Option(
        None, "--filters-file",
        help="File of secondary filters (column=values lines).",
    ),
    id_column: str | None = typer.Option(
        None, "--id-column",
        help="Column identifying a loan (default: auto-detect 'Loan #' / 'Loan Number').",
    ),
    mode: ModeOption = typer.Option(
        ModeOption.summary, "--mode",
        help="summary: file + identifier + changed columns; full: every column.",
    ),
    column_order: ColumnOrderOption = typer.Option(
        ColumnOrderOption.discovery, "--column-order",
        help="Column order for full mode: discovery or alphabetical.",
    ),
    group_key: GroupKeyOption = typer.Option(
        GroupKeyOption.exact, "--group-key",
        help="Identifier equality for grouping: exact or normalized (trimmed, case-folded).",
    ),
    out_dir: Path = typer.Option(
        Path("output"), "--out-dir", "-o",
        help="Output directory for report + manifest.",
    ),
    export: bool = typer.Option(
        True, "--export/--no-export",
        help="Write the Excel audit report.",
    ),
    delimiter: str | None = typer.Option(
        None, "--delimiter",
        help="CSV delimiter (default: sniffed).",
    ),
    quiet: bool = typer.Option(
        False, "--quiet", "-q",
        help="Suppress informational output; still writes all artifacts.",
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v",
        help="Log debug details.",
    ),
) -> None:
    """Trace a loan across snapshot files and export its change timeline."""
    _configure_logging(verbose)
    echo = _printer(quiet)
    created_at = utcnow_iso()
    out_dir.mkdir(parents=True, exist_ok=True)
    empty = IngestReport()

    try:
        filters = _parse_filters(_load_filters_file(filters_file) + (filter_args or []))
    except ValueError as exc:
        manifest_path = _write_manifest(
            out_dir, created_at=created_at, paths=[], report=empty, query=query,
            filters=[], mode=mode, status="failed", error_message=str(exc),
        )
        _err(str(exc))
        console.print(f"  Manifest -> {manifest_path}")
        raise typer.Exit(code=2)

    if not quiet:
        console.print(Panel(
            f"[bold]loan-auditor[/bold] v{__version__}\n"
            f"Inputs: {len(inputs)} file(s)\nOutput: {out_dir}",
            title="Audit Start", border_style="blue",
        ))
        if filters_file:
            console.print(f"  Using filters file: {filters_file}")

    report = empty
    view: AuditView | None = None
    try:
        # ── Load ─────────────────────────────────────────────────
        echo("[blue]>[/blue] Loading snapshots …")
        session = AuditSession()
        report = session.load(inputs, delimiter=delimiter)
        if report.failures:
            _print_failures(report)

        if not report.files:
            message = "No input file could be loaded."
            manifest_path = _write_manifest(
                out_dir, created_at=created_at, paths=inputs, report=report, query=query,
                filters=filters, mode=mode, status="failed", error_message=message,
            )
            _err(message)
            console.print(f"  Manifest -> {manifest_path}")
            raise typer.Exit(code=2)

        for source in report.files:
            echo(f"  {escape(source.name)}: {source.row_count} rows")

        session.dispatch(Configure.of(
            identifier_override=id_column,
            mode=mode.value,
            column_order=column_order.value,
            group_key=group_key.value,
        ))
        session.dispatch(SetQuery(query))
        for flt in filters:
            session.dispatch(AddFilter(flt))

        # ── Audit ────────────────────────────────────────────────
        echo("[blue]>[/blue] Building change timeline …")
        view = session.view
        if view.identifier is None:
            _err("Could not resolve an identifier column.")
            if id_column:
                console.print(f"  Column {escape(repr(id_column))} not found in any snapshot.")
        else:
            echo(f"  Identifier column: {escape(view.identifier)}")
        echo(f"  {view.rows_matched} of {view.rows_in} rows matched across {view.files_loaded} file(s)")

        if view.results:
            if not quiet:
                console.print(_timeline_table(view))
        else:
            echo("[yellow]![/yellow] No matching rows.")

        # ── Report ───────────────────────────────────────────────
        report_path: Path | None = None
        if export:
            report_path = write_audit_report(
                out_dir,
                view.results,
                view.columns,
                query or "all",
                identifier=view.identifier,
            )
            if report_path:
                echo(f"  Report   -> {report_path}")

        manifest_path = _write_manifest(
            out_dir, created_at=created_at, paths=inputs, report=report, query=query,
            filters=filters, mode=mode, view=view, report_path=report_path,
        )
        echo(f"  Manifest -> {manifest_path}")

        if not quiet:
            console.print(Panel(
                f"[green]Done[/green] — {len(view.results)} snapshot(s), "
                f"{len(view.changed_columns)} changed column(s)",
                title="Audit Complete", border_style="green",
            ))
    except typer.Exit:
        raise
    except Exception as exc:
        message = f"Unexpected internal error: {exc}"
        logger.debug("Audit failed", exc_info=True)
        manifest_path = _write_manifest(
            out_dir, created_at=created_at, paths=inputs, report=report, query=query,
            filters=filters, mode=mode, view=view, status="failed", error_message=message,
        )
        _err(message)
        console.print(f"  Manifest -> {manifest_path}")
        raise typer.Exit(code=1)


# ── columns command ──────────────────────────────────────────────


@app.command()
def columns(
    inputs: list[Path] = typer.Option(
        ..., "--input", "-i",
        help="Snapshot file (CSV or XLSX); repeat in load order.",
    ),
    id_column: str | None = typer.Option(
        None, "--id-column",
        help="Column identifying a loan (default: auto-detect).",
    ),
    delimiter: str | None = typer.Option(
        None, "--delimiter",
        help="CSV delimiter (default: sniffed).",
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v",
        help="Log debug details.",
    ),
) -> None:
    """List the columns found across snapshots and the resolved identifier."""
    _configure_logging(verbose)
    session = AuditSession()
    try:
        report = session.load(inputs, delimiter=delimiter)
    except Exception as exc:
        logger.debug("Load failed", exc_info=True)
        _err(f"Unexpected internal error: {exc}")
        raise typer.Exit(code=1)
    _print_failures(report)
    if not report.files:
        _err("No input file could be loaded.")
        raise typer.Exit(code=2)

    session.dispatch(Configure.of(identifier_override=id_column))
    view = session.view

    tbl = RichTable(title="Columns", show_lines=False)
    tbl.add_column("#", justify="right")
    tbl.add_column("Column", style="bold")
    tbl.add_column("Role")
    for idx, column in enumerate(view.universe, 1):
        role = "[green]identifier[/green]" if column == view.identifier else ""
        tbl.add_row(str(idx), escape(column), role)
    console.print(tbl)
    console.print(f"  Files: {view.files_loaded}  Rows: {view.rows_in}")
    if view.identifier is None:
        _err("Could not resolve an identifier column.")
        raise typer.Exit(code=2)
    console.print(f"  Identifier: {escape(view.identifier)}")
