"""I/O helpers — ingest source snapshots, write JSON artifacts."""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime
from pathlib import Path
from typing import Any, Callable, Literal, cast

import pandas as pd

from loan_auditor import SOURCE_FILE_FIELD
from loan_auditor.models import IngestFailure, IngestReport, SourceFile

logger = logging.getLogger(__name__)

# ── Loading ──────────────────────────────────────────────────────


def load_table(path: Path, delimiter: str | None = None) -> pd.DataFrame:
    """Load a CSV or Excel file and return a raw DataFrame of strings.

    Raises
    ------
    FileNotFoundError
        If *path* does not exist.
    ValueError
        If the extension is not supported, or decoding/parsing fails.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Input file not found: {path}")

    suffix = path.suffix.lower()
    if suffix == ".csv":
        last_exc: Exception | None = None
        sep = delimiter if delimiter else None
        engine: Literal["c", "python"] = "c" if delimiter else "python"
        for encoding in ("utf-8-sig", "utf-8", "latin-1"):
            try:
                return pd.read_csv(
                    path,
                    dtype="string",
                    sep=sep,
                    engine=engine,
                    encoding=encoding,
                    encoding_errors="strict",
                    keep_default_na=False,
                    skip_blank_lines=True,
                )
            except pd.errors.EmptyDataError as exc:
                raise ValueError(f"CSV {path} has no header row") from exc
            except (UnicodeDecodeError, pd.errors.ParserError) as exc:
                last_exc = exc
        raise ValueError(f"Could not read CSV {path} (decode or parse failed)") from last_exc

    read_excel = cast(Callable[..., pd.DataFrame], getattr(pd, "read_excel"))
    if suffix in (".xlsx", ".xlsm", ".xltx", ".xltm"):
        try:
            return read_excel(path, engine="openpyxl", dtype="string")
        except Exception as exc:
            raise ValueError(f"Could not read workbook {path}: {exc}") from exc

    if suffix == ".xls":
        try:
            return read_excel(path, engine="xlrd", dtype="string")
        except ImportError as exc:
            raise ValueError(
                "Unsupported .xls input unless 'xlrd' is installed. "
                "Either convert to .xlsx or add dependency: pip install xlrd"
            ) from exc
        except Exception as exc:
            raise ValueError(f"Could not read workbook {path}: {exc}") from exc

    raise ValueError(f"Unsupported file type: {suffix!r}. Use .csv, .xlsx, or .xls")


def _cell_value(val: Any) -> Any:
    try:
        if pd.isna(val):
            return ""
    except (TypeError, ValueError):
        return val
    return val


def frame_to_rows(df: pd.DataFrame) -> list[dict[str, Any]]:
    """Turn *df* into header-keyed rows, one per data row of *df*.

    Missing cells become ``""`` so an empty cell reads the same in every format.
    Rows made only of delimiters are kept; wholly empty lines never reach *df*.
    """
    columns = [str(c) for c in df.columns if str(c) != SOURCE_FILE_FIELD]
    positions = [i for i, c in enumerate(df.columns) if str(c) != SOURCE_FILE_FIELD]
    rows: list[dict[str, Any]] = []
    for values in df.itertuples(index=False, name=None):
        cells = [_cell_value(values[i]) for i in positions]
        rows.append(dict(zip(columns, cells)))
    return rows


def load_source_file(path: Path, delimiter: str | None = None) -> SourceFile:
    """Decode one snapshot file into a :class:`SourceFile` named after it."""
    path = Path(path)
    df = load_table(path, delimiter=delimiter)
    source = SourceFile(name=path.name, rows=tuple(frame_to_rows(df)))
    logger.debug("Loaded %s: %d rows x %d columns", path.name, source.row_count, len(df.columns))
    return source


def ingest_files(
    paths: Sequence[Path],
    *,
    max_workers: int | None = None,
    delimiter: str | None = None,
) -> IngestReport:
    """Decode every file in *paths* concurrently, one task per file.

    Returns only after every task has settled. Loaded files keep the order of
    *paths*; a file that fails to decode is reported and contributes no rows.
    """
    paths = [Path(p) for p in paths]
    if not paths:
        return IngestReport()

    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        futures = [pool.submit(load_source_file, p, delimiter) for p in paths]

    files: list[SourceFile] = []
    failures: list[IngestFailure] = []
    for path, future in zip(paths, futures):
        try:
            files.append(future.result())
        except Exception as exc:
            logger.warning("Skipping %s: %s", path.name, exc)
            logger.debug("Decode of %s failed", path, exc_info=True)
            failures.append(IngestFailure(name=path.name, path=str(path), message=str(exc)))
    return IngestReport(files=tuple(files), failures=tuple(failures))


# ── Writing ──────────────────────────────────────────────────────


def _json_default(obj: Any) -> Any:
    if isinstance(obj, Path):
        return str(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    item = getattr(obj, "item", None)
    if callable(item):
        converted = item()
        if isinstance(converted, (str, int, float, bool)) or converted is None:
            return converted
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def write_json(path: Path, data: Any) -> Path:
    """Write *data* as pretty-printed JSON to *path* (atomic + deterministic)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    payload = json.dumps(
        data,
        indent=2,
        sort_keys=True,
        ensure_ascii=False,
        default=_json_default,
    ) + "\n"
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(payload, encoding="utf-8")
    tmp_path.replace(path)
    return path
