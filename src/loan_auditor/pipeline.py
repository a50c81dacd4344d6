"""Grouping + change-detection pipeline — pure functions, no side effects."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

import pandas as pd

from loan_auditor import IDENTIFIER_HINTS, SOURCE_FILE_FIELD
from loan_auditor.models import (
    AuditConfig,
    AuditFilter,
    AuditResult,
    ColumnMode,
    ColumnOrder,
    GroupKey,
    Row,
    SourceFile,
    split_literals,
)

# ── Value coercion ──────────────────────────────────────────────


def as_text(value: Any) -> str:
    """String form of a cell for comparison; missing values read as ``""``."""
    if value is None:
        return ""
    try:
        if pd.isna(value):
            return ""
    except (TypeError, ValueError):
        pass
    return str(value)


def _normalized(value: Any) -> str:
    return as_text(value).strip().lower()


# ── Master pool + identifier ────────────────────────────────────


def build_master_pool(files: Iterable[SourceFile]) -> tuple[Row, ...]:
    """Concatenate rows in file-load order, then in-file order."""
    return tuple(row for source in files for row in source.rows)


def column_universe(rows: Iterable[Row]) -> list[str]:
    """Column names in first-discovery order, reserved field excluded."""
    seen: dict[str, None] = {}
    for row in rows:
        for key in row:
            if key != SOURCE_FILE_FIELD and key not in seen:
                seen[key] = None
    return list(seen)


def resolve_identifier(columns: Sequence[str], override: str | None = None) -> str | None:
    """Pick the column that identifies a logical record.

    An explicit *override* wins when it names one of *columns*. Otherwise the
    first column whose name mentions a loan number is chosen, falling back to
    the first column. Returns ``None`` when nothing can be resolved.
    """
    if override is not None and override.strip():
        name = override.strip()
        return name if name in columns else None
    for column in columns:
        lowered = column.lower()
        if any(hint in lowered for hint in IDENTIFIER_HINTS):
            return column
    return columns[0] if columns else None


# ── Filter engine ───────────────────────────────────────────────


def filter_rows(
    pool: Sequence[Row],
    query: str,
    identifier: str | None,
    filters: Iterable[AuditFilter] = (),
) -> list[Row]:
    """Return the rows of *pool* matching *query* and every active filter.

    Matching compares trimmed, lowercased values against comma-separated
    literals. A blank *query* skips the identifier check; an unresolved
    *identifier* yields no rows at all.
    """
    if identifier is None:
        return []

    primary = split_literals(query) if query.strip() else None
    constraints = [(flt.column.strip(), flt.literals) for flt in filters if flt.is_active]

    matched: list[Row] = []
    for row in pool:
        if primary is not None and _normalized(row.get(identifier)) not in primary:
            continue
        if all(_normalized(row.get(column)) in accepted for column, accepted in constraints):
            matched.append(row)
    return matched


# ── Grouping + diff ─────────────────────────────────────────────


def diff_rows(previous: Row, current: Row) -> frozenset[str]:
    """Columns of either row whose string values differ, reserved field excluded."""
    keys = dict.fromkeys([*previous, *current])
    return frozenset(
        key
        for key in keys
        if key != SOURCE_FILE_FIELD and as_text(previous.get(key)) != as_text(current.get(key))
    )


def group_key_of(row: Row, identifier: str | None, group_key: GroupKey = "exact") -> str:
    if identifier is None:
        return ""
    if group_key == "normalized":
        return _normalized(row.get(identifier))
    return as_text(row.get(identifier))


def group_and_diff(
    rows: Sequence[Row],
    identifier: str | None,
    group_key: GroupKey = "exact",
) -> list[AuditResult]:
    """Diff each row against its predecessor for the same identifier.

    Groups are emitted contiguously in order of first appearance and keep the
    input order internally. The first row of every group has no changes.
    """
    groups: dict[str, list[Row]] = {}
    for row in rows:
        groups.setdefault(group_key_of(row, identifier, group_key), []).append(row)

    results: list[AuditResult] = []
    for members in groups.values():
        previous: Row | None = None
        for row in members:
            changes = frozenset() if previous is None else diff_rows(previous, row)
            results.append(AuditResult(row=row, changes=changes))
            previous = row
    return results


# ── Column projection ───────────────────────────────────────────


def project_columns(
    results: Sequence[AuditResult],
    identifier: str | None,
    mode: ColumnMode = "summary",
    column_order: ColumnOrder = "discovery",
) -> list[str]:
    """Column order for display/export of *results*.

    ``full`` lists every observed column; ``summary`` keeps the file and
    identifier columns plus, alphabetically, each column that changed anywhere.
    """
    if not results:
        return []

    if mode == "full":
        observed = column_universe(res.row for res in results)
        if column_order == "alphabetical":
            observed = sorted(observed)
        return [SOURCE_FILE_FIELD, *observed]

    changed = sorted({col for res in results for col in res.changes})
    head = [SOURCE_FILE_FIELD] if identifier is None else [SOURCE_FILE_FIELD, identifier]
    return list(dict.fromkeys([*head, *changed]))


# ── Whole chain ─────────────────────────────────────────────────


@dataclass(frozen=True)
class AuditView:
    """Derived, read-only values for presentation and export."""

    results: tuple[AuditResult, ...] = ()
    columns: tuple[str, ...] = ()
    identifier: str | None = None
    universe: tuple[str, ...] = ()
    files_loaded: int = 0
    rows_in: int = 0
    rows_matched: int = 0
    changed_columns: frozenset[str] = field(default_factory=frozenset)

    @property
    def has_files(self) -> bool:
        return self.files_loaded > 0


def run_audit(
    files: Sequence[SourceFile],
    query: str = "",
    filters: Iterable[AuditFilter] = (),
    config: AuditConfig | None = None,
) -> AuditView:
    """Pool → identifier → filter → group/diff → projection, in one pure call."""
    if config is None:
        config = AuditConfig()

    pool = build_master_pool(files)
    universe = column_universe(pool)
    identifier = resolve_identifier(universe, config.identifier_override)
    matched = filter_rows(pool, query, identifier, filters)
    results = group_and_diff(matched, identifier, config.group_key)
    columns = project_columns(results, identifier, config.mode, config.column_order)

    return AuditView(
        results=tuple(results),
        columns=tuple(columns),
        identifier=identifier,
        universe=tuple(universe),
        files_loaded=len(files),
        rows_in=len(pool),
        rows_matched=len(matched),
        changed_columns=frozenset(col for res in results for col in res.changes),
    )
