"""Data models shared across the package."""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from numbers import Integral
from types import MappingProxyType
from typing import Any, Literal

from loan_auditor import SOURCE_FILE_FIELD

Row = Mapping[str, Any]
GroupKey = Literal["exact", "normalized"]
ColumnMode = Literal["summary", "full"]
ColumnOrder = Literal["discovery", "alphabetical"]

GROUP_KEYS: tuple[str, ...] = ("exact", "normalized")
COLUMN_MODES: tuple[str, ...] = ("summary", "full")
COLUMN_ORDERS: tuple[str, ...] = ("discovery", "alphabetical")


def _to_non_negative_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, Integral):
        raise TypeError(f"{field_name} must be an integer")
    result = int(value)
    if result < 0:
        raise ValueError(f"{field_name} must be >= 0")
    return result


def _to_string_list(values: Sequence[Any] | None, field_name: str) -> list[str]:
    if values is None:
        return []
    if isinstance(values, str):
        raise TypeError(f"{field_name} must be a sequence of strings")
    normalized: list[str] = []
    for item in values:
        if not isinstance(item, str):
            raise TypeError(f"{field_name} items must be strings")
        normalized.append(item)
    return normalized


def _check_choice(value: str, choices: tuple[str, ...], field_name: str) -> None:
    if value not in choices:
        raise ValueError(
            f"Invalid {field_name}: {value!r}. Use {'/'.join(choices)}."
        )


def freeze_row(row: Mapping[str, Any], source_name: str) -> Row:
    """Return a read-only copy of *row* tagged with *source_name* as its first key."""
    frozen: dict[str, Any] = {SOURCE_FILE_FIELD: source_name}
    for key, value in row.items():
        if key != SOURCE_FILE_FIELD:
            frozen[str(key)] = value
    return MappingProxyType(frozen)


def split_literals(text: str | None) -> frozenset[str]:
    """Split a comma-delimited query into trimmed, lowercased literals."""
    if not text:
        return frozenset()
    return frozenset(
        piece.strip().lower() for piece in text.split(",") if piece.strip()
    )


@dataclass(frozen=True)
class SourceFile:
    """One ingested file: its name and its rows in file order.

    Rows are frozen on construction and always carry ``Found_In_File``.
    """

    name: str
    rows: tuple[Row, ...] = ()

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name:
            raise ValueError("name must be a non-empty string")
        frozen = tuple(freeze_row(row, self.name) for row in self.rows)
        object.__setattr__(self, "rows", frozen)

    @property
    def row_count(self) -> int:
        return len(self.rows)


@dataclass(frozen=True)
class AuditFilter:
    """Secondary column constraint; *value* may list several literals."""

    id: str
    column: str = ""
    value: str = ""

    @classmethod
    def new(cls, column: str = "", value: str = "") -> AuditFilter:
        return cls(id=uuid.uuid4().hex, column=column, value=value)

    @property
    def is_active(self) -> bool:
        return bool(self.column.strip()) and bool(self.value.strip())

    @property
    def literals(self) -> frozenset[str]:
        return split_literals(self.value)


@dataclass(frozen=True)
class AuditResult:
    """A snapshot row plus the columns that changed since its predecessor."""

    row: Row
    changes: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        changes = frozenset(self.changes)
        if SOURCE_FILE_FIELD in changes:
            raise ValueError(f"changes must not contain {SOURCE_FILE_FIELD!r}")
        object.__setattr__(self, "changes", changes)


@dataclass(frozen=True)
class AuditConfig:
    """Engine configuration: identifier override, grouping key and column policy."""

    identifier_override: str | None = None
    group_key: GroupKey = "exact"
    mode: ColumnMode = "summary"
    column_order: ColumnOrder = "discovery"

    def __post_init__(self) -> None:
        _check_choice(self.group_key, GROUP_KEYS, "group_key")
        _check_choice(self.mode, COLUMN_MODES, "mode")
        _check_choice(self.column_order, COLUMN_ORDERS, "column_order")
        override = self.identifier_override
        if override is not None:
            override = override.strip() or None
        object.__setattr__(self, "identifier_override", override)


@dataclass(frozen=True)
class IngestFailure:
    """A source file that could not be decoded."""

    name: str
    path: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "path": self.path, "message": self.message}


@dataclass(frozen=True)
class IngestReport:
    """Outcome of ingesting a batch of files; loaded files keep submission order."""

    files: tuple[SourceFile, ...] = ()
    failures: tuple[IngestFailure, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.failures


@dataclass
class AuditManifest:
    """Audit-trail manifest for a single CLI run."""

    tool: str = "loan-auditor"
    version: str = ""
    created_at_utc: str = ""
    inputs: list[dict[str, Any]] = field(default_factory=list)
    failures: list[dict[str, str]] = field(default_factory=list)
    identifier_column: str | None = None
    query: str = ""
    filters: list[str] = field(default_factory=list)
    mode: str = "summary"
    rows_in: int = 0
    rows_matched: int = 0
    report_path: str = ""
    status: str = "success"
    error_message: str = ""

    def __post_init__(self) -> None:
        self.rows_in = _to_non_negative_int(self.rows_in, "rows_in")
        self.rows_matched = _to_non_negative_int(self.rows_matched, "rows_matched")
        self.filters = _to_string_list(self.filters, "filters")
        if self.rows_matched > self.rows_in:
            raise ValueError("rows_matched must be <= rows_in")

    @staticmethod
    def describe_filters(filters: Iterable[AuditFilter]) -> list[str]:
        return [f"{flt.column}={flt.value}" for flt in filters if flt.is_active]

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool": self.tool,
            "version": self.version,
            "created_at_utc": self.created_at_utc,
            "inputs": [dict(item) for item in self.inputs],
            "failures": [dict(item) for item in self.failures],
            "identifier_column": self.identifier_column,
            "query": self.query,
            "filters": list(self.filters),
            "mode": self.mode,
            "rows_in": self.rows_in,
            "rows_matched": self.rows_matched,
            "report_path": self.report_path,
            "status": self.status,
            "error_message": self.error_message,
        }
