"""Immutable application state, a pure reducer, and a memoizing session."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Union

from loan_auditor.io import ingest_files
from loan_auditor.models import AuditConfig, AuditFilter, IngestReport, SourceFile
from loan_auditor.pipeline import AuditView, run_audit

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppState:
    files: tuple[SourceFile, ...] = ()
    query: str = ""
    filters: tuple[AuditFilter, ...] = ()
    config: AuditConfig = AuditConfig()


# ── Actions ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class AddFiles:
    files: tuple[SourceFile, ...]


@dataclass(frozen=True)
class RemoveFile:
    index: int


@dataclass(frozen=True)
class ClearFiles:
    pass


@dataclass(frozen=True)
class SetQuery:
    query: str


@dataclass(frozen=True)
class AddFilter:
    filter: AuditFilter


@dataclass(frozen=True)
class UpdateFilter:
    filter_id: str
    column: str | None = None
    value: str | None = None


@dataclass(frozen=True)
class RemoveFilter:
    filter_id: str


@dataclass(frozen=True)
class Configure:
    changes: tuple[tuple[str, Any], ...]

    @classmethod
    def of(cls, **changes: Any) -> Configure:
        return cls(changes=tuple(changes.items()))


Action = Union[
    AddFiles, RemoveFile, ClearFiles, SetQuery, AddFilter, UpdateFilter, RemoveFilter, Configure
]


def _update_filter(flt: AuditFilter, action: UpdateFilter) -> AuditFilter:
    if flt.id != action.filter_id:
        return flt
    return replace(
        flt,
        column=flt.column if action.column is None else action.column,
        value=flt.value if action.value is None else action.value,
    )


def reduce(state: AppState, action: Action) -> AppState:
    """Return the state that follows *state* once *action* is applied."""
    if isinstance(action, AddFiles):
        if not action.files:
            return state
        return replace(state, files=state.files + tuple(action.files))
    if isinstance(action, RemoveFile):
        if not 0 <= action.index < len(state.files):
            return state
        files = state.files[: action.index] + state.files[action.index + 1 :]
        return replace(state, files=files)
    if isinstance(action, ClearFiles):
        return replace(state, files=())
    if isinstance(action, SetQuery):
        return replace(state, query=action.query)
    if isinstance(action, AddFilter):
        return replace(state, filters=state.filters + (action.filter,))
    if isinstance(action, UpdateFilter):
        if all(flt.id != action.filter_id for flt in state.filters):
            return state
        return replace(
            state, filters=tuple(_update_filter(flt, action) for flt in state.filters)
        )
    if isinstance(action, RemoveFilter):
        kept = tuple(flt for flt in state.filters if flt.id != action.filter_id)
        if len(kept) == len(state.filters):
            return state
        return replace(state, filters=kept)
    if isinstance(action, Configure):
        return replace(state, config=replace(state.config, **dict(action.changes)))
    raise TypeError(f"Unknown action: {type(action).__name__}")


# ── Session ──────────────────────────────────────────────────────


class AuditSession:
    """Holds the current :class:`AppState` and its derived :class:`AuditView`.

    The view is recomputed only when the files, query, filters or config
    change; identical inputs return the cached view.
    """

    def __init__(self, state: AppState | None = None) -> None:
        self.state = state if state is not None else AppState()
        self._inputs: tuple[Any, ...] | None = None
        self._view: AuditView | None = None
        self.computations = 0

    def dispatch(self, action: Action) -> AppState:
        self.state = reduce(self.state, action)
        return self.state

    def load(
        self,
        paths: Sequence[Path],
        *,
        max_workers: int | None = None,
        delimiter: str | None = None,
    ) -> IngestReport:
        """Ingest *paths* and add the files that decoded; failures add nothing."""
        report = ingest_files(paths, max_workers=max_workers, delimiter=delimiter)
        if report.files:
            self.dispatch(AddFiles(report.files))
        if report.failures:
            logger.warning("%d of %d files failed to load", len(report.failures), len(paths))
        return report

    def _is_current(self) -> bool:
        if self._inputs is None:
            return False
        files, filters, config, query = self._inputs
        state = self.state
        return (
            files is state.files
            and filters is state.filters
            and config == state.config
            and query == state.query
        )

    @property
    def view(self) -> AuditView:
        if self._view is None or not self._is_current():
            state = self.state
            self._view = run_audit(state.files, state.query, state.filters, state.config)
            self._inputs = (state.files, state.filters, state.config, state.query)
            self.computations += 1
        return self._view
