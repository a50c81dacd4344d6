"""Excel report writer — produces Audit_Report_Loan_<label>.xlsx."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from pathlib import Path
from typing import Any

import pandas as pd
from openpyxl import Workbook
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.worksheet import Worksheet

from loan_auditor import SOURCE_FILE_FIELD
from loan_auditor.models import AuditResult
from loan_auditor.utils import safe_filename_part

# ── Style constants ──────────────────────────────────────────────

SHEET_TITLE = "Audit Report"

HEADER_FONT = Font(name="Calibri", bold=True, size=11, color="FFFFFF")
HEADER_FILL = PatternFill(start_color="2F5496", end_color="2F5496", fill_type="solid")
HEADER_ALIGN = Alignment(horizontal="center", vertical="center", wrap_text=True)

VALUE_FONT = Font(name="Calibri", size=11)
KEY_FONT = Font(name="Calibri", italic=True, size=11, color="808080")
CHANGED_FONT = Font(name="Calibri", bold=True, size=11, color="000000")
CHANGED_FILL = PatternFill(start_color="FFFF00", end_color="FFFF00", fill_type="solid")

_AUTO_WIDTH_SAMPLE_ROWS = 300
_EXCEL_FORMULA_PREFIXES = ("=", "+", "-", "@")


# ── Helpers ──────────────────────────────────────────────────────


def _style_header(ws: Worksheet, ncols: int) -> None:
    for c in range(1, ncols + 1):
        cell = ws.cell(row=1, column=c)
        cell.font = HEADER_FONT
        cell.fill = HEADER_FILL
        cell.alignment = HEADER_ALIGN


def _auto_width(ws: Worksheet) -> None:
    max_row = min(ws.max_row, _AUTO_WIDTH_SAMPLE_ROWS + 1)  # include header row
    for c_idx in range(1, ws.max_column + 1):
        letter = get_column_letter(c_idx)
        width = 0
        for row in ws.iter_rows(min_row=1, max_row=max_row, min_col=c_idx, max_col=c_idx):
            cell = row[0]
            width = max(width, len(str(cell.value or "")))
        width += 4
        ws.column_dimensions[letter].width = min(width, 40)


def _is_number(text: str) -> bool:
    try:
        float(text)
    except ValueError:
        return False
    return True


def _excel_value(val: Any) -> Any:
    try:
        if pd.isna(val):
            return None
    except (TypeError, ValueError):
        return val

    if isinstance(val, datetime) and val.tzinfo:
        return val.replace(tzinfo=None)

    if isinstance(val, str):
        if val == "":
            return None
        if val.startswith("'"):
            return val
        stripped = val.lstrip()
        if stripped and stripped[0] in _EXCEL_FORMULA_PREFIXES and not _is_number(stripped):
            return f"'{val}"

    return val


def report_filename(record_label: str) -> str:
    return f"Audit_Report_Loan_{safe_filename_part(record_label)}.xlsx"


def _write_timeline(
    ws: Worksheet,
    results: Sequence[AuditResult],
    column_order: Sequence[str],
    key_columns: set[str],
) -> None:
    for c_idx, col_name in enumerate(column_order, 1):
        ws.cell(row=1, column=c_idx, value=col_name)

    for r_idx, result in enumerate(results, 2):
        for c_idx, col_name in enumerate(column_order, 1):
            cell = ws.cell(row=r_idx, column=c_idx, value=_excel_value(result.row.get(col_name)))
            if col_name in result.changes:
                cell.fill = CHANGED_FILL
                cell.font = CHANGED_FONT
            elif col_name in key_columns:
                cell.font = KEY_FONT
            else:
                cell.font = VALUE_FONT

    _style_header(ws, len(column_order))
    ws.freeze_panes = "A2"
    ws.auto_filter.ref = ws.dimensions
    _auto_width(ws)


# ── Public API ───────────────────────────────────────────────────


def write_audit_report(
    out_dir: Path,
    results: Sequence[AuditResult],
    column_order: Sequence[str],
    record_label: str,
    *,
    identifier: str | None = None,
) -> Path | None:
    """Write the change timeline to ``out_dir`` and return the path.

    Changed cells are filled yellow and set bold. Returns ``None`` without
    writing anything when there are no results or no columns.
    """
    columns = list(dict.fromkeys(column_order))
    if not results or not columns:
        return None

    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    report_path = out_dir / report_filename(record_label)

    wb = Workbook()
    ws = wb.active
    if ws is None:
        ws = wb.create_sheet()
    ws.title = SHEET_TITLE

    key_columns = {SOURCE_FILE_FIELD}
    if identifier:
        key_columns.add(identifier)
    _write_timeline(ws, results, columns, key_columns)

    tmp_path = report_path.with_name(report_path.stem + ".tmp.xlsx")
    wb.save(tmp_path)
    tmp_path.replace(report_path)
    return report_path
