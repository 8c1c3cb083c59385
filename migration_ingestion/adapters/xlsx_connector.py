"""
XLSX source connector for estimate and schedule workbooks.

Supports flexible layout:
  - sheet by index (0-based) or name
  - header row by index or auto-detect (scans the first rows for
    estimate/schedule column names)
  - skip_rows before header
  - normalizes cell values (strip, blank -> empty string, whole floats -> int)

Auto-detect picks the first row containing at least 2 of: code, item,
description, qty, quantity, unit, uom, rate, unit cost, amount, total, cost
type, phase, start, finish, duration, activity (so title blocks above the
table are skipped).
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Iterator

import openpyxl

from migration_ingestion.adapters.base import RowSourceConnector
from migration_ingestion.domain.types import MigrationScope

_HEADER_KEYWORDS = frozenset({
    "code", "item", "item code", "cost code", "description", "name",
    "qty", "quantity", "unit", "uom", "units",
    "rate", "unit cost", "unit price", "amount", "total", "cost",
    "type", "cost type", "category", "phase", "project",
    "activity", "activity id", "activity name", "start", "finish",
    "duration", "resource", "wbs",
})

_MAX_ROWS = 1_000_000
_MAX_COLS = 60


def _normalize_header_cell(value: Any) -> str:
    if value is None:
        return ""
    return re.sub(r"\s+", " ", str(value)).strip()


def _cell_value(row: Any, col_idx: int) -> Any:
    """Cell value from an openpyxl row tuple (0-based column index)."""
    try:
        cell = row[col_idx]
    except (IndexError, TypeError):
        return ""
    v = getattr(cell, "value", None)
    if v is None:
        return ""
    if isinstance(v, float):
        return int(v) if v == int(v) else v
    if isinstance(v, str):
        return v.strip()
    return v


def _row_keywords(row: Any) -> set[str]:
    keywords = set()
    for c in range(min(len(row), _MAX_COLS)):
        v = _cell_value(row, c)
        if not isinstance(v, str) or not v:
            continue
        lowered = v.lower()
        if lowered in _HEADER_KEYWORDS:
            keywords.add(lowered)
    return keywords


def _detect_header_row(rows: list, max_search: int = 15, min_keywords: int = 2) -> int:
    for i, row in enumerate(rows[:max_search]):
        if len(_row_keywords(row)) >= min_keywords:
            return i
    return 0


def _column_count(row: Any) -> int:
    n = 0
    for c in range(min(len(row), _MAX_COLS)):
        if _cell_value(row, c) != "":
            n = c + 1
    return max(n, 1)


def _headers(row: Any) -> list[str]:
    headers: list[str] = []
    for c in range(_column_count(row)):
        key = _normalize_header_cell(_cell_value(row, c)) or f"Column_{c + 1}"
        base = key
        cnt = 0
        while key in headers:
            cnt += 1
            key = f"{base}_{cnt}"
        headers.append(key)
    return headers


class XlsxSourceConnector(RowSourceConnector):
    """
    Read an .xlsx sheet as one dict per data row.

    Options:
      path: workbook path.
      sheet: 0-based index or sheet name. Default: active sheet.
      skip_rows: rows to skip before header detection. Default: 0.
      header_row: 0-based header row (after skip_rows); disables auto-detect.
    """

    system = "xlsx"

    @property
    def path(self) -> Path:
        return Path(self.options["path"])

    @property
    def locator(self) -> str | None:
        sheet = self.options.get("sheet")
        return f"{self.path}#{sheet}" if sheet is not None else str(self.path)

    def _connect(self, scope: MigrationScope) -> None:
        if not self.path.is_file():
            raise FileNotFoundError(f"Workbook not found: {self.path}")

    def _sheet(self, wb: Any) -> Any:
        sheet_ref = self.options.get("sheet")
        if sheet_ref is None:
            return wb.active
        if isinstance(sheet_ref, int):
            return wb.worksheets[sheet_ref]
        return wb[sheet_ref]

    def _header_index(self, rows: list) -> int:
        header_row = self.options.get("header_row")
        if header_row is not None:
            return int(header_row)
        return _detect_header_row(rows)

    def _iter_rows(self) -> Iterator[dict[str, Any]]:
        wb = openpyxl.load_workbook(self.path, read_only=True, data_only=True)
        try:
            sheet = self._sheet(wb)
            skip_rows = int(self.options.get("skip_rows", 0))
            rows_iter = sheet.iter_rows(min_row=1 + skip_rows, max_row=_MAX_ROWS)
            # Header search window is buffered; data rows stream after it
            head = []
            for row in rows_iter:
                head.append(row)
                if len(head) >= 15:
                    break
            if not head:
                return
            hi = self._header_index(head)
            headers = _headers(head[hi])
            ncols = len(headers)

            def data_rows():
                yield from head[hi + 1:]
                yield from rows_iter

            for row in data_rows():
                vals = [_cell_value(row, c) for c in range(ncols)]
                if all(v == "" for v in vals):
                    continue
                yield dict(zip(headers, vals))
        finally:
            wb.close()

    def _count_rows(self) -> int:
        wb = openpyxl.load_workbook(self.path, read_only=True, data_only=True)
        try:
            sheet = self._sheet(wb)
            return max((sheet.max_row or 0) - int(self.options.get("skip_rows", 0)) - 1, 0)
        finally:
            wb.close()
