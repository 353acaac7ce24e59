"""
XLSX source adapter for vendor billing workbooks.

The vendor ships one sheet per billing category (shipments, additional
services, storage, credits, returns, receiving), sometimes with a few
metadata rows above the header.  The header row is found by scanning the
first rows for billing column names (at least two of "reference id",
"fee type", "invoice amount", "transaction date", ...).

Options:
  sheet: 0-based sheet index (int) or sheet name (str). Default: active sheet.
  header_row: 0-based row index to use as header; disables auto-detection.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterator

import openpyxl

from billing_ingestion.adapters.base import SAMPLE_SIZE, SourceProbe, normalize_header

_HEADER_KEYWORDS = frozenset({
    "reference id", "fee type", "invoice amount", "invoice", "invoice number",
    "invoice date", "transaction date", "transaction type", "transaction status",
    "user id", "merchant name", "trackingid", "orderid", "original invoice",
    "inventory id", "location type", "chargestartdate", "fc name",
    "credit amount", "credit reason", "return id",
})

_HEADER_SCAN_ROWS = 15
_MIN_HEADER_MATCHES = 2


def _cell_value(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    return value


def _is_blank(values: list[Any]) -> bool:
    return all(v == "" for v in values)


def detect_header_row(rows: list[tuple[Any, ...]]) -> int:
    """0-based index of the first row that looks like a billing header."""
    for i, row in enumerate(rows[:_HEADER_SCAN_ROWS]):
        names = {normalize_header(_cell_value(c)).lower() for c in row}
        if len(names & _HEADER_KEYWORDS) >= _MIN_HEADER_MATCHES:
            return i
    return 0


def _headers(row: tuple[Any, ...]) -> list[str]:
    headers: list[str] = []
    for c, cell in enumerate(row):
        key = normalize_header(_cell_value(cell)) or f"Column_{c + 1}"
        base, n = key, 0
        while key in headers:
            n += 1
            key = f"{base}_{n}"
        headers.append(key)
    while headers and headers[-1].startswith("Column_"):
        headers.pop()
    return headers


class XlsxSourceAdapter:
    """Read one sheet of an .xlsx workbook as one dict per row."""

    def sheet_names(self, source_path: Path) -> list[str]:
        wb = openpyxl.load_workbook(source_path, read_only=True, data_only=True)
        try:
            return list(wb.sheetnames)
        finally:
            wb.close()

    def _sheet(self, wb: Any, options: dict[str, Any]) -> Any:
        ref = options.get("sheet")
        if ref is None:
            return wb.active
        if isinstance(ref, int):
            return wb.worksheets[ref]
        return wb[ref]

    def _table(self, source_path: Path, options: dict[str, Any]) -> tuple[str, list[str], list[dict[str, Any]]]:
        wb = openpyxl.load_workbook(source_path, read_only=True, data_only=True)
        try:
            sheet = self._sheet(wb, options)
            rows = list(sheet.iter_rows(values_only=True))
            title = sheet.title
        finally:
            wb.close()

        if not rows:
            return title, [], []
        if options.get("header_row") is not None:
            hi = int(options["header_row"])
        else:
            hi = detect_header_row(rows)

        headers = _headers(rows[hi])
        records = []
        for row in rows[hi + 1:]:
            values = [_cell_value(c) for c in row[: len(headers)]]
            values += [""] * (len(headers) - len(values))
            if _is_blank(values):
                continue
            records.append(dict(zip(headers, values)))
        return title, headers, records

    def read(self, source_path: Path, options: dict[str, Any]) -> Iterator[dict[str, Any]]:
        _, _, records = self._table(source_path, options)
        yield from records

    def probe(self, source_path: Path, options: dict[str, Any]) -> SourceProbe:
        title, headers, records = self._table(source_path, options)
        return SourceProbe(
            row_count=len(records),
            columns=tuple(headers),
            sample_rows=tuple(records[:SAMPLE_SIZE]),
            sheet=title,
        )
