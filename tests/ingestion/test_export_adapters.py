"""Tests for the CSV and XLSX export adapters."""

from datetime import datetime

import openpyxl
import pytest

from billing_ingestion.adapters import (
    CsvSourceAdapter,
    SourceAdapter,
    XlsxSourceAdapter,
    normalize_header,
)
from billing_ingestion.adapters.xlsx_adapter import detect_header_row


def _workbook(path, sheets):
    wb = openpyxl.Workbook()
    wb.remove(wb.active)
    for title, rows in sheets.items():
        ws = wb.create_sheet(title)
        for row in rows:
            ws.append(row)
    wb.save(path)
    return path


class TestNormalizeHeader:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("  Reference   ID ", "Reference ID"),
            ("Fee\nType", "Fee Type"),
            (None, ""),
            (42, "42"),
        ],
    )
    def test_whitespace_is_collapsed(self, raw, expected):
        assert normalize_header(raw) == expected


class TestCsvSourceAdapter:
    def test_rows_are_keyed_by_normalised_header(self, tmp_path):
        path = tmp_path / "shipments.csv"
        path.write_text(
            "﻿Reference  ID,Original Invoice\nS100, 6.56 \n,\nS101,4.85\n", encoding="utf-8"
        )

        rows = list(CsvSourceAdapter().read(path, {}))

        assert rows == [
            {"Reference ID": "S100", "Original Invoice": "6.56"},
            {"Reference ID": "S101", "Original Invoice": "4.85"},
        ]

    def test_delimiter_and_skip_rows(self, tmp_path):
        path = tmp_path / "fees.csv"
        path.write_text("Export generated 2025-03-10\nReference ID;Fee Type\nS100;Per Pick Fee\n")

        rows = list(CsvSourceAdapter().read(path, {"delimiter": ";", "skip_rows": 1}))

        assert rows == [{"Reference ID": "S100", "Fee Type": "Per Pick Fee"}]

    def test_probe(self, tmp_path):
        path = tmp_path / "returns.csv"
        path.write_text("Return ID,Invoice\n" + "".join(f"R{i},1.00\n" for i in range(8)))

        probe = CsvSourceAdapter().probe(path, {})

        assert probe.row_count == 8
        assert probe.columns == ("Return ID", "Invoice")
        assert len(probe.sample_rows) == 5
        assert probe.encoding == "utf-8-sig"

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.csv"
        path.write_text("")

        assert list(CsvSourceAdapter().read(path, {})) == []

    def test_adapters_satisfy_protocol(self):
        assert isinstance(CsvSourceAdapter(), SourceAdapter)
        assert isinstance(XlsxSourceAdapter(), SourceAdapter)


class TestXlsxSourceAdapter:
    def test_header_detected_below_metadata_rows(self, tmp_path):
        path = _workbook(
            tmp_path / "invoice.xlsx",
            {
                "Shipments": [
                    ["Invoice 4821"],
                    [],
                    ["Reference ID", "Transaction Date", "Original Invoice"],
                    ["S100", datetime(2025, 3, 5), 6.56],
                    [None, None, None],
                    ["S101", datetime(2025, 3, 6), 4.85],
                ]
            },
        )

        rows = list(XlsxSourceAdapter().read(path, {}))

        assert [r["Reference ID"] for r in rows] == ["S100", "S101"]
        assert rows[0]["Original Invoice"] == 6.56

    def test_detect_header_row(self):
        rows = [("Billing export",), ("Reference ID", "Fee Type", "Invoice Amount")]

        assert detect_header_row(rows) == 1
        assert detect_header_row([("a", "b"), ("c", "d")]) == 0

    def test_duplicate_and_blank_headers(self, tmp_path):
        path = _workbook(
            tmp_path / "fees.xlsx",
            {"Additional Services": [["Reference ID", "Fee Type", "Fee Type", None, "Invoice Amount", None],
                                     ["S100", "Pick", "Pack", "x", 1.5, None]]},
        )

        probe = XlsxSourceAdapter().probe(path, {})

        assert probe.columns == ("Reference ID", "Fee Type", "Fee Type_1", "Column_4", "Invoice Amount")
        assert probe.sheet == "Additional Services"

    def test_sheet_selection_and_explicit_header(self, tmp_path):
        path = _workbook(
            tmp_path / "multi.xlsx",
            {
                "Shipments": [["Reference ID", "Original Invoice"], ["S100", 6.56]],
                "Storage": [["Inventory", "Cost"], ["2114961", 0.48]],
            },
        )
        adapter = XlsxSourceAdapter()

        assert adapter.sheet_names(path) == ["Shipments", "Storage"]
        rows = list(adapter.read(path, {"sheet": 1, "header_row": 0}))
        assert rows == [{"Inventory": "2114961", "Cost": 0.48}]
        rows = list(adapter.read(path, {"sheet": "Shipments"}))
        assert rows == [{"Reference ID": "S100", "Original Invoice": 6.56}]
