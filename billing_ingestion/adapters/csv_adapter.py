"""
CSV source adapter for vendor billing exports.

Options: delimiter (default ","), encoding (default utf-8, BOM stripped),
skip_rows (lines before the header).  Header cells are normalised with
``normalize_header``; blank rows are skipped; cell text is stripped.
"""

from __future__ import annotations

import csv
from pathlib import Path
from typing import Any, Iterator

from billing_ingestion.adapters.base import SAMPLE_SIZE, SourceProbe, normalize_header


def _encoding(options: dict[str, Any]) -> str:
    enc = options.get("encoding", "utf-8")
    if enc.lower() in ("utf-8", "utf8"):
        return "utf-8-sig"
    return enc


def _rows(source_path: Path, options: dict[str, Any]) -> Iterator[tuple[list[str], dict[str, Any]]]:
    encoding = _encoding(options)
    delimiter = options.get("delimiter", ",")
    skip_rows = int(options.get("skip_rows", 0))

    with source_path.open("r", encoding=encoding, newline="") as f:
        for _ in range(skip_rows):
            next(f, None)
        reader = csv.reader(f, delimiter=delimiter)
        header = next(reader, None)
        if header is None:
            return
        columns = [normalize_header(h) or f"Column_{i + 1}" for i, h in enumerate(header)]
        for raw in reader:
            values = [v.strip() for v in raw]
            if not any(values):
                continue
            yield columns, dict(zip(columns, values))


class CsvSourceAdapter:
    """Read CSV files as one dict per row. Streams; does not load entire file."""

    def read(self, source_path: Path, options: dict[str, Any]) -> Iterator[dict[str, Any]]:
        for _, row in _rows(source_path, options):
            yield row

    def probe(self, source_path: Path, options: dict[str, Any]) -> SourceProbe:
        columns: list[str] = []
        sample: list[dict[str, Any]] = []
        count = 0
        for columns, row in _rows(source_path, options):
            if len(sample) < SAMPLE_SIZE:
                sample.append(row)
            count += 1
        return SourceProbe(
            row_count=count,
            columns=tuple(columns),
            sample_rows=tuple(sample),
            encoding=_encoding(options),
        )
