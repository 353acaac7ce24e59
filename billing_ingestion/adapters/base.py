"""
Source adapter protocol and probe DTO.

Contract:
    SourceAdapter.read() yields one dict per data row (streaming), keyed by
    the normalised header text.
    SourceAdapter.probe() returns row count, columns and a few sample rows
    so an operator can check a file before importing it.

Architecture: billing_ingestion/adapters. File I/O only, no DB or kernel imports.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, Protocol, runtime_checkable

SAMPLE_SIZE = 5


def normalize_header(value: Any) -> str:
    """Strip and collapse whitespace in a header cell."""
    if value is None:
        return ""
    return re.sub(r"\s+", " ", str(value)).strip()


@runtime_checkable
class SourceAdapter(Protocol):
    """Protocol for reading tabular export files into row dicts."""

    def read(self, source_path: Path, options: dict[str, Any]) -> Iterator[dict[str, Any]]:
        ...

    def probe(self, source_path: Path, options: dict[str, Any]) -> "SourceProbe":
        ...


@dataclass(frozen=True)
class SourceProbe:
    row_count: int
    columns: tuple[str, ...]
    sample_rows: tuple[dict[str, Any], ...]
    sheet: str | None = None
    encoding: str | None = None
