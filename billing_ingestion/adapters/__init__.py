"""Source adapters for spreadsheet exports (file I/O only, no DB)."""

from billing_ingestion.adapters.base import SourceAdapter, SourceProbe, normalize_header
from billing_ingestion.adapters.csv_adapter import CsvSourceAdapter
from billing_ingestion.adapters.xlsx_adapter import XlsxSourceAdapter

__all__ = [
    "SourceAdapter",
    "SourceProbe",
    "normalize_header",
    "CsvSourceAdapter",
    "XlsxSourceAdapter",
]
