"""
SpreadsheetImportService -- apply vendor-authoritative billed amounts.

Responsibility:
    Read the vendor's per-category billing export (one XLSX sheet per
    category, or one CSV per category), match each row to a canonical
    transaction and merge its billed amount at spreadsheet rank, the
    highest trust for ``billed_amount``.

Matching, per category layout:
    - reference id column equals ``Transaction.reference_id``; for storage
      rows the inventory id and location type are compared with the parsed
      ``{FC_ID}-{InventoryId}-{LocationType}`` reference instead;
    - a fee type column, when the layout has one and the cell is filled,
      must equal ``Transaction.fee_type``;
    - when several transactions still qualify, rows consume them in
      (charge date match first, vendor transaction id) order so daily
      storage rows pair one-to-one.

Invariants enforced:
    - Only ``billed_amount`` (and the markup fields derived from it) is
      written; base cost, tenant and invoice fields are never touched.
    - Every row gets a RowOutcome.  Rows with no match are reported with
      error code ``UNMATCHED``, never dropped silently.
    - Each row runs in its own SAVEPOINT; a transaction frozen on an
      approved invoice fails its row only.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any
from uuid import UUID

from openpyxl.utils.datetime import from_excel
from sqlalchemy import select
from sqlalchemy.orm import Session

from billing_engines.markup import CREDIT_FEE, SHIPPING_FEE, effective_percentage
from billing_engines.reconciliation import MergeAction, Observation, merge_field
from billing_engines.storage import parse_storage_reference
from billing_ingestion.adapters.csv_adapter import CsvSourceAdapter
from billing_ingestion.adapters.xlsx_adapter import XlsxSourceAdapter
from billing_kernel.db.base import SYSTEM_ACTOR_ID
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.domain.types import BillingCategory, RowOutcome, RowStatus, SourceKind
from billing_kernel.domain.values import round2, to_decimal
from billing_kernel.exceptions import BillingError
from billing_kernel.logging_config import get_logger
from billing_kernel.models.transaction import Transaction

logger = get_logger("ingestion.spreadsheet_import")

UNMATCHED = "UNMATCHED"
INVALID_ROW = "INVALID_ROW"


@dataclass(frozen=True)
class SheetLayout:
    """Which columns of one category sheet carry what."""

    category: BillingCategory
    reference_columns: tuple[str, ...]
    amount_columns: tuple[str, ...]
    fee_type_columns: tuple[str, ...] = ()
    fixed_fee_type: str | None = None
    date_columns: tuple[str, ...] = ("Transaction Date",)
    location_columns: tuple[str, ...] = ()


LAYOUTS: dict[BillingCategory, SheetLayout] = {
    BillingCategory.SHIPMENTS: SheetLayout(
        BillingCategory.SHIPMENTS,
        reference_columns=("Reference ID", "TrackingId"),
        amount_columns=("Original Invoice", "Invoice Amount"),
        fixed_fee_type=SHIPPING_FEE,
    ),
    BillingCategory.SHIPMENT_FEES: SheetLayout(
        BillingCategory.SHIPMENT_FEES,
        reference_columns=("Reference ID",),
        amount_columns=("Invoice Amount",),
        fee_type_columns=("Fee Type",),
    ),
    BillingCategory.STORAGE: SheetLayout(
        BillingCategory.STORAGE,
        reference_columns=("Inventory ID",),
        amount_columns=("Invoice", "Invoice Amount"),
        date_columns=("ChargeStartdate", "Charge Date"),
        location_columns=("Location Type",),
    ),
    BillingCategory.CREDITS: SheetLayout(
        BillingCategory.CREDITS,
        reference_columns=("Reference ID",),
        amount_columns=("Credit Amount",),
        fixed_fee_type=CREDIT_FEE,
    ),
    BillingCategory.RETURNS: SheetLayout(
        BillingCategory.RETURNS,
        reference_columns=("Return ID", "Reference ID"),
        amount_columns=("Invoice", "Invoice Amount"),
    ),
    BillingCategory.RECEIVING: SheetLayout(
        BillingCategory.RECEIVING,
        reference_columns=("Reference ID", "WRO ID"),
        amount_columns=("Invoice Amount",),
        fee_type_columns=("Fee Type",),
    ),
}

# Checked in order: "additional services" sheets mention shipments too.
_SHEET_NAME_HINTS = (
    ("additional", BillingCategory.SHIPMENT_FEES),
    ("storage", BillingCategory.STORAGE),
    ("credit", BillingCategory.CREDITS),
    ("return", BillingCategory.RETURNS),
    ("receiving", BillingCategory.RECEIVING),
    ("shipment", BillingCategory.SHIPMENTS),
)


def category_for_sheet(sheet_name: str) -> BillingCategory | None:
    lowered = sheet_name.lower()
    for hint, category in _SHEET_NAME_HINTS:
        if hint in lowered:
            return category
    return None


def parse_sheet_date(value: Any) -> date | None:
    """Excel serial, date, datetime or ISO text; blank is None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, (int, float)):
        return from_excel(value).date()
    return date.fromisoformat(str(value).strip()[:10])


def _first(row: Mapping[str, Any], columns: tuple[str, ...]) -> Any:
    for col in columns:
        value = row.get(col)
        if value is not None and value != "":
            return value
    return None


def _text(value: Any) -> str | None:
    if value is None or value == "":
        return None
    if isinstance(value, float) and value == int(value):
        value = int(value)
    return str(value).strip()


@dataclass(frozen=True)
class SheetRow:
    key: str
    reference: str
    amount: Decimal
    fee_type: str | None
    charge_date: date | None
    location_type: str | None


@dataclass
class SheetImportResult:
    sheet: str
    category: BillingCategory
    outcomes: list[RowOutcome] = field(default_factory=list)
    applied: int = 0
    unchanged: int = 0

    @property
    def unmatched(self) -> list[RowOutcome]:
        return [o for o in self.outcomes if o.error_code == UNMATCHED]

    @property
    def failed(self) -> list[RowOutcome]:
        return [o for o in self.outcomes if o.status is RowStatus.FAILED]


@dataclass
class SpreadsheetImportResult:
    source: str
    sheets: list[SheetImportResult] = field(default_factory=list)
    skipped_sheets: list[str] = field(default_factory=list)

    @property
    def applied(self) -> int:
        return sum(s.applied for s in self.sheets)

    @property
    def unmatched(self) -> list[RowOutcome]:
        return [o for s in self.sheets for o in s.unmatched]


def parse_sheet_row(layout: SheetLayout, key: str, row: Mapping[str, Any]) -> SheetRow:
    reference = _text(_first(row, layout.reference_columns))
    if reference is None:
        raise ValueError(f"missing {' / '.join(layout.reference_columns)}")
    amount = _first(row, layout.amount_columns)
    if amount is None:
        raise ValueError(f"missing {' / '.join(layout.amount_columns)}")
    return SheetRow(
        key=key,
        reference=reference,
        amount=to_decimal(amount),
        fee_type=_text(_first(row, layout.fee_type_columns)) or layout.fixed_fee_type,
        charge_date=parse_sheet_date(_first(row, layout.date_columns)),
        location_type=_text(_first(row, layout.location_columns)),
    )


class SpreadsheetImportService:
    """
    Match spreadsheet rows to canonical transactions and merge billed amounts.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT create transactions; a row with no canonical counterpart
          is reported as unmatched.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        actor_id: UUID | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._actor_id = actor_id or SYSTEM_ACTOR_ID

    def import_file(
        self,
        source_path: Path,
        category: BillingCategory | None = None,
        options: dict[str, Any] | None = None,
    ) -> SpreadsheetImportResult:
        """
        Import an XLSX workbook (every recognised sheet) or one CSV file.

        A CSV carries a single category, which must be given.  For a
        workbook, ``category`` restricts the import to that category's
        sheet; sheets whose names match no category are skipped and listed.
        """
        source_path = Path(source_path)
        options = dict(options or {})
        result = SpreadsheetImportResult(source=source_path.name)
        observed_at = self._clock.now()

        if source_path.suffix.lower() == ".csv":
            if category is None:
                raise ValueError("A CSV export holds one category; pass category=")
            rows = CsvSourceAdapter().read(source_path, options)
            result.sheets.append(
                self.import_rows(rows, category, sheet=source_path.stem, observed_at=observed_at)
            )
            return result

        adapter = XlsxSourceAdapter()
        for sheet_name in adapter.sheet_names(source_path):
            sheet_category = category_for_sheet(sheet_name)
            if sheet_category is None or (category is not None and sheet_category != category):
                result.skipped_sheets.append(sheet_name)
                continue
            rows = adapter.read(source_path, {**options, "sheet": sheet_name})
            result.sheets.append(
                self.import_rows(rows, sheet_category, sheet=sheet_name, observed_at=observed_at)
            )

        logger.info(
            "spreadsheet_imported",
            extra={
                "source_file": result.source,
                "sheets": [s.sheet for s in result.sheets],
                "skipped_sheets": result.skipped_sheets,
                "applied": result.applied,
                "unmatched": len(result.unmatched),
            },
        )
        return result

    def import_rows(
        self,
        rows: Iterable[Mapping[str, Any]],
        category: BillingCategory,
        sheet: str | None = None,
        observed_at: datetime | None = None,
    ) -> SheetImportResult:
        category = BillingCategory(category)
        layout = LAYOUTS[category]
        sheet = sheet or category.value
        seen_at = observed_at or self._clock.now()
        result = SheetImportResult(sheet=sheet, category=category)

        parsed: list[SheetRow] = []
        for index, row in enumerate(rows, start=1):
            key = f"{sheet}:{index}"
            try:
                parsed.append(parse_sheet_row(layout, key, row))
            except ValueError as exc:
                result.outcomes.append(RowOutcome.failed(key, INVALID_ROW, str(exc)))

        pool = self._candidates(category, parsed)
        consumed: set[UUID] = set()
        for row in parsed:
            txn = self._match(row, pool, consumed)
            if txn is None:
                result.outcomes.append(
                    RowOutcome.failed(
                        row.key,
                        UNMATCHED,
                        f"No {category.value} transaction for reference {row.reference}",
                    )
                )
                continue
            consumed.add(txn.id)
            try:
                with self._session.begin_nested():
                    wrote = self._apply(txn, row.amount, seen_at)
            except BillingError as exc:
                result.outcomes.append(RowOutcome.failed(row.key, exc.code, str(exc)))
                continue
            if wrote:
                result.applied += 1
                result.outcomes.append(RowOutcome.succeeded(row.key, txn.vendor_transaction_id))
            else:
                result.unchanged += 1
                result.outcomes.append(RowOutcome.skipped(row.key, txn.vendor_transaction_id))

        logger.info(
            "spreadsheet_sheet_imported",
            extra={
                "sheet": sheet,
                "category": category.value,
                "rows": len(result.outcomes),
                "applied": result.applied,
                "unchanged": result.unchanged,
                "unmatched": len(result.unmatched),
            },
        )
        return result

    def _candidates(self, category: BillingCategory, rows: list[SheetRow]) -> list[Transaction]:
        stmt = select(Transaction).where(Transaction.fee_category == category.value)
        if category is not BillingCategory.STORAGE:
            refs = sorted({r.reference for r in rows})
            if not refs:
                return []
            stmt = stmt.where(Transaction.reference_id.in_(refs))
        return list(
            self._session.execute(stmt.order_by(Transaction.vendor_transaction_id)).scalars()
        )

    def _qualifies(self, row: SheetRow, txn: Transaction) -> bool:
        if row.fee_type is not None and txn.fee_type != row.fee_type:
            return False
        if txn.fee_category == BillingCategory.STORAGE.value:
            ref = parse_storage_reference(txn.reference_id, txn.additional_details)
            if ref.inventory_id != row.reference:
                return False
            return row.location_type is None or ref.location_type == row.location_type
        return txn.reference_id == row.reference

    def _match(
        self,
        row: SheetRow,
        pool: list[Transaction],
        consumed: set[UUID],
    ) -> Transaction | None:
        options = [t for t in pool if t.id not in consumed and self._qualifies(row, t)]
        if not options:
            return None
        return min(
            options,
            key=lambda t: (row.charge_date is not None and t.charge_date != row.charge_date,
                           t.vendor_transaction_id),
        )

    def _apply(self, txn: Transaction, amount: Decimal, observed_at: datetime) -> bool:
        provenance = dict(txn.field_provenance or {})
        decision = merge_field(
            "billed_amount",
            txn.billed_amount,
            provenance.get("billed_amount"),
            Observation(round2(amount), SourceKind.SPREADSHEET, observed_at),
        )
        if decision.action is MergeAction.PROMOTE:
            # Same amount as the engine price: the spreadsheet now owns it.
            provenance["billed_amount"] = decision.provenance
            txn.field_provenance = provenance
            txn.updated_by_id = self._actor_id
            self._session.flush()
            return False
        if not decision.writes:
            return False

        billed = decision.value
        applied = billed - txn.base_cost
        txn.billed_amount = billed
        txn.markup_applied = applied
        txn.markup_percentage = effective_percentage(txn.base_cost, applied)
        provenance["billed_amount"] = decision.provenance
        txn.field_provenance = provenance
        txn.updated_by_id = self._actor_id
        self._session.flush()
        logger.debug(
            "spreadsheet_billed_amount_applied",
            extra={"vendor_transaction_id": txn.vendor_transaction_id, "billed_amount": billed},
        )
        return True
