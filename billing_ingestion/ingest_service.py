"""
TransactionIngestService -- idempotent upsert of vendor transactions.

Responsibility:
    Normalise raw records from the live feed or a per-invoice fetch and
    merge each into the one canonical ``Transaction`` row for its vendor
    transaction id, field by field, using the trust ranking in
    billing_engines.reconciliation.  Also records vendor invoice headers.

Architecture position:
    Ingestion > Services -- imperative shell.  Pure merge decisions come
    from billing_engines.reconciliation; flags go through AuditFlagService.

Invariants enforced:
    - One row per vendor transaction id; every write is an upsert.
    - Re-ingesting an identical payload is a no-op (every field NOOP).
    - base_cost is never overwritten once stored: a differing report is a
      CONFLICT and raises a ``reconciliation-mismatch`` flag.
    - field_provenance records the source, rank and observation time of
      every stored value; it is reassigned, never mutated in place.
    - Pricing, attribution and invoice fields are never touched here.

Failure modes:
    - Per row, never for the batch: invalid records and database errors
      become failed RowOutcomes; each row runs in its own SAVEPOINT.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing_engines.markup import billing_category_for
from billing_engines.reconciliation import (
    MergeAction,
    Observation,
    merge_field,
    provenance_entry,
)
from billing_ingestion.normalize import (
    NormalizedTransaction,
    normalize_feed_record,
    scope_to_vendor_invoice,
)
from billing_kernel.db.base import SYSTEM_ACTOR_ID
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.domain.types import (
    FlagType,
    ReferenceKind,
    RowOutcome,
    RowStatus,
    SourceKind,
)
from billing_kernel.domain.values import round2
from billing_kernel.exceptions import BillingError
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.models.transaction import Transaction
from billing_kernel.models.vendor_invoice import VendorInvoice
from billing_kernel.services.audit_flags import AuditFlagService

logger = get_logger("ingestion.ingest_service")

# Canonical fields merged from vendor observations, in write order.
MERGED_FIELDS = (
    "reference_id",
    "vendor_reference_type",
    "fee_type",
    "charge_date",
    "vendor_invoice_id",
    "additional_details",
    "base_cost",
)

CREATED = "created"
UPDATED = "updated"
UNCHANGED = "unchanged"


def _observed_values(record: NormalizedTransaction) -> dict[str, Any]:
    details = dict(record.additional_details)
    if record.vendor_invoiced:
        details["InvoicedStatus"] = True
    return {
        "reference_id": record.reference_id,
        "vendor_reference_type": record.vendor_reference_type,
        "fee_type": record.fee_type,
        "charge_date": record.charge_date,
        "vendor_invoice_id": record.vendor_invoice_id,
        "additional_details": details,
        "base_cost": record.base_cost,
    }


def _provenance_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(round2(value))
    if isinstance(value, date):
        return value.isoformat()
    return value


@dataclass
class IngestResult:
    source: SourceKind
    outcomes: list[RowOutcome] = field(default_factory=list)
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    conflicts: int = 0

    @property
    def failed(self) -> list[RowOutcome]:
        return [o for o in self.outcomes if o.status is RowStatus.FAILED]

    @property
    def total(self) -> int:
        return len(self.outcomes)


class TransactionIngestService:
    """
    Upsert normalised vendor transactions.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT attribute or price; those run after ingestion.
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
        self._flags = AuditFlagService(session, self._clock)

    # -- vendor invoices -----------------------------------------------------

    def upsert_vendor_invoice(
        self,
        vendor_invoice_id: str,
        invoice_type: str,
        invoice_date: date,
        reported_total: Decimal | None = None,
    ) -> VendorInvoice:
        """Create or refresh a vendor invoice header (type, date, reported total)."""
        vi = self._session.get(VendorInvoice, vendor_invoice_id)
        if vi is None:
            vi = VendorInvoice(
                id=vendor_invoice_id,
                invoice_type=invoice_type,
                invoice_date=invoice_date,
                reported_total=reported_total,
                created_by_id=self._actor_id,
            )
            self._session.add(vi)
            logger.info(
                "vendor_invoice_recorded",
                extra={"vendor_invoice_id": vendor_invoice_id, "invoice_type": invoice_type},
            )
        else:
            vi.invoice_type = invoice_type
            vi.invoice_date = invoice_date
            if reported_total is not None:
                vi.reported_total = reported_total
            vi.updated_by_id = self._actor_id
        self._session.flush()
        return vi

    # -- transactions ---------------------------------------------------------

    def ingest(
        self,
        records: Iterable[Mapping[str, Any]],
        source: SourceKind,
        observed_at: datetime | None = None,
    ) -> IngestResult:
        """
        Merge a batch of raw vendor records.

        Args:
            records: Raw vendor dicts (feed or per-invoice fetch shape).
            source: Which source reported them; decides merge rank.
            observed_at: When the source reported them.  Defaults to now.
        """
        source = SourceKind(source)
        seen_at = observed_at or self._clock.now()
        result = IngestResult(source=source)

        for index, raw in enumerate(records):
            key = str(raw.get("transactionId") or raw.get("transaction_id") or f"row:{index}")
            try:
                record = normalize_feed_record(raw)
            except ValueError as exc:
                logger.warning("transaction_record_invalid", extra={"key": key, "error": str(exc)})
                result.outcomes.append(RowOutcome.failed(key, "INVALID_RECORD", str(exc)))
                continue

            try:
                with self._session.begin_nested():
                    status, conflict = self._merge(record, source, seen_at)
            except BillingError as exc:
                logger.warning(
                    "transaction_ingest_failed",
                    extra={"key": key, "error_code": exc.code, "error": str(exc)},
                )
                result.outcomes.append(RowOutcome.failed(key, exc.code, str(exc)))
                continue
            except IntegrityError as exc:
                logger.warning(
                    "transaction_ingest_failed",
                    extra={"key": key, "error_code": "INTEGRITY_ERROR", "error": str(exc.orig)},
                )
                result.outcomes.append(RowOutcome.failed(key, "INTEGRITY_ERROR", str(exc.orig)))
                continue

            if status == CREATED:
                result.created += 1
            elif status == UPDATED:
                result.updated += 1
            else:
                result.unchanged += 1
            if conflict:
                result.conflicts += 1
            result.outcomes.append(RowOutcome.succeeded(key, status))

        logger.info(
            "transactions_ingested",
            extra={
                "source": source.value,
                "total": result.total,
                "rows_created": result.created,
                "updated": result.updated,
                "unchanged": result.unchanged,
                "conflicts": result.conflicts,
                "failed": len(result.failed),
            },
        )
        return result

    def ingest_vendor_invoice(
        self,
        vendor_invoice_id: str,
        invoice_type: str,
        invoice_date: date,
        records: Iterable[Mapping[str, Any]],
        reported_total: Decimal | None = None,
        observed_at: datetime | None = None,
    ) -> IngestResult:
        """Per-invoice fetch: record the header, then merge its transactions."""
        with LogContext.bind(vendor_invoice_id=vendor_invoice_id):
            self.upsert_vendor_invoice(vendor_invoice_id, invoice_type, invoice_date, reported_total)
            scoped = [scope_to_vendor_invoice(raw, vendor_invoice_id) for raw in records]
            return self.ingest(scoped, SourceKind.INVOICE_FETCH, observed_at)

    def _find(self, vendor_transaction_id: str) -> Transaction | None:
        return self._session.execute(
            select(Transaction).where(Transaction.vendor_transaction_id == vendor_transaction_id)
        ).scalar_one_or_none()

    def _merge(
        self,
        record: NormalizedTransaction,
        source: SourceKind,
        observed_at: datetime,
    ) -> tuple[str, bool]:
        values = _observed_values(record)
        txn = self._find(record.vendor_transaction_id)

        if txn is None:
            provenance = {
                name: provenance_entry(name, Observation(value, source, observed_at))
                for name, value in values.items()
                if value is not None
            }
            txn = Transaction(
                vendor_transaction_id=record.vendor_transaction_id,
                reference_type=record.reference_kind.value,
                fee_category=record.fee_category.value,
                field_provenance=provenance,
                created_by_id=self._actor_id,
                **values,
            )
            self._session.add(txn)
            self._session.flush()
            logger.debug(
                "transaction_created",
                extra={"vendor_transaction_id": record.vendor_transaction_id, "source": source.value},
            )
            return CREATED, False

        provenance = dict(txn.field_provenance or {})
        changed: list[str] = []
        promoted = False
        conflict = False
        for name in MERGED_FIELDS:
            incoming = values[name]
            if incoming is None:
                continue
            decision = merge_field(
                name,
                getattr(txn, name),
                provenance.get(name),
                Observation(incoming, source, observed_at),
            )
            if decision.action is MergeAction.CONFLICT:
                conflict = True
                self._raise_base_cost_mismatch(txn, incoming, source)
            elif decision.action is MergeAction.PROMOTE:
                provenance[name] = decision.provenance
                promoted = True
            elif decision.writes:
                setattr(txn, name, decision.value)
                provenance[name] = decision.provenance
                changed.append(name)

        if not changed:
            if promoted:
                txn.field_provenance = provenance
                self._session.flush()
            return UNCHANGED, conflict

        kind = ReferenceKind.from_vendor(txn.vendor_reference_type)
        txn.reference_type = kind.value
        txn.fee_category = billing_category_for(kind, txn.fee_type).value
        txn.field_provenance = provenance
        txn.updated_by_id = self._actor_id
        self._session.flush()
        logger.debug(
            "transaction_merged",
            extra={
                "vendor_transaction_id": txn.vendor_transaction_id,
                "source": source.value,
                "fields": changed,
            },
        )
        return UPDATED, conflict

    def _raise_base_cost_mismatch(
        self,
        txn: Transaction,
        reported: Decimal,
        source: SourceKind,
    ) -> None:
        self._flags.raise_flag(
            FlagType.RECONCILIATION_MISMATCH,
            f"{txn.vendor_transaction_id}:base_cost:{_provenance_value(reported)}",
            (
                f"Transaction {txn.vendor_transaction_id} base cost {txn.base_cost} "
                f"reported as {reported} by {source.value}"
            ),
            transaction_id=txn.id,
            vendor_invoice_id=txn.vendor_invoice_id,
            tenant_id=txn.tenant_id,
            details={
                "field": "base_cost",
                "stored": _provenance_value(txn.base_cost),
                "reported": _provenance_value(reported),
                "source": source.value,
            },
        )
