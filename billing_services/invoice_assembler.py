"""
billing_services.invoice_assembler -- weekly tenant draft invoices.

Responsibility:
    At period close, gather a tenant's attributed, priced, non-excluded
    transactions that are not on any invoice, snapshot them into line items
    and persist one numbered draft Invoice.  Regenerate drafts from current
    canonical state on request.

Architecture position:
    Services -- imperative shell over billing_engines.invoicing.  Uses
    InvoiceCounterService for numbering and ReconciliationService for the
    pre-finalization checks.

Selection:
    A transaction is billable for a run when it belongs to the tenant, is
    priced and not excluded, has no invoice, and its vendor invoice is not a
    Payment and is dated on or before the period end.

Invariants enforced:
    - The counter is peeked, the invoice inserted, and only then advanced,
      all inside one SAVEPOINT: a failed creation consumes no number.
    - An existing invoice number is rejected with
      InvoiceNumberCollisionError and the counter is left alone.
    - Every included transaction gets ``invoice_id`` on creation, so a
      repeated run for the same week finds nothing to bill.
    - Unpriced transactions for the tenant block the draft; unattributed
      transactions in the closing vendor invoices are reported only.
    - Vendor-total mismatches and suspected duplicates are flagged and
      surfaced in the result; they block approval, not drafting.
    - Regeneration writes line items at ``version + 1`` through a
      conditional UPDATE on (status=draft, version); approved and paid
      invoices are never regenerated.

Failure modes:
    - TenantNotFoundError, InvoiceNotFoundError.
    - InvoiceNumberCollisionError.
    - InvalidInvoiceTransitionError when regenerating a non-draft invoice.
    - OptimisticLockError when the counter or the draft moved concurrently.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Select, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing_engines.attribution import EntityLookup
from billing_engines.invoicing import (
    InvoiceSummary,
    LineAmounts,
    billing_period,
    format_invoice_number,
    issuance_date,
    line_category,
    line_description,
    storage_period,
    summarize,
)
from billing_engines.markup import SHIPPING_FEE
from billing_engines.reconciliation import DuplicateGroup, VendorTotalCheck
from billing_kernel.db.base import SYSTEM_ACTOR_ID
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.domain.types import InvoiceStatus, LineCategory, ReferenceKind
from billing_kernel.domain.values import CURRENCY_TOLERANCE, ZERO
from billing_kernel.exceptions import (
    InvalidInvoiceTransitionError,
    InvoiceNotFoundError,
    InvoiceNumberCollisionError,
    OptimisticLockError,
    TenantNotFoundError,
)
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.models.invoice import Invoice, InvoiceLineItem
from billing_kernel.models.tenant import Tenant
from billing_kernel.models.transaction import Transaction
from billing_kernel.models.vendor_invoice import PAYMENT_INVOICE_TYPE, VendorInvoice
from billing_kernel.services.invoice_counter import InvoiceCounterService
from billing_services.entity_lookup import SqlEntityLookup
from billing_services.reconciliation_service import ReconciliationService

logger = get_logger("services.invoice_assembler")

CREATED = "created"
BLOCKED = "blocked"
NOTHING_TO_BILL = "nothing_to_bill"


@dataclass
class PreflightReport:
    tenant_id: str
    period_end: date
    vendor_invoice_ids: list[str] = field(default_factory=list)
    unpriced: list[str] = field(default_factory=list)
    unattributed: list[str] = field(default_factory=list)

    @property
    def blocked(self) -> bool:
        return bool(self.unpriced)


@dataclass
class DraftResult:
    tenant_id: str
    status: str
    preflight: PreflightReport
    invoice: Invoice | None = None
    vendor_totals: list[VendorTotalCheck] = field(default_factory=list)
    duplicates: list[DuplicateGroup] = field(default_factory=list)

    @property
    def mismatches(self) -> list[VendorTotalCheck]:
        return [c for c in self.vendor_totals if not c.matches]


@dataclass(frozen=True)
class _Lines:
    items: list[InvoiceLineItem]
    summary: InvoiceSummary
    storage_period: tuple[date, date] | None
    vendor_invoice_ids: list[str]


class InvoiceAssembler:
    """
    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT render documents; it persists the invoice and its line
          items for an external renderer.
    """

    def __init__(
        self,
        session: Session,
        lookup: EntityLookup | None = None,
        clock: Clock | None = None,
        invoice_number_prefix: str = "JP",
        tolerance: Decimal = CURRENCY_TOLERANCE,
        actor_id: UUID | None = None,
    ):
        self._session = session
        self._lookup = lookup or SqlEntityLookup(session)
        self._clock = clock or SystemClock()
        self._prefix = invoice_number_prefix
        self._actor_id = actor_id or SYSTEM_ACTOR_ID
        self._counter = InvoiceCounterService(session)
        self._reconciliation = ReconciliationService(
            session, self._clock, tolerance, self._actor_id
        )

    # -- selection -----------------------------------------------------------------

    def _tenant_scope(self, tenant_id: str, period_end: date) -> Select:
        return (
            select(Transaction)
            .join(VendorInvoice, VendorInvoice.id == Transaction.vendor_invoice_id)
            .where(Transaction.tenant_id == tenant_id)
            .where(Transaction.excluded_reason.is_(None))
            .where(VendorInvoice.invoice_type != PAYMENT_INVOICE_TYPE)
            .where(VendorInvoice.invoice_date <= period_end)
        )

    def _billable(
        self, tenant_id: str, period_end: date, invoice_id: UUID | None = None
    ) -> list[Transaction]:
        stmt = self._tenant_scope(tenant_id, period_end).where(
            Transaction.billed_amount.is_not(None)
        )
        if invoice_id is None:
            stmt = stmt.where(Transaction.invoice_id.is_(None))
        else:
            stmt = stmt.where(
                or_(Transaction.invoice_id.is_(None), Transaction.invoice_id == invoice_id)
            )
        return list(
            self._session.execute(
                stmt.order_by(Transaction.charge_date, Transaction.vendor_transaction_id)
            ).scalars()
        )

    def preflight(self, tenant_id: str, period_end: date) -> PreflightReport:
        """Count what would be left off the tenant's invoice for this period."""
        report = PreflightReport(tenant_id=tenant_id, period_end=period_end)
        pending = list(
            self._session.execute(
                self._tenant_scope(tenant_id, period_end).where(Transaction.invoice_id.is_(None))
            ).scalars()
        )
        report.unpriced = sorted(t.vendor_transaction_id for t in pending if not t.is_priced)
        report.vendor_invoice_ids = sorted({t.vendor_invoice_id for t in pending})
        if report.vendor_invoice_ids:
            report.unattributed = sorted(
                self._session.execute(
                    select(Transaction.vendor_transaction_id)
                    .where(Transaction.vendor_invoice_id.in_(report.vendor_invoice_ids))
                    .where(Transaction.tenant_id.is_(None))
                    .where(Transaction.excluded_reason.is_(None))
                ).scalars()
            )
        return report

    # -- line items ----------------------------------------------------------------

    def _category(self, txn: Transaction) -> LineCategory:
        kind = ReferenceKind(txn.reference_type)
        order_category = None
        if kind is ReferenceKind.SHIPMENT and txn.fee_type == SHIPPING_FEE and txn.reference_id:
            facts = self._lookup.shipment(txn.reference_id)
            order_category = facts.order_category if facts else None
        return line_category(kind, txn.fee_type, order_category)

    def _build_lines(self, invoice_id: UUID, version: int, txns: Iterable[Transaction]) -> _Lines:
        items = []
        amounts = []
        storage_dates = []
        vendor_invoice_ids = set()
        for txn in txns:
            category = self._category(txn)
            markup = txn.markup_applied
            if markup is None:
                markup = txn.billed_amount - txn.base_cost
            items.append(
                InvoiceLineItem(
                    invoice_id=invoice_id,
                    version=version,
                    transaction_id=txn.id,
                    line_category=category.value,
                    description=line_description(
                        ReferenceKind(txn.reference_type),
                        txn.reference_id,
                        txn.fee_type,
                        txn.additional_details,
                    ),
                    fee_type=txn.fee_type,
                    reference_id=txn.reference_id,
                    charge_date=txn.charge_date,
                    base_cost=txn.base_cost,
                    markup_applied=markup,
                    markup_percentage=txn.markup_percentage if txn.markup_percentage is not None else ZERO,
                    billed_amount=txn.billed_amount,
                    markup_rule_id=txn.markup_rule_id,
                    attribution_confidence=txn.attribution_confidence,
                    created_by_id=self._actor_id,
                )
            )
            amounts.append(LineAmounts(category, txn.base_cost, markup, txn.billed_amount))
            if category is LineCategory.STORAGE:
                storage_dates.append(txn.charge_date)
            vendor_invoice_ids.add(txn.vendor_invoice_id)
        return _Lines(
            items=items,
            summary=summarize(amounts),
            storage_period=storage_period(storage_dates),
            vendor_invoice_ids=sorted(vendor_invoice_ids),
        )

    # -- drafting ------------------------------------------------------------------

    def create_draft(self, tenant_id: str, run_date: date) -> DraftResult:
        """Build the tenant's draft invoice for the week ``run_date`` falls in."""
        tenant = self._session.get(Tenant, tenant_id)
        if tenant is None:
            raise TenantNotFoundError(tenant_id)

        issued = issuance_date(run_date)
        period_start, period_end = billing_period(issued)

        with LogContext.bind(tenant_id=tenant_id):
            report = self.preflight(tenant_id, period_end)
            if report.unattributed:
                logger.warning(
                    "unattributed_transactions_pending",
                    extra={"count": len(report.unattributed), "vendor_invoice_ids": report.vendor_invoice_ids},
                )
            if report.blocked:
                logger.warning(
                    "invoice_draft_blocked",
                    extra={"unpriced": len(report.unpriced), "period_end": period_end},
                )
                return DraftResult(tenant_id, BLOCKED, report)

            txns = self._billable(tenant_id, period_end)
            if not txns:
                logger.info("invoice_nothing_to_bill", extra={"period_end": period_end})
                return DraftResult(tenant_id, NOTHING_TO_BILL, report)

            vi_ids = sorted({t.vendor_invoice_id for t in txns})
            duplicates = self._reconciliation.detect_duplicates(vi_ids)
            checks = self._reconciliation.check_vendor_totals(vi_ids)

            counter = self._counter.peek(tenant_id)
            number = format_invoice_number(self._prefix, tenant.short_code, counter, issued)
            existing = self._session.execute(
                select(Invoice.id).where(Invoice.invoice_number == number)
            ).scalar_one_or_none()
            if existing is not None:
                raise InvoiceNumberCollisionError(number)

            try:
                with self._session.begin_nested():
                    invoice = Invoice(
                        tenant_id=tenant_id,
                        invoice_number=number,
                        status=InvoiceStatus.DRAFT.value,
                        version=1,
                        invoice_date=issued,
                        period_start=period_start,
                        period_end=period_end,
                        created_by_id=self._actor_id,
                    )
                    self._session.add(invoice)
                    self._session.flush()

                    lines = self._build_lines(invoice.id, 1, txns)
                    self._session.add_all(lines.items)
                    invoice.subtotal = lines.summary.subtotal
                    invoice.total_markup = lines.summary.total_markup
                    invoice.total_amount = lines.summary.total_amount
                    invoice.vendor_invoice_ids = lines.vendor_invoice_ids
                    if lines.storage_period is not None:
                        invoice.storage_period_start, invoice.storage_period_end = lines.storage_period
                    for txn in txns:
                        txn.invoice_id = invoice.id
                        txn.updated_by_id = self._actor_id
                    self._session.flush()
                    self._counter.advance(tenant_id, expected=counter)
            except IntegrityError as exc:
                raise InvoiceNumberCollisionError(number) from exc

            logger.info(
                "invoice_draft_created",
                extra={
                    "invoice_id": str(invoice.id),
                    "invoice_number": number,
                    "lines": len(lines.items),
                    "subtotal": invoice.subtotal,
                    "total_markup": invoice.total_markup,
                    "total_amount": invoice.total_amount,
                    "vendor_invoice_ids": lines.vendor_invoice_ids,
                    "vendor_total_mismatches": sum(1 for c in checks if not c.matches),
                    "duplicate_groups": len(duplicates),
                },
            )
            return DraftResult(
                tenant_id,
                CREATED,
                report,
                invoice=invoice,
                vendor_totals=checks,
                duplicates=duplicates,
            )

    def regenerate(self, invoice_id: UUID) -> Invoice:
        """Rebuild a draft's line items from current canonical state."""
        invoice = self._session.get(Invoice, invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(str(invoice_id))
        if invoice.status != InvoiceStatus.DRAFT.value:
            raise InvalidInvoiceTransitionError(str(invoice_id), invoice.status, "regenerate")

        version = invoice.version
        with LogContext.bind(tenant_id=invoice.tenant_id, invoice_id=str(invoice_id)):
            with self._session.begin_nested():
                txns = self._billable(invoice.tenant_id, invoice.period_end, invoice_id)
                keep = {t.id for t in txns}
                attached = self._session.execute(
                    select(Transaction).where(Transaction.invoice_id == invoice_id)
                ).scalars()
                detached = []
                for txn in list(attached):
                    if txn.id not in keep:
                        txn.invoice_id = None
                        txn.updated_by_id = self._actor_id
                        detached.append(txn.vendor_transaction_id)
                for txn in txns:
                    if txn.invoice_id is None:
                        txn.invoice_id = invoice_id
                        txn.updated_by_id = self._actor_id
                self._session.flush()

                lines = self._build_lines(invoice_id, version + 1, txns)
                period = lines.storage_period or (None, None)
                result = self._session.execute(
                    update(Invoice)
                    .where(Invoice.id == invoice_id)
                    .where(Invoice.status == InvoiceStatus.DRAFT.value)
                    .where(Invoice.version == version)
                    .values(
                        version=version + 1,
                        subtotal=lines.summary.subtotal,
                        total_markup=lines.summary.total_markup,
                        total_amount=lines.summary.total_amount,
                        vendor_invoice_ids=lines.vendor_invoice_ids,
                        storage_period_start=period[0],
                        storage_period_end=period[1],
                        updated_by_id=self._actor_id,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise OptimisticLockError("Invoice", str(invoice_id), f"draft v{version}")
                self._session.expire(invoice)
                self._session.add_all(lines.items)
                self._session.flush()

            if lines.vendor_invoice_ids:
                self._reconciliation.detect_duplicates(lines.vendor_invoice_ids)
                self._reconciliation.check_vendor_totals(lines.vendor_invoice_ids)

            logger.info(
                "invoice_regenerated",
                extra={
                    "invoice_number": invoice.invoice_number,
                    "version": version + 1,
                    "lines": len(lines.items),
                    "detached": detached,
                    "total_amount": lines.summary.total_amount,
                },
            )
        return invoice
