"""
billing_services.invoice_lifecycle -- draft -> approved -> paid.

Responsibility:
    Approve a draft invoice after verifying its stored totals against its
    current line items and checking for open blocking flags; record payment
    of an approved invoice.

Architecture position:
    Services -- imperative shell.

Invariants enforced:
    - Every transition is a conditional UPDATE keyed on (id, status,
      version).  Losing a race raises OptimisticLockError and writes
      nothing.
    - Approval requires stored subtotal, markup and total to equal the sums
      of the current-version line items.
    - Approval is refused while ``duplicate-suspected`` or
      ``reconciliation-mismatch`` flags are open on the invoice's vendor
      invoices or transactions, or ``low-confidence-attribution`` flags are
      open on its transactions.
    - Approval stamps each included transaction ``invoiced_status`` and
      closes vendor invoices not already closed by another invoice.
    - Approved and paid invoices are then frozen by the ORM flush guard.

Failure modes:
    - InvoiceNotFoundError.
    - InvalidInvoiceTransitionError for any other source status.
    - InvoiceTotalsMismatchError, UnresolvedFlagsError.
    - OptimisticLockError on a concurrent change or a stale
      ``expected_version``.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from billing_engines.invoicing import LineAmounts, summarize
from billing_kernel.db.base import SYSTEM_ACTOR_ID
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.domain.types import FlagType, InvoiceStatus, LineCategory
from billing_kernel.exceptions import (
    InvalidInvoiceTransitionError,
    InvoiceNotFoundError,
    InvoiceTotalsMismatchError,
    OptimisticLockError,
    UnresolvedFlagsError,
)
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.models.invoice import Invoice, InvoiceLineItem
from billing_kernel.models.transaction import Transaction
from billing_kernel.models.vendor_invoice import VendorInvoice
from billing_kernel.services.audit_flags import AuditFlagService

logger = get_logger("services.invoice_lifecycle")

VENDOR_INVOICE_FLAGS = (FlagType.DUPLICATE_SUSPECTED, FlagType.RECONCILIATION_MISMATCH)
TRANSACTION_FLAGS = VENDOR_INVOICE_FLAGS + (FlagType.LOW_CONFIDENCE_ATTRIBUTION,)


class InvoiceLifecycleService:
    """
    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT reopen approved invoices; corrections go on a later draft.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()
        self._flags = AuditFlagService(session, self._clock)

    def _load(self, invoice_id: UUID, expected_version: int | None) -> Invoice:
        invoice = self._session.get(Invoice, invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(str(invoice_id))
        if expected_version is not None and invoice.version != expected_version:
            raise OptimisticLockError("Invoice", str(invoice_id), f"version={expected_version}")
        return invoice

    def _transition(
        self,
        invoice: Invoice,
        source: InvoiceStatus,
        target: InvoiceStatus,
        actor_id: UUID,
        **values,
    ) -> None:
        # Pending ORM changes must reach the database before the Core UPDATE.
        self._session.flush()
        result = self._session.execute(
            update(Invoice)
            .where(Invoice.id == invoice.id)
            .where(Invoice.status == source.value)
            .where(Invoice.version == invoice.version)
            .values(status=target.value, updated_by_id=actor_id, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise OptimisticLockError(
                "Invoice", str(invoice.id), f"{source.value} v{invoice.version}"
            )
        self._session.expire(invoice)

    def blocking_flags(self, invoice: Invoice) -> list:
        txn_ids = list(
            self._session.execute(
                select(Transaction.id).where(Transaction.invoice_id == invoice.id)
            ).scalars()
        )
        flags = {}
        if invoice.vendor_invoice_ids:
            for flag in self._flags.open_flags(
                flag_types=VENDOR_INVOICE_FLAGS, vendor_invoice_ids=invoice.vendor_invoice_ids
            ):
                flags[flag.id] = flag
        if txn_ids:
            for flag in self._flags.open_flags(flag_types=TRANSACTION_FLAGS, transaction_ids=txn_ids):
                flags[flag.id] = flag
        return sorted(flags.values(), key=lambda f: (f.raised_at, f.dedup_key))

    def approve(
        self,
        invoice_id: UUID,
        actor_id: UUID | None = None,
        expected_version: int | None = None,
    ) -> Invoice:
        actor = actor_id or SYSTEM_ACTOR_ID
        invoice = self._load(invoice_id, expected_version)
        if invoice.status != InvoiceStatus.DRAFT.value:
            raise InvalidInvoiceTransitionError(str(invoice_id), invoice.status, "approve")

        with LogContext.bind(tenant_id=invoice.tenant_id, invoice_id=str(invoice_id)):
            summary = summarize(
                LineAmounts(
                    LineCategory(item.line_category),
                    item.base_cost,
                    item.markup_applied,
                    item.billed_amount,
                )
                for item in self._session.execute(
                    select(InvoiceLineItem)
                    .where(InvoiceLineItem.invoice_id == invoice_id)
                    .where(InvoiceLineItem.version == invoice.version)
                ).scalars()
            )
            if (
                summary.subtotal != invoice.subtotal
                or summary.total_markup != invoice.total_markup
                or summary.total_amount != invoice.total_amount
            ):
                raise InvoiceTotalsMismatchError(
                    str(invoice_id), str(invoice.total_amount), str(summary.total_amount)
                )

            blocking = self.blocking_flags(invoice)
            if blocking:
                logger.warning(
                    "invoice_approval_blocked",
                    extra={"flags": [f.dedup_key for f in blocking]},
                )
                raise UnresolvedFlagsError(str(invoice_id), [str(f.id) for f in blocking])

            now = self._clock.now()
            vendor_invoice_ids = list(invoice.vendor_invoice_ids)
            self._transition(
                invoice, InvoiceStatus.DRAFT, InvoiceStatus.APPROVED, actor, approved_at=now
            )

            self._session.execute(
                update(Transaction)
                .where(Transaction.invoice_id == invoice_id)
                .values(invoiced_status=True, updated_by_id=actor)
                .execution_options(synchronize_session=False)
            )
            if vendor_invoice_ids:
                self._session.execute(
                    update(VendorInvoice)
                    .where(VendorInvoice.id.in_(vendor_invoice_ids))
                    .where(VendorInvoice.closed_by_invoice_id.is_(None))
                    .values(closed_by_invoice_id=invoice_id, updated_by_id=actor)
                    .execution_options(synchronize_session=False)
                )
            for obj in list(self._session.identity_map.values()):
                if isinstance(obj, (Transaction, VendorInvoice)):
                    self._session.expire(obj)

            logger.info(
                "invoice_approved",
                extra={
                    "invoice_number": invoice.invoice_number,
                    "total_amount": invoice.total_amount,
                    "vendor_invoice_ids": vendor_invoice_ids,
                },
            )
        return invoice

    def mark_paid(
        self,
        invoice_id: UUID,
        actor_id: UUID | None = None,
        expected_version: int | None = None,
    ) -> Invoice:
        actor = actor_id or SYSTEM_ACTOR_ID
        invoice = self._load(invoice_id, expected_version)
        if invoice.status != InvoiceStatus.APPROVED.value:
            raise InvalidInvoiceTransitionError(str(invoice_id), invoice.status, "mark_paid")

        with LogContext.bind(tenant_id=invoice.tenant_id, invoice_id=str(invoice_id)):
            self._transition(
                invoice, InvoiceStatus.APPROVED, InvoiceStatus.PAID, actor, paid_at=self._clock.now()
            )
            logger.info("invoice_paid", extra={"invoice_number": invoice.invoice_number})
        return invoice
