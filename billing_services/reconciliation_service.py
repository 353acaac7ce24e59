"""
billing_services.reconciliation_service -- duplicates and vendor totals.

Responsibility:
    - Flag transactions that look like the same charge twice inside one
      vendor invoice (same reference, fee type and charge date).
    - Compare the canonical base-cost sum of each vendor invoice with the
      total the vendor reported, within the configured tolerance.
    - Apply an operator's explicit decision on a suspected duplicate.

Architecture position:
    Services -- imperative shell over billing_engines.reconciliation.

Invariants enforced:
    - Suspected duplicates are flagged, never dropped.  Only an explicit
      ``duplicate`` confirmation excludes rows, and it keeps the earliest
      ingested transaction of the group.
    - Confirming ``distinct`` closes the flag and changes nothing else.
    - A vendor total outside tolerance raises a ``reconciliation-mismatch``
      flag and is returned to the caller; a missing reported total is not
      a mismatch.

Failure modes:
    - AuditFlagNotFoundError for an unknown flag id.
    - ValueError when the flag is not a duplicate-suspected flag or the
      decision is unknown.
    - ImmutabilityViolationError (at flush) when a confirmed duplicate is
      already on an approved or paid invoice.
"""

from __future__ import annotations

from collections.abc import Iterable
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from billing_engines.reconciliation import (
    DuplicateCandidate,
    DuplicateGroup,
    VendorTotalCheck,
    check_vendor_total,
    find_duplicate_groups,
)
from billing_kernel.db.base import SYSTEM_ACTOR_ID
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.domain.types import FlagType, InvoiceStatus
from billing_kernel.domain.values import CURRENCY_TOLERANCE
from billing_kernel.exceptions import DuplicateSuspectedError, ReconciliationMismatchError
from billing_kernel.logging_config import get_logger
from billing_kernel.models.audit_flag import AuditFlag
from billing_kernel.models.invoice import Invoice
from billing_kernel.models.transaction import Transaction
from billing_kernel.models.vendor_invoice import VendorInvoice
from billing_kernel.services.audit_flags import AuditFlagService

logger = get_logger("services.reconciliation")


class DuplicateDecision(str, Enum):
    DISTINCT = "distinct"
    DUPLICATE = "duplicate"


def vendor_total_subject(vendor_invoice_id: str) -> str:
    return f"vendor_invoice:{vendor_invoice_id}"


class ReconciliationService:
    """
    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT merge source observations; that is TransactionIngestService.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        tolerance: Decimal = CURRENCY_TOLERANCE,
        actor_id: UUID | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._tolerance = tolerance
        self._actor_id = actor_id or SYSTEM_ACTOR_ID
        self._flags = AuditFlagService(session, self._clock)

    # -- duplicates ---------------------------------------------------------------

    def detect_duplicates(self, vendor_invoice_ids: Iterable[str]) -> list[DuplicateGroup]:
        """Flag every duplicate group in the given vendor invoices."""
        ids = sorted(set(vendor_invoice_ids))
        if not ids:
            return []
        rows = self._session.execute(
            select(Transaction)
            .where(Transaction.vendor_invoice_id.in_(ids))
            .where(Transaction.excluded_reason.is_(None))
        ).scalars()
        by_key = {}
        candidates = []
        for txn in rows:
            by_key[txn.vendor_transaction_id] = txn
            candidates.append(
                DuplicateCandidate(
                    key=txn.vendor_transaction_id,
                    vendor_invoice_id=txn.vendor_invoice_id,
                    reference_id=txn.reference_id,
                    fee_type=txn.fee_type,
                    charge_date=txn.charge_date,
                )
            )

        groups = find_duplicate_groups(candidates)
        for group in groups:
            members = [by_key[k] for k in group.keys]
            suspected = DuplicateSuspectedError(group.vendor_invoice_id, list(group.keys))
            self._flags.raise_flag(
                FlagType.DUPLICATE_SUSPECTED,
                group.dedup_key,
                str(suspected),
                vendor_invoice_id=group.vendor_invoice_id,
                tenant_id=members[0].tenant_id if len({m.tenant_id for m in members}) == 1 else None,
                details={
                    "transaction_ids": list(group.keys),
                    "reference_id": group.reference_id,
                    "fee_type": group.fee_type,
                    "charge_date": group.charge_date.isoformat(),
                },
            )
        if groups:
            logger.warning(
                "duplicates_suspected",
                extra={"groups": len(groups), "vendor_invoice_ids": ids},
            )
        return groups

    def confirm_duplicate(
        self,
        flag_id: UUID,
        decision: DuplicateDecision,
        actor_id: UUID | None = None,
    ) -> list[Transaction]:
        """
        Apply an operator's decision on a duplicate-suspected flag.

        Returns:
            The transactions excluded from invoicing (empty for ``distinct``).
        """
        decision = DuplicateDecision(decision)
        actor = actor_id or self._actor_id
        flag: AuditFlag = self._flags.get(flag_id)
        if flag.flag_type != FlagType.DUPLICATE_SUSPECTED.value:
            raise ValueError(f"Flag {flag_id} is {flag.flag_type}, not duplicate-suspected")

        excluded: list[Transaction] = []
        if decision is DuplicateDecision.DUPLICATE and flag.is_open:
            keys = list(flag.details.get("transaction_ids", []))
            members = list(
                self._session.execute(
                    select(Transaction)
                    .where(Transaction.vendor_transaction_id.in_(keys))
                    .order_by(Transaction.created_at, Transaction.vendor_transaction_id)
                ).scalars()
            )
            if members:
                keeper = members[0]
                for txn in members[1:]:
                    if txn.excluded_reason is not None:
                        continue
                    txn.excluded_reason = f"duplicate of {keeper.vendor_transaction_id}"
                    if txn.invoice_id is not None and self._on_draft(txn.invoice_id):
                        txn.invoice_id = None
                    txn.updated_by_id = actor
                    excluded.append(txn)
                self._session.flush()

        self._flags.resolve(flag_id, decision.value, actor)
        logger.info(
            "duplicate_confirmed",
            extra={
                "flag_id": str(flag_id),
                "decision": decision.value,
                "excluded": [t.vendor_transaction_id for t in excluded],
            },
        )
        return excluded

    def _on_draft(self, invoice_id: UUID) -> bool:
        status = self._session.execute(
            select(Invoice.status).where(Invoice.id == invoice_id)
        ).scalar_one_or_none()
        return status == InvoiceStatus.DRAFT.value

    # -- vendor totals ------------------------------------------------------------

    def check_vendor_totals(self, vendor_invoice_ids: Iterable[str]) -> list[VendorTotalCheck]:
        """Compare canonical base-cost sums with vendor-reported totals."""
        checks = []
        for vi_id in sorted(set(vendor_invoice_ids)):
            vendor_invoice = self._session.get(VendorInvoice, vi_id)
            reported = vendor_invoice.reported_total if vendor_invoice else None
            base_costs = self._session.execute(
                select(Transaction.base_cost).where(Transaction.vendor_invoice_id == vi_id)
            ).scalars()
            check = check_vendor_total(vi_id, base_costs, reported, self._tolerance)
            checks.append(check)
            if check.matches:
                continue

            mismatch = ReconciliationMismatchError(
                vendor_total_subject(vi_id), str(check.reported_total), str(check.canonical_total)
            )
            self._flags.raise_flag(
                FlagType.RECONCILIATION_MISMATCH,
                f"{vendor_total_subject(vi_id)}:{check.canonical_total}",
                str(mismatch),
                vendor_invoice_id=vi_id,
                details={
                    "reported_total": str(check.reported_total),
                    "canonical_total": str(check.canonical_total),
                    "difference": str(check.difference),
                },
            )
            logger.warning(
                "vendor_total_mismatch",
                extra={
                    "vendor_invoice_id": vi_id,
                    "reported_total": check.reported_total,
                    "canonical_total": check.canonical_total,
                    "difference": check.difference,
                },
            )
        return checks
