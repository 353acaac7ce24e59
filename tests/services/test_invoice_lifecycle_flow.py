"""
Tests for InvoiceLifecycleService -- approval checks, payment and the
freeze that follows approval.
"""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select

from billing_kernel.domain.types import Confidence, FlagType, InvoiceStatus
from billing_kernel.exceptions import (
    ImmutabilityViolationError,
    InvalidInvoiceTransitionError,
    InvoiceTotalsMismatchError,
    OptimisticLockError,
    UnresolvedFlagsError,
)
from billing_kernel.models.audit_flag import AuditFlag
from billing_kernel.models.invoice import InvoiceLineItem
from billing_kernel.models.vendor_invoice import VendorInvoice
from billing_kernel.services.audit_flags import AuditFlagService
from billing_services.reconciliation_service import DuplicateDecision, ReconciliationService

RUN_DATE = date(2025, 3, 12)


@pytest.fixture
def draft(assembler, priced_week):
    return assembler.create_draft("acme", RUN_DATE).invoice


class TestApprove:
    def test_approve_clean_draft(self, session, lifecycle, draft, priced_week, test_actor_id):
        invoice = lifecycle.approve(draft.id, actor_id=test_actor_id)

        assert invoice.status == InvoiceStatus.APPROVED.value
        assert invoice.approved_at is not None
        assert all(t.invoiced_status for t in priced_week)
        assert session.get(VendorInvoice, "VI-1").closed_by_invoice_id == draft.id

    def test_approval_keeps_version(self, lifecycle, draft):
        assert lifecycle.approve(draft.id).version == 1

    def test_stale_expected_version(self, lifecycle, draft):
        with pytest.raises(OptimisticLockError):
            lifecycle.approve(draft.id, expected_version=2)

    def test_tampered_totals_are_refused(self, session, lifecycle, draft):
        draft.total_amount = Decimal("99.99")
        session.flush()

        with pytest.raises(InvoiceTotalsMismatchError):
            lifecycle.approve(draft.id)

    def test_approving_twice_is_an_invalid_transition(self, lifecycle, draft):
        lifecycle.approve(draft.id)

        with pytest.raises(InvalidInvoiceTransitionError):
            lifecycle.approve(draft.id)


class TestBlockingFlags:
    def test_duplicate_flag_blocks_until_resolved(
        self, session, clock, assembler, lifecycle, priced_week, create_transaction
    ):
        create_transaction("T3", "5.75", reference_id="S100", tenant_id="acme", billed_amount="6.56")
        invoice = assembler.create_draft("acme", RUN_DATE).invoice

        with pytest.raises(UnresolvedFlagsError):
            lifecycle.approve(invoice.id)

        flags = session.execute(select(AuditFlag)).scalars().all()
        recon = ReconciliationService(session, clock)
        for flag in flags:
            if flag.flag_type == FlagType.DUPLICATE_SUSPECTED.value:
                recon.confirm_duplicate(flag.id, DuplicateDecision.DISTINCT)
            else:
                AuditFlagService(session, clock).resolve(flag.id, "accepted")

        assert lifecycle.approve(invoice.id).status == InvoiceStatus.APPROVED.value

    def test_vendor_total_mismatch_blocks(
        self, assembler, lifecycle, acme, create_vendor_invoice, create_transaction
    ):
        create_vendor_invoice("VI-1", reported_total=Decimal("1.00"))
        create_transaction("T1", "5.75", reference_id="S100", tenant_id="acme", billed_amount="6.56")
        invoice = assembler.create_draft("acme", RUN_DATE).invoice

        with pytest.raises(UnresolvedFlagsError):
            lifecycle.approve(invoice.id)

    def test_low_confidence_attribution_blocks(
        self, session, clock, lifecycle, acme, create_vendor_invoice, create_transaction, assembler
    ):
        create_vendor_invoice("VI-1")
        txn = create_transaction(
            "T1", "5.75", reference_id="S100", tenant_id="acme",
            confidence=Confidence.LOW, billed_amount="6.56",
        )
        AuditFlagService(session, clock).raise_flag(
            FlagType.LOW_CONFIDENCE_ATTRIBUTION, "T1", "guessed", transaction_id=txn.id
        )
        invoice = assembler.create_draft("acme", RUN_DATE).invoice

        assert [f.dedup_key for f in lifecycle.blocking_flags(invoice)] == [
            "low-confidence-attribution:T1"
        ]
        with pytest.raises(UnresolvedFlagsError):
            lifecycle.approve(invoice.id)

    def test_no_rule_flag_does_not_block(
        self, session, clock, lifecycle, draft, priced_week
    ):
        AuditFlagService(session, clock).raise_flag(
            FlagType.NO_RULE_MATCHED, "T1", "billed at cost",
            transaction_id=priced_week[0].id, vendor_invoice_id="VI-1",
        )

        assert lifecycle.blocking_flags(draft) == []


class TestMarkPaid:
    def test_paid_after_approval(self, lifecycle, draft):
        lifecycle.approve(draft.id)

        invoice = lifecycle.mark_paid(draft.id)

        assert invoice.status == InvoiceStatus.PAID.value
        assert invoice.paid_at is not None

    def test_draft_cannot_be_paid(self, lifecycle, draft):
        with pytest.raises(InvalidInvoiceTransitionError):
            lifecycle.mark_paid(draft.id)

    def test_paid_is_terminal(self, lifecycle, draft):
        lifecycle.approve(draft.id)
        lifecycle.mark_paid(draft.id)

        with pytest.raises(InvalidInvoiceTransitionError):
            lifecycle.mark_paid(draft.id)


class TestFreeze:
    def test_invoiced_transaction_amounts_are_frozen(self, session, lifecycle, draft, priced_week):
        lifecycle.approve(draft.id)

        priced_week[0].billed_amount = Decimal("1.00")
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_invoice_totals_are_frozen(self, session, lifecycle, draft):
        invoice = lifecycle.approve(draft.id)

        invoice.total_amount = Decimal("0.01")
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_line_items_cannot_be_added(self, session, lifecycle, draft, priced_week, test_actor_id):
        lifecycle.approve(draft.id)

        session.add(
            InvoiceLineItem(
                invoice_id=draft.id,
                version=1,
                transaction_id=priced_week[0].id,
                line_category="Shipping",
                description="extra",
                fee_type="Shipping",
                charge_date=date(2025, 3, 5),
                base_cost=Decimal("1.00"),
                markup_applied=Decimal("0"),
                markup_percentage=Decimal("0"),
                billed_amount=Decimal("1.00"),
                created_by_id=test_actor_id,
            )
        )
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_base_cost_is_immutable_even_before_invoicing(
        self, session, acme, create_transaction
    ):
        txn = create_transaction("T1", "5.75", reference_id="S100", tenant_id="acme")

        txn.base_cost = Decimal("6.00")
        with pytest.raises(ImmutabilityViolationError):
            session.flush()
