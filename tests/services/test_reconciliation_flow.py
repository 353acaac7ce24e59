"""
Tests for ReconciliationService -- duplicate flags, operator decisions and
vendor total checks.
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from billing_kernel.domain.types import FlagStatus, FlagType
from billing_kernel.exceptions import AuditFlagNotFoundError
from billing_kernel.models.audit_flag import AuditFlag
from billing_kernel.services.audit_flags import AuditFlagService
from billing_services.reconciliation_service import DuplicateDecision, ReconciliationService


@pytest.fixture
def recon(session, clock, test_actor_id):
    return ReconciliationService(session, clock=clock, actor_id=test_actor_id)


def _flags(session, flag_type):
    return list(
        session.execute(select(AuditFlag).where(AuditFlag.flag_type == flag_type.value)).scalars()
    )


@pytest.fixture
def duplicate_pair(create_tenant, create_transaction):
    create_tenant("C1")
    first = create_transaction("T1", "5.75", reference_id="S100", tenant_id="C1")
    second = create_transaction("T2", "5.75", reference_id="S100", tenant_id="C1")
    create_transaction("T3", "0.25", reference_id="S100", fee_type="Per Pick Fee", tenant_id="C1")
    return first, second


class TestDuplicateDetection:
    def test_group_is_flagged_not_dropped(self, session, recon, duplicate_pair):
        groups = recon.detect_duplicates(["VI-1"])

        assert len(groups) == 1
        assert groups[0].keys == ("T1", "T2")
        flag = _flags(session, FlagType.DUPLICATE_SUSPECTED)[0]
        assert flag.details["transaction_ids"] == ["T1", "T2"]
        assert flag.tenant_id == "C1"
        assert all(t.excluded_reason is None for t in duplicate_pair)

    def test_detection_is_idempotent(self, session, recon, duplicate_pair):
        recon.detect_duplicates(["VI-1"])
        recon.detect_duplicates(["VI-1"])

        assert len(_flags(session, FlagType.DUPLICATE_SUSPECTED)) == 1

    def test_no_vendor_invoices(self, recon):
        assert recon.detect_duplicates([]) == []


class TestConfirmDuplicate:
    def test_duplicate_excludes_all_but_earliest(self, session, recon, duplicate_pair):
        first, second = duplicate_pair
        recon.detect_duplicates(["VI-1"])
        flag = _flags(session, FlagType.DUPLICATE_SUSPECTED)[0]

        excluded = recon.confirm_duplicate(flag.id, DuplicateDecision.DUPLICATE)

        assert excluded == [second]
        assert second.excluded_reason == "duplicate of T1"
        assert first.excluded_reason is None
        assert flag.status == FlagStatus.RESOLVED.value
        assert flag.resolution == "duplicate"

    def test_distinct_changes_nothing_but_the_flag(self, session, recon, duplicate_pair):
        recon.detect_duplicates(["VI-1"])
        flag = _flags(session, FlagType.DUPLICATE_SUSPECTED)[0]

        assert recon.confirm_duplicate(flag.id, "distinct") == []
        assert all(t.excluded_reason is None for t in duplicate_pair)
        assert flag.resolution == "distinct"

    def test_resolved_group_is_not_reflagged(self, session, recon, duplicate_pair):
        recon.detect_duplicates(["VI-1"])
        flag = _flags(session, FlagType.DUPLICATE_SUSPECTED)[0]
        recon.confirm_duplicate(flag.id, DuplicateDecision.DISTINCT)

        recon.detect_duplicates(["VI-1"])

        flags = _flags(session, FlagType.DUPLICATE_SUSPECTED)
        assert len(flags) == 1 and not flags[0].is_open

    def test_wrong_flag_type_rejected(self, session, recon, clock):
        raised = AuditFlagService(session, clock).raise_flag(FlagType.UNATTRIBUTED, "T9", "x")
        with pytest.raises(ValueError):
            recon.confirm_duplicate(raised.flag.id, DuplicateDecision.DUPLICATE)

    def test_unknown_flag(self, recon):
        with pytest.raises(AuditFlagNotFoundError):
            recon.confirm_duplicate(uuid4(), DuplicateDecision.DISTINCT)


class TestVendorTotals:
    def test_match_within_tolerance(self, session, recon, create_vendor_invoice, create_transaction):
        create_vendor_invoice("VI-1", reported_total=Decimal("10.01"))
        create_transaction("T1", "5.75")
        create_transaction("T2", "4.25", reference_id="S2")

        checks = recon.check_vendor_totals(["VI-1"])

        assert checks[0].matches
        assert _flags(session, FlagType.RECONCILIATION_MISMATCH) == []

    def test_mismatch_is_flagged(self, session, recon, create_vendor_invoice, create_transaction):
        create_vendor_invoice("VI-1", reported_total=Decimal("12.00"))
        create_transaction("T1", "5.75")

        checks = recon.check_vendor_totals(["VI-1"])

        assert not checks[0].matches
        flag = _flags(session, FlagType.RECONCILIATION_MISMATCH)[0]
        assert flag.vendor_invoice_id == "VI-1"
        assert flag.details["difference"] == "-6.25"

    def test_unreported_total_is_not_a_mismatch(self, recon, create_vendor_invoice, create_transaction):
        create_vendor_invoice("VI-1")
        create_transaction("T1", "5.75")

        assert recon.check_vendor_totals(["VI-1"])[0].matches
