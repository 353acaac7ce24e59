"""
Tests for AuditFlagService -- one flag per (type, subject), explicit
resolution, and the open-flag queries review gates rely on.
"""

from uuid import uuid4

import pytest

from billing_kernel.domain.types import FlagStatus, FlagType
from billing_kernel.exceptions import AuditFlagNotFoundError
from billing_kernel.services.audit_flags import AuditFlagService, flag_dedup_key


@pytest.fixture
def flags(session, clock):
    return AuditFlagService(session, clock)


class TestRaise:
    def test_dedup_key(self):
        assert flag_dedup_key(FlagType.UNATTRIBUTED, "T1") == "unattributed:T1"

    def test_raising_twice_returns_existing(self, flags):
        first = flags.raise_flag(FlagType.UNATTRIBUTED, "T1", "no owner", tenant_id=None)
        again = flags.raise_flag(FlagType.UNATTRIBUTED, "T1", "still no owner")

        assert first.created and not again.created
        assert again.flag.id == first.flag.id
        assert again.flag.message == "no owner"

    def test_same_subject_different_type(self, flags):
        flags.raise_flag(FlagType.UNATTRIBUTED, "T1", "no owner")

        assert flags.raise_flag(FlagType.NO_RULE_MATCHED, "T1", "at cost").created

    def test_resolved_flag_is_not_reopened(self, flags):
        raised = flags.raise_flag(FlagType.UNATTRIBUTED, "T1", "no owner")
        flags.resolve(raised.flag.id, "attributed")

        again = flags.raise_flag(FlagType.UNATTRIBUTED, "T1", "no owner")

        assert not again.created
        assert again.flag.status == FlagStatus.RESOLVED.value

    def test_raise_is_logged(self, flags, captured_logs):
        flags.raise_flag(FlagType.RECONCILIATION_MISMATCH, "VI-1", "off", vendor_invoice_id="VI-1")

        raised = [r for r in captured_logs() if r["message"] == "audit_flag_raised"]
        assert raised[0]["level"] == "WARNING"
        assert raised[0]["dedup_key"] == "reconciliation-mismatch:VI-1"


class TestResolve:
    def test_resolution_is_recorded(self, flags, clock, test_actor_id):
        raised = flags.raise_flag(FlagType.NO_RULE_MATCHED, "T1", "at cost")
        clock.advance(30)

        flag = flags.resolve(raised.flag.id, "rule added", test_actor_id)

        assert flag.status == FlagStatus.RESOLVED.value
        assert flag.resolution == "rule added"
        assert flag.resolved_by_id == test_actor_id
        assert flag.resolved_at == clock.now()

    def test_second_resolution_is_a_noop(self, flags):
        raised = flags.raise_flag(FlagType.NO_RULE_MATCHED, "T1", "at cost")
        flags.resolve(raised.flag.id, "first")

        assert flags.resolve(raised.flag.id, "second").resolution == "first"

    def test_unknown_flag(self, flags):
        with pytest.raises(AuditFlagNotFoundError):
            flags.resolve(uuid4(), "whatever")


class TestOpenFlags:
    def test_filters(self, flags):
        txn_id = uuid4()
        flags.raise_flag(FlagType.UNATTRIBUTED, "T1", "a", transaction_id=txn_id)
        flags.raise_flag(FlagType.DUPLICATE_SUSPECTED, "grp", "b", tenant_id="acme", vendor_invoice_id="VI-1")
        closed = flags.raise_flag(FlagType.NO_RULE_MATCHED, "T2", "c", tenant_id="acme")
        flags.resolve(closed.flag.id, "ok")

        assert len(flags.open_flags()) == 2
        assert [f.dedup_key for f in flags.open_flags(tenant_id="acme")] == ["duplicate-suspected:grp"]
        assert [f.dedup_key for f in flags.open_flags(transaction_ids=[txn_id])] == ["unattributed:T1"]
        assert flags.open_flags(flag_types=[FlagType.NO_RULE_MATCHED]) == []
        assert len(flags.open_flags(vendor_invoice_ids=["VI-1"])) == 1
