"""
Tests for PricingService -- rule selection and markup persisted on transactions.
"""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select

from billing_kernel.domain.types import FlagType, ReferenceKind, RowStatus
from billing_kernel.models.audit_flag import AuditFlag
from billing_services.pricing_service import PricingService


@pytest.fixture
def tenants(create_tenant):
    create_tenant("C1")
    create_tenant("C2")


@pytest.fixture
def pricing(session, clock, test_actor_id):
    return PricingService(session, clock=clock, actor_id=test_actor_id)


class TestShipmentPricing:
    def test_standard_shipment_markup(
        self, pricing, tenants, create_shipment, create_transaction, create_rule
    ):
        create_shipment("S100", "C1")
        rule = create_rule("Standard", "shipments", "14", tenant_id="C1", fee_type="Standard")
        txn = create_transaction("T1", "5.75", reference_id="S100", tenant_id="C1")

        result = pricing.price()

        assert txn.billed_amount == Decimal("6.56")
        assert txn.markup_applied == Decimal("0.81")
        assert txn.markup_rule_id == rule.id
        assert result.priced == 1
        assert txn.field_provenance["billed_amount"]["source"] == "pricing"
        assert txn.field_provenance["billed_amount"]["rank"] == 0

    def test_more_specific_tenant_rule_beats_global_fixed(
        self, pricing, tenants, create_shipment, create_transaction, create_rule
    ):
        create_shipment("S100", "C1", carrier_option_id="146")
        create_rule("Global flat", "shipments", "0.50", markup_type="fixed", fee_type="Standard")
        tenant_rule = create_rule(
            "USPS priority", "shipments", "18", tenant_id="C1", carrier_option_id="146"
        )
        txn = create_transaction("T1", "5.75", reference_id="S100", tenant_id="C1")

        pricing.price()

        assert txn.billed_amount == Decimal("6.79")
        assert txn.markup_rule_id == tenant_rule.id

    def test_fba_shipment_uses_fba_fee_type(
        self, pricing, tenants, create_shipment, create_transaction, create_rule
    ):
        create_shipment("S100", "C1", order_category="FBA")
        create_rule("Standard", "shipments", "14", fee_type="Standard")
        fba = create_rule("FBA", "shipments", "10", fee_type="FBA")
        txn = create_transaction("T1", "10.00", reference_id="S100", tenant_id="C1")

        pricing.price()

        assert txn.markup_rule_id == fba.id
        assert txn.billed_amount == Decimal("11.00")

    def test_weight_bracket_rule(
        self, pricing, tenants, create_shipment, create_transaction, create_rule
    ):
        create_shipment("S100", "C2", billable_weight_oz=Decimal("100"))
        create_rule("Standard", "shipments", "14", fee_type="Standard")
        heavy = create_rule(
            "Heavy", "shipments", "25", tenant_id="C2", fee_type="Standard",
            weight_min_oz=Decimal("80"), weight_max_oz=Decimal("160"),
            effective_from=date(2025, 1, 1),
        )
        txn = create_transaction("T1", "8.00", reference_id="S100", tenant_id="C2")

        pricing.price()

        assert txn.markup_rule_id == heavy.id
        assert txn.billed_amount == Decimal("10.00")

    def test_unattributed_transactions_are_not_priced(
        self, pricing, tenants, create_transaction, create_rule
    ):
        create_rule("All", "shipments", "14")
        txn = create_transaction("T1", "5.75", reference_id="S100")

        pricing.price()

        assert txn.billed_amount is None


class TestNoRule:
    def test_billed_at_cost_and_flagged(self, session, pricing, tenants, create_transaction):
        txn = create_transaction("T1", "3.10", reference_id="R1", kind=ReferenceKind.RETURN,
                                 fee_type="Return Processing Fee", tenant_id="C1")

        result = pricing.price()

        assert txn.billed_amount == Decimal("3.10")
        assert txn.markup_rule_id is None
        assert result.no_rule == ["T1"]
        assert result.outcomes[0].message == "billed at cost"
        flag = session.execute(select(AuditFlag)).scalar_one()
        assert flag.flag_type == FlagType.NO_RULE_MATCHED.value
        assert flag.tenant_id == "C1"
        assert flag.details["pass_through"] is True


class TestStoragePricing:
    def test_daily_rows_share_one_aggregate(
        self, pricing, tenants, create_transaction, create_rule
    ):
        create_rule("Storage", "storage", "14")
        rows = [
            create_transaction(
                f"T{i}", amount, reference_id="12-2114961-Pallet",
                kind=ReferenceKind.STORAGE_SLOT, fee_type="Warehousing Fee",
                tenant_id="C1", charge_date=date(2025, 3, i + 3),
            )
            for i, amount in enumerate(["0.33", "0.33", "0.34"])
        ]

        pricing.price()

        assert [t.billed_amount for t in rows] == [Decimal("0.38")] * 3
        assert sum(t.billed_amount for t in rows) == Decimal("1.14")

    def test_rows_arriving_across_runs_are_priced_as_one_aggregate(
        self, pricing, tenants, create_transaction, create_rule
    ):
        create_rule("Storage", "storage", "10")
        rows = []
        for run in range(4):
            for day in range(3):
                n = run * 3 + day
                rows.append(
                    create_transaction(
                        f"T{n:02d}", "0.05", reference_id="12-2114961-Pallet",
                        kind=ReferenceKind.STORAGE_SLOT, fee_type="Warehousing Fee",
                        tenant_id="C1", charge_date=date(2025, 3, 1 + n),
                    )
                )
            pricing.price()

        assert all(t.billed_amount is not None for t in rows)
        assert sum(t.billed_amount for t in rows) == Decimal("0.66")

    def test_spreadsheet_row_stays_out_of_the_aggregate(
        self, session, pricing, tenants, create_transaction, create_rule
    ):
        create_rule("Storage", "storage", "10")
        vendor_row = create_transaction(
            "T1", "1.00", reference_id="12-7-Pallet", kind=ReferenceKind.STORAGE_SLOT,
            fee_type="Warehousing Fee", tenant_id="C1", billed_amount="1.50",
        )
        vendor_row.field_provenance = {
            "billed_amount": {"source": "spreadsheet", "rank": 3, "observed_at": "2025-03-08T00:00:00"}
        }
        session.flush()
        ours = create_transaction(
            "T2", "1.00", reference_id="12-7-Pallet", kind=ReferenceKind.STORAGE_SLOT,
            fee_type="Warehousing Fee", tenant_id="C1", charge_date=date(2025, 3, 6),
        )

        pricing.price()

        assert vendor_row.billed_amount == Decimal("1.50")
        assert ours.billed_amount == Decimal("1.10")

    def test_location_types_are_priced_separately(
        self, pricing, tenants, create_transaction, create_rule
    ):
        create_rule("Storage", "storage", "20")
        pallet = create_transaction(
            "T1", "1.00", reference_id="12-1-Pallet", kind=ReferenceKind.STORAGE_SLOT,
            fee_type="Warehousing Fee", tenant_id="C1",
        )
        shelf = create_transaction(
            "T2", "0.50", reference_id="12-1-Shelf", kind=ReferenceKind.STORAGE_SLOT,
            fee_type="Warehousing Fee", tenant_id="C1",
        )

        pricing.price()

        assert pallet.billed_amount == Decimal("1.20")
        assert shelf.billed_amount == Decimal("0.60")


class TestCredits:
    def test_full_refund_inherits_shipment_markup(
        self, pricing, tenants, create_shipment, create_transaction, create_rule
    ):
        create_shipment("S100", "C1")
        create_rule("Standard", "shipments", "14", fee_type="Standard")
        create_rule("Credits", "credits", "0")
        create_transaction("T1", "5.75", reference_id="S100", tenant_id="C1")
        credit = create_transaction(
            "T2", "-5.75", reference_id="S100", fee_type="Credit", tenant_id="C1"
        )

        result = pricing.price()

        assert credit.billed_amount == Decimal("-6.56")
        assert result.inherited == 1
        assert [o.message for o in result.outcomes if o.key == "T2"] == ["inherited"]

    def test_partial_refund_uses_credit_rule(
        self, pricing, tenants, create_shipment, create_transaction, create_rule
    ):
        create_shipment("S100", "C1")
        create_rule("Standard", "shipments", "14", fee_type="Standard")
        create_rule("Credits", "credits", "0")
        create_transaction("T1", "5.75", reference_id="S100", tenant_id="C1")
        credit = create_transaction(
            "T2", "-2.00", reference_id="S100", fee_type="Credit", tenant_id="C1"
        )

        result = pricing.price()

        assert credit.billed_amount == Decimal("-2.00")
        assert result.inherited == 0


class TestRepricing:
    def test_priced_rows_are_skipped_without_force(
        self, pricing, tenants, create_transaction, create_rule
    ):
        rule = create_rule("All", "shipments", "10")
        txn = create_transaction("T1", "10.00", reference_id="S1", tenant_id="C1")
        pricing.price()
        rule.markup_value = Decimal("20")

        assert pricing.price().priced == 0
        assert txn.billed_amount == Decimal("11.00")

        pricing.price(force=True)
        assert txn.billed_amount == Decimal("12.00")

    def test_spreadsheet_amount_is_never_overwritten(
        self, session, pricing, tenants, create_transaction, create_rule
    ):
        create_rule("All", "shipments", "10")
        txn = create_transaction(
            "T1", "10.00", reference_id="S1", tenant_id="C1", billed_amount="10.75"
        )
        txn.field_provenance = {
            "billed_amount": {"source": "spreadsheet", "rank": 3, "observed_at": "2025-03-08T00:00:00"}
        }
        session.flush()

        result = pricing.price(force=True)

        assert txn.billed_amount == Decimal("10.75")
        assert result.outcomes == []

    def test_tenant_filter(self, pricing, tenants, create_transaction, create_rule):
        create_rule("All", "shipments", "10")
        mine = create_transaction("T1", "10.00", reference_id="S1", tenant_id="C1")
        other = create_transaction("T2", "10.00", reference_id="S2", tenant_id="C2")

        result = pricing.price(tenant_id="C1")

        assert mine.billed_amount == Decimal("11.00")
        assert other.billed_amount is None
        assert all(o.status is RowStatus.SUCCEEDED for o in result.outcomes)
