"""Tests for billing_engines.storage -- reference parsing and ratio pricing."""

from decimal import Decimal

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from billing_engines.markup import RuleSpec, compute_markup
from billing_engines.storage import (
    StorageRow,
    parse_storage_reference,
    price_storage_group,
)
from billing_kernel.domain.values import round2


def _percent_rule(value: str) -> RuleSpec:
    return RuleSpec("s", "Storage", "storage", "percentage", Decimal(value))


class TestParseStorageReference:
    def test_full_reference(self):
        ref = parse_storage_reference("12-2114961-Pallet")
        assert (ref.fc_id, ref.inventory_id, ref.location_type) == ("12", "2114961", "Pallet")

    def test_location_type_may_contain_dashes(self):
        ref = parse_storage_reference("12-2114961-Half-Pallet")
        assert ref.location_type == "Half-Pallet"

    def test_details_fill_missing_parts(self):
        ref = parse_storage_reference("12", {"InventoryId": 2114961, "LocationType": "Bin"})
        assert ref.inventory_id == "2114961"
        assert ref.location_type == "Bin"

    def test_empty_reference(self):
        ref = parse_storage_reference(None)
        assert ref.fc_id is None and ref.inventory_id is None


class TestPriceStorageGroup:
    """Markup is decided once per aggregate and spread over daily rows."""

    def test_even_split(self):
        rows = [StorageRow(k, Decimal("0.10")) for k in ("a", "b", "c")]
        aggregate = compute_markup(base_cost=Decimal("0.30"), rule=_percent_rule("20"))
        pricing = price_storage_group(rows, aggregate)
        assert [pricing.rows[k].billed_amount for k in "abc"] == [Decimal("0.12")] * 3
        assert pricing.group_total == Decimal("0.36")

    def test_residual_goes_to_largest_row(self):
        rows = [
            StorageRow("a", Decimal("0.33")),
            StorageRow("b", Decimal("0.33")),
            StorageRow("c", Decimal("0.34")),
        ]
        aggregate = compute_markup(base_cost=Decimal("1.00"), rule=_percent_rule("14"))
        pricing = price_storage_group(rows, aggregate)
        assert pricing.group_total == Decimal("1.14")
        assert pricing.rows["a"].billed_amount == Decimal("0.38")
        assert pricing.rows["c"].billed_amount == Decimal("0.38")

    def test_rows_carry_the_aggregate_rule(self):
        rows = [StorageRow("a", Decimal("1.00"))]
        aggregate = compute_markup(base_cost=Decimal("1.00"), rule=_percent_rule("20"))
        assert price_storage_group(rows, aggregate).rows["a"].rule_id == "s"

    def test_zero_aggregate_uses_unit_ratio(self):
        rows = [StorageRow("a", Decimal("0")), StorageRow("b", Decimal("0"))]
        aggregate = compute_markup(base_cost=Decimal("0"), rule=_percent_rule("20"))
        pricing = price_storage_group(rows, aggregate)
        assert pricing.ratio == Decimal("1")
        assert pricing.group_total == Decimal("0")

    def test_empty_group_rejected(self):
        aggregate = compute_markup(base_cost=Decimal("0"), rule=None)
        with pytest.raises(ValueError):
            price_storage_group([], aggregate)

    @settings(max_examples=100)
    @given(
        st.lists(
            st.decimals(min_value=Decimal("0.01"), max_value=Decimal("500"), places=2),
            min_size=1,
            max_size=31,
        ),
        st.decimals(min_value=Decimal("0"), max_value=Decimal("50"), places=2),
    )
    def test_group_sum_equals_aggregate_billed(self, amounts, percentage):
        rows = [StorageRow(f"r{i:02d}", amount) for i, amount in enumerate(amounts)]
        base = sum(amounts, Decimal("0"))
        aggregate = compute_markup(base_cost=base, rule=_percent_rule(str(percentage)))
        pricing = price_storage_group(rows, aggregate)
        assert pricing.group_total == round2(aggregate.billed_amount)
