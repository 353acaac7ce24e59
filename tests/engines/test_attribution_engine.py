"""
Tests for billing_engines.attribution -- the four fallback strategies.
"""

from decimal import Decimal

import pytest

from billing_engines.attribution import (
    AttributionSubject,
    ProbeAttempt,
    Resolution,
    ShipmentFacts,
    count_votes,
    needs_attribution,
    probe_order,
    resolve_direct,
    resolve_from_probes,
    resolve_majority,
    resolve_unanimous,
    should_replace,
)
from billing_kernel.domain.types import (
    AttributionStrategy,
    Confidence,
    ProbeOutcome,
    ReferenceKind,
)


class DictLookup:
    """In-memory EntityLookup."""

    def __init__(self, shipments=None, returns=None, receiving=None, inventory=None):
        self.shipments = shipments or {}
        self.returns = returns or {}
        self.receiving = receiving or {}
        self.inventory = inventory or {}

    def shipment(self, shipment_id):
        tenant = self.shipments.get(shipment_id)
        if tenant is None and shipment_id not in self.shipments:
            return None
        return ShipmentFacts(shipment_id, tenant, billable_weight_oz=Decimal("12"))

    def return_tenant(self, return_id):
        return self.returns.get(return_id)

    def receiving_order_tenant(self, order_id):
        return self.receiving.get(order_id)

    def inventory_tenant(self, inventory_id):
        return self.inventory.get(inventory_id)


def _subject(key="t1", kind=ReferenceKind.SHIPMENT, ref="S100", **kw) -> AttributionSubject:
    return AttributionSubject(key=key, reference_kind=kind, reference_id=ref, **kw)


# =============================================================================
# Strategy 1: direct
# =============================================================================


class TestResolveDirect:
    @pytest.mark.parametrize(
        "kind, ref, lookup",
        [
            (ReferenceKind.SHIPMENT, "S100", DictLookup(shipments={"S100": "C1"})),
            (ReferenceKind.RETURN, "R7", DictLookup(returns={"R7": "C1"})),
            (ReferenceKind.RECEIVING_ORDER, "W3", DictLookup(receiving={"W3": "C1"})),
            (ReferenceKind.STORAGE_SLOT, "12-2114961-Pallet", DictLookup(inventory={"2114961": "C1"})),
        ],
    )
    def test_each_kind_resolves_through_its_entity(self, kind, ref, lookup):
        resolution = resolve_direct(_subject(kind=kind, ref=ref), lookup)
        assert resolution == Resolution("C1", Confidence.HIGH, AttributionStrategy.DIRECT)

    def test_unknown_entity(self):
        assert resolve_direct(_subject(ref="S999"), DictLookup()) is None

    def test_entity_without_tenant(self):
        lookup = DictLookup(shipments={"S100": None})
        assert resolve_direct(_subject(), lookup) is None

    def test_other_kind_never_resolves_directly(self):
        lookup = DictLookup(shipments={"S100": "C1"})
        assert resolve_direct(_subject(kind=ReferenceKind.OTHER), lookup) is None

    def test_missing_reference(self):
        lookup = DictLookup(shipments={"S100": "C1"})
        assert resolve_direct(_subject(ref=None), lookup) is None


# =============================================================================
# Strategies 2 and 3: invoice group vote
# =============================================================================


class TestGroupVote:
    def test_only_high_confidence_members_vote(self):
        votes = count_votes([
            _subject("a", tenant_id="C1", confidence=Confidence.HIGH),
            _subject("b", tenant_id="C1", confidence=Confidence.HIGH),
            _subject("c", tenant_id="C2", confidence=Confidence.LOW),
            _subject("d", tenant_id="C2", confidence=Confidence.MEDIUM),
            _subject("e"),
        ])
        assert dict(votes) == {"C1": 2}

    def test_unanimous_is_medium(self):
        resolution = resolve_unanimous({"C1": 3})
        assert resolution.tenant_id == "C1"
        assert resolution.confidence is Confidence.MEDIUM
        assert resolution.strategy is AttributionStrategy.INVOICE_UNANIMOUS

    def test_unanimous_needs_exactly_one_tenant(self):
        assert resolve_unanimous({}) is None
        assert resolve_unanimous({"C1": 2, "C2": 1}) is None

    def test_majority_is_low(self):
        resolution = resolve_majority({"C1": 2, "C2": 5})
        assert resolution.tenant_id == "C2"
        assert resolution.confidence is Confidence.LOW
        assert resolution.strategy is AttributionStrategy.MAJORITY_VOTE

    def test_majority_tie_goes_to_lowest_tenant_id(self):
        assert resolve_majority({"C9": 2, "C2": 2}).tenant_id == "C2"

    def test_majority_needs_a_split_group(self):
        assert resolve_majority({"C1": 4}) is None


# =============================================================================
# Strategy 4: credential probes
# =============================================================================


class TestProbes:
    def test_probe_order_is_sorted_and_unique(self):
        assert probe_order(["C3", "C1", "C3", "C2"]) == ["C1", "C2", "C3"]

    def test_first_found_in_tenant_order_wins(self):
        attempts = [
            ProbeAttempt("C3", "shipment", "S1", ProbeOutcome.FOUND),
            ProbeAttempt("C1", "shipment", "S1", ProbeOutcome.NOT_FOUND),
            ProbeAttempt("C2", "shipment", "S1", ProbeOutcome.FOUND),
        ]
        resolution = resolve_from_probes(attempts)
        assert resolution.tenant_id == "C2"
        assert resolution.confidence is Confidence.HIGH
        assert resolution.strategy is AttributionStrategy.CREDENTIAL_PROBE

    def test_errors_are_not_matches(self):
        attempts = [ProbeAttempt("C1", "shipment", "S1", ProbeOutcome.ERROR, "timeout")]
        assert resolve_from_probes(attempts) is None


class TestReplacement:
    @pytest.mark.parametrize(
        "current, candidate, expected",
        [
            (None, Confidence.LOW, True),
            (Confidence.LOW, Confidence.MEDIUM, True),
            (Confidence.MEDIUM, Confidence.HIGH, True),
            (Confidence.LOW, Confidence.LOW, False),
            (Confidence.HIGH, Confidence.MEDIUM, False),
        ],
    )
    def test_only_strictly_stronger_replaces(self, current, candidate, expected):
        resolution = Resolution("C1", candidate, AttributionStrategy.MAJORITY_VOTE)
        assert should_replace(current, resolution) is expected

    def test_needs_attribution(self):
        assert needs_attribution(_subject())
        assert needs_attribution(_subject(tenant_id="C1", confidence=Confidence.LOW))
        assert not needs_attribution(_subject(tenant_id="C1", confidence=Confidence.HIGH))
