"""
Module: billing_engines.attribution
Responsibility:
    Decide which tenant a vendor transaction belongs to when the vendor
    does not stamp one, via ordered fallback strategies:

        1. direct             (high)    tenant of the referenced entity
        2. invoice unanimous  (medium)  every voter in the vendor invoice
                                        group agrees on one tenant
        3. majority vote      (low)     most voters in a split group; ties
                                        go to the lowest tenant id
        4. credential probe   (high)    first tenant credential that can
                                        see the referenced vendor object

Architecture position:
    Engines -- pure decision logic.  Strategy 1 reads entities through the
    ``EntityLookup`` protocol and strategy 4 consumes probe attempts; the
    I/O behind both lives in billing_services.

Invariants enforced:
    - Each ReferenceKind arm owns its direct-resolution function.
    - Only high-confidence attributions vote in strategies 2 and 3, so a
      guess never reinforces itself across runs.
    - An attribution is only replaced by a strictly stronger one.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Protocol

from billing_engines.storage import parse_storage_reference
from billing_kernel.domain.types import (
    AttributionStrategy,
    Confidence,
    ProbeOutcome,
    ReferenceKind,
)


@dataclass(frozen=True)
class ShipmentFacts:
    """Shipment attributes consumed by attribution and pricing."""

    shipment_id: str
    tenant_id: str | None
    order_category: str | None = None
    carrier_option_id: str | None = None
    billable_weight_oz: Decimal | None = None


class EntityLookup(Protocol):
    """Read access to locally mirrored vendor entities."""

    def shipment(self, shipment_id: str) -> ShipmentFacts | None: ...

    def return_tenant(self, return_id: str) -> str | None: ...

    def receiving_order_tenant(self, order_id: str) -> str | None: ...

    def inventory_tenant(self, inventory_id: str) -> str | None: ...


@dataclass(frozen=True)
class AttributionSubject:
    """The slice of a transaction attribution looks at."""

    key: str
    reference_kind: ReferenceKind
    reference_id: str | None
    vendor_invoice_id: str | None = None
    tenant_id: str | None = None
    confidence: Confidence | None = None
    additional_details: Mapping = field(default_factory=dict)


@dataclass(frozen=True)
class Resolution:
    tenant_id: str
    confidence: Confidence
    strategy: AttributionStrategy


# ---------------------------------------------------------------------------
# Strategy 1: direct, one resolver per reference kind
# ---------------------------------------------------------------------------


def _shipment_tenant(lookup: EntityLookup, subject: AttributionSubject) -> str | None:
    facts = lookup.shipment(subject.reference_id) if subject.reference_id else None
    return facts.tenant_id if facts else None


def _return_tenant(lookup: EntityLookup, subject: AttributionSubject) -> str | None:
    return lookup.return_tenant(subject.reference_id) if subject.reference_id else None


def _receiving_tenant(lookup: EntityLookup, subject: AttributionSubject) -> str | None:
    if not subject.reference_id:
        return None
    return lookup.receiving_order_tenant(subject.reference_id)


def _storage_slot_tenant(lookup: EntityLookup, subject: AttributionSubject) -> str | None:
    ref = parse_storage_reference(subject.reference_id, subject.additional_details)
    return lookup.inventory_tenant(ref.inventory_id) if ref.inventory_id else None


def _no_entity(lookup: EntityLookup, subject: AttributionSubject) -> str | None:
    return None


DIRECT_RESOLVERS: dict[ReferenceKind, Callable[[EntityLookup, AttributionSubject], str | None]] = {
    ReferenceKind.SHIPMENT: _shipment_tenant,
    ReferenceKind.RETURN: _return_tenant,
    ReferenceKind.RECEIVING_ORDER: _receiving_tenant,
    ReferenceKind.STORAGE_SLOT: _storage_slot_tenant,
    ReferenceKind.OTHER: _no_entity,
}


def resolve_direct(subject: AttributionSubject, lookup: EntityLookup) -> Resolution | None:
    tenant_id = DIRECT_RESOLVERS[subject.reference_kind](lookup, subject)
    if tenant_id is None:
        return None
    return Resolution(tenant_id, Confidence.HIGH, AttributionStrategy.DIRECT)


# ---------------------------------------------------------------------------
# Strategies 2 and 3: vendor invoice group vote
# ---------------------------------------------------------------------------


def count_votes(subjects: Iterable[AttributionSubject]) -> Counter:
    """Tenant counts from the high-confidence members of one group."""
    return Counter(
        s.tenant_id
        for s in subjects
        if s.tenant_id is not None and s.confidence is Confidence.HIGH
    )


def resolve_unanimous(votes: Mapping[str, int]) -> Resolution | None:
    tenants = [t for t, n in votes.items() if n > 0]
    if len(tenants) != 1:
        return None
    return Resolution(tenants[0], Confidence.MEDIUM, AttributionStrategy.INVOICE_UNANIMOUS)


def resolve_majority(votes: Mapping[str, int]) -> Resolution | None:
    """Most votes wins, ties broken by lowest tenant id.  Always low confidence."""
    tenants = [(t, n) for t, n in votes.items() if n > 0]
    if len(tenants) < 2:
        return None
    winner = min(tenants, key=lambda tn: (-tn[1], tn[0]))[0]
    return Resolution(winner, Confidence.LOW, AttributionStrategy.MAJORITY_VOTE)


# ---------------------------------------------------------------------------
# Strategy 4: credential probing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProbeAttempt:
    """One lookup of a vendor object with one tenant's credential."""

    tenant_id: str
    resource: str
    object_id: str
    outcome: ProbeOutcome
    detail: str | None = None


def probe_order(tenant_ids: Iterable[str]) -> list[str]:
    """Deterministic order in which tenant credentials are tried."""
    return sorted(set(tenant_ids))


def resolve_from_probes(attempts: Sequence[ProbeAttempt]) -> Resolution | None:
    """First FOUND attempt in probe order wins."""
    found = sorted(
        (a for a in attempts if a.outcome is ProbeOutcome.FOUND),
        key=lambda a: a.tenant_id,
    )
    if not found:
        return None
    return Resolution(found[0].tenant_id, Confidence.HIGH, AttributionStrategy.CREDENTIAL_PROBE)


# ---------------------------------------------------------------------------
# Replacement rule
# ---------------------------------------------------------------------------


def should_replace(current: Confidence | None, candidate: Resolution) -> bool:
    """A stored attribution only yields to a strictly stronger one."""
    if current is None:
        return True
    return candidate.confidence.strength > current.strength


def needs_attribution(subject: AttributionSubject) -> bool:
    return subject.tenant_id is None or subject.confidence is not Confidence.HIGH
