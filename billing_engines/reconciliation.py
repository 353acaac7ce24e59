"""
Module: billing_engines.reconciliation
Responsibility:
    Field-level merge of transaction observations from three sources,
    duplicate detection within a vendor invoice, and the vendor-total
    cross-check.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Trust ranking (higher wins):

    field              spreadsheet  invoice fetch  live feed
    billed_amount           3             2            1
    everything else         1             2            3

Merge rules, per field, over (value, rank, observed_at):
    - identical value, higher rank         -> PROMOTE (provenance only)
    - identical value                      -> NOOP
    - nothing stored yet                   -> REPLACE
    - base_cost already stored, differs    -> CONFLICT (kept, flagged)
    - higher rank                          -> REPLACE
    - equal rank and newer observation     -> REPLACE
    - otherwise                            -> KEEP
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from billing_kernel.domain.types import SourceKind
from billing_kernel.domain.values import CURRENCY_TOLERANCE, round2, within_tolerance

_BILLED_RANKS = {
    SourceKind.SPREADSHEET: 3,
    SourceKind.INVOICE_FETCH: 2,
    SourceKind.LIVE_FEED: 1,
}

_OBSERVED_RANKS = {
    SourceKind.LIVE_FEED: 3,
    SourceKind.INVOICE_FETCH: 2,
    SourceKind.SPREADSHEET: 1,
}

BILLED_FIELDS = frozenset({"billed_amount"})
IMMUTABLE_FIELDS = frozenset({"base_cost"})


def source_rank(field_name: str, source: SourceKind) -> int:
    ranks = _BILLED_RANKS if field_name in BILLED_FIELDS else _OBSERVED_RANKS
    return ranks[SourceKind(source)]


class MergeAction(str, Enum):
    NOOP = "noop"
    PROMOTE = "promote"
    REPLACE = "replace"
    KEEP = "keep"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class Observation:
    value: Any
    source: SourceKind
    observed_at: datetime


@dataclass(frozen=True)
class MergeDecision:
    field: str
    action: MergeAction
    value: Any
    provenance: dict | None

    @property
    def writes(self) -> bool:
        return self.action is MergeAction.REPLACE


def provenance_entry(field_name: str, obs: Observation) -> dict:
    return {
        "source": SourceKind(obs.source).value,
        "rank": source_rank(field_name, obs.source),
        "observed_at": obs.observed_at.isoformat(),
    }


def _same_value(a: Any, b: Any) -> bool:
    if isinstance(a, Decimal) or isinstance(b, Decimal):
        if a is None or b is None:
            return False
        return Decimal(a) == Decimal(b)
    return a == b


def _as_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def merge_field(
    field_name: str,
    current: Any,
    current_provenance: Mapping | None,
    incoming: Observation,
) -> MergeDecision:
    """Decide what happens to one field when a new observation arrives."""
    incoming_prov = provenance_entry(field_name, incoming)
    current_rank = int(current_provenance["rank"]) if current_provenance else 0

    if _same_value(current, incoming.value):
        if current_provenance and incoming_prov["rank"] > current_rank:
            return MergeDecision(field_name, MergeAction.PROMOTE, current, incoming_prov)
        return MergeDecision(field_name, MergeAction.NOOP, current, None)
    if current is None:
        return MergeDecision(field_name, MergeAction.REPLACE, incoming.value, incoming_prov)
    if field_name in IMMUTABLE_FIELDS:
        return MergeDecision(field_name, MergeAction.CONFLICT, current, None)

    if incoming_prov["rank"] > current_rank:
        return MergeDecision(field_name, MergeAction.REPLACE, incoming.value, incoming_prov)
    if incoming_prov["rank"] == current_rank:
        current_seen = _as_datetime(current_provenance.get("observed_at")) if current_provenance else None
        if current_seen is None or incoming.observed_at > current_seen:
            return MergeDecision(field_name, MergeAction.REPLACE, incoming.value, incoming_prov)
    return MergeDecision(field_name, MergeAction.KEEP, current, None)


# ---------------------------------------------------------------------------
# Duplicate detection
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DuplicateCandidate:
    key: str
    vendor_invoice_id: str | None
    reference_id: str | None
    fee_type: str
    charge_date: date


@dataclass(frozen=True)
class DuplicateGroup:
    vendor_invoice_id: str
    reference_id: str
    fee_type: str
    charge_date: date
    keys: tuple[str, ...]

    @property
    def dedup_key(self) -> str:
        return (
            f"{self.vendor_invoice_id}|{self.reference_id}|"
            f"{self.fee_type}|{self.charge_date.isoformat()}"
        )


def find_duplicate_groups(candidates: Iterable[DuplicateCandidate]) -> list[DuplicateGroup]:
    """Groups of two or more sharing (reference, fee type, date) in one vendor invoice."""
    buckets: dict[tuple, list[str]] = defaultdict(list)
    for c in candidates:
        if c.vendor_invoice_id is None or c.reference_id is None:
            continue
        buckets[(c.vendor_invoice_id, c.reference_id, c.fee_type, c.charge_date)].append(c.key)

    groups = [
        DuplicateGroup(vi, ref, fee, day, tuple(sorted(keys)))
        for (vi, ref, fee, day), keys in buckets.items()
        if len(keys) > 1
    ]
    return sorted(groups, key=lambda g: g.dedup_key)


# ---------------------------------------------------------------------------
# Vendor total cross-check
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class VendorTotalCheck:
    vendor_invoice_id: str
    canonical_total: Decimal
    reported_total: Decimal | None

    tolerance: Decimal = CURRENCY_TOLERANCE

    @property
    def difference(self) -> Decimal | None:
        if self.reported_total is None:
            return None
        return round2(self.canonical_total - self.reported_total)

    @property
    def matches(self) -> bool:
        if self.reported_total is None:
            return True
        return within_tolerance(self.canonical_total, self.reported_total, self.tolerance)


def check_vendor_total(
    vendor_invoice_id: str,
    base_costs: Iterable[Decimal],
    reported_total: Decimal | None,
    tolerance: Decimal = CURRENCY_TOLERANCE,
) -> VendorTotalCheck:
    canonical = round2(sum(base_costs, Decimal("0")))
    return VendorTotalCheck(vendor_invoice_id, canonical, reported_total, tolerance)
