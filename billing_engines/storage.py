"""
Module: billing_engines.storage
Responsibility:
    Ratio pricing for storage charges.  The vendor bills storage as one
    row per inventory slot, location type and day; markup is decided once
    per (inventory id, location type) aggregate and spread back over the
    daily rows.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - One rule selection per aggregate (done by the caller with the
      aggregate's context).
    - ratio = aggregate_billed / aggregate_base (1 when the base is 0).
    - Each row bills round2(row_base * ratio); the cent residual goes to
      the row with the largest absolute base (ties: lowest key) so the
      group sum equals round2(aggregate_base * ratio) exactly.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from decimal import Decimal

from billing_engines.markup import MarkupResult, effective_percentage
from billing_kernel.domain.values import ZERO, round2


@dataclass(frozen=True)
class StorageReference:
    fc_id: str | None
    inventory_id: str | None
    location_type: str | None


def parse_storage_reference(
    reference_id: str | None,
    additional_details: Mapping | None = None,
) -> StorageReference:
    """
    Split a vendor storage reference ``{FC_ID}-{InventoryId}-{LocationType}``.

    ``additional_details`` (``InventoryId`` / ``LocationType``) fills in
    whatever the reference does not carry.
    """
    details = additional_details or {}
    parts = (reference_id or "").split("-", 2)
    fc_id = parts[0] if len(parts) >= 1 and parts[0] else None
    inventory_id = parts[1] if len(parts) >= 2 and parts[1] else None
    location_type = parts[2] if len(parts) >= 3 and parts[2] else None

    if inventory_id is None and details.get("InventoryId") is not None:
        inventory_id = str(details["InventoryId"])
    if location_type is None and details.get("LocationType"):
        location_type = str(details["LocationType"])
    return StorageReference(fc_id=fc_id, inventory_id=inventory_id, location_type=location_type)


@dataclass(frozen=True)
class StorageRow:
    key: str
    base_cost: Decimal


@dataclass(frozen=True)
class StorageGroupPricing:
    aggregate_base: Decimal
    aggregate_billed: Decimal
    ratio: Decimal
    rows: dict[str, MarkupResult]

    @property
    def group_total(self) -> Decimal:
        return sum((r.billed_amount for r in self.rows.values()), ZERO)


def price_storage_group(
    rows: Sequence[StorageRow],
    aggregate: MarkupResult,
) -> StorageGroupPricing:
    """
    Spread an aggregate's markup over its daily rows.

    Args:
        rows: Daily rows of one (inventory id, location type) group.
        aggregate: Result of pricing the summed base cost once.
    """
    if not rows:
        raise ValueError("Storage group has no rows")

    aggregate_base = sum((r.base_cost for r in rows), ZERO)
    if aggregate_base == ZERO:
        ratio = Decimal("1")
    else:
        ratio = aggregate.billed_amount / aggregate_base
    target = round2(aggregate_base * ratio)

    billed = {r.key: round2(r.base_cost * ratio) for r in rows}
    residual = target - sum(billed.values(), ZERO)
    if residual != ZERO:
        largest = min(rows, key=lambda r: (-abs(r.base_cost), r.key))
        billed[largest.key] += residual

    results = {}
    for row in rows:
        applied = billed[row.key] - row.base_cost
        results[row.key] = MarkupResult(
            base_cost=row.base_cost,
            billed_amount=billed[row.key],
            markup_applied=applied,
            markup_percentage=effective_percentage(row.base_cost, applied),
            rule_id=aggregate.rule_id,
            rule_name=aggregate.rule_name,
        )

    return StorageGroupPricing(
        aggregate_base=aggregate_base,
        aggregate_billed=aggregate.billed_amount,
        ratio=ratio,
        rows=results,
    )
