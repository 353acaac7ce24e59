"""
billing_services.entity_lookup -- SQLAlchemy-backed EntityLookup.

Responsibility:
    Answer the attribution and pricing engines' entity questions (who owns
    shipment X, what is its billable weight) from the local mirror tables.

Architecture position:
    Services -- imperative shell implementing the engine-side
    ``billing_engines.attribution.EntityLookup`` protocol.

Invariants enforced:
    - Read-only: never writes mirror tables.
    - Answers are memoised per instance; create one lookup per run so a
      run sees one consistent view.
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from billing_engines.attribution import ShipmentFacts
from billing_kernel.models.entities import InventorySlot, ReceivingOrder, Return, Shipment

_MISSING = object()


class SqlEntityLookup:
    """EntityLookup over the shipments / returns / receiving_orders / inventory_slots mirrors."""

    def __init__(self, session: Session):
        self._session = session
        self._cache: dict[tuple[str, str], object] = {}

    def _memo(self, kind: str, key: str, load):
        cached = self._cache.get((kind, key), _MISSING)
        if cached is _MISSING:
            cached = load()
            self._cache[(kind, key)] = cached
        return cached

    def _tenant_of(self, model: type, entity_id: str) -> str | None:
        return self._session.execute(
            select(model.tenant_id).where(model.id == entity_id)
        ).scalar_one_or_none()

    def shipment(self, shipment_id: str) -> ShipmentFacts | None:
        def load() -> ShipmentFacts | None:
            row = self._session.get(Shipment, shipment_id)
            if row is None:
                return None
            return ShipmentFacts(
                shipment_id=row.id,
                tenant_id=row.tenant_id,
                order_category=row.order_category,
                carrier_option_id=row.carrier_option_id,
                billable_weight_oz=row.billable_weight_oz,
            )

        return self._memo("shipment", shipment_id, load)

    def return_tenant(self, return_id: str) -> str | None:
        return self._memo("return", return_id, lambda: self._tenant_of(Return, return_id))

    def receiving_order_tenant(self, order_id: str) -> str | None:
        return self._memo(
            "receiving", order_id, lambda: self._tenant_of(ReceivingOrder, order_id)
        )

    def inventory_tenant(self, inventory_id: str) -> str | None:
        return self._memo(
            "inventory", inventory_id, lambda: self._tenant_of(InventorySlot, inventory_id)
        )
