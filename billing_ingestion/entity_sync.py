"""
EntityMirrorService -- keep local mirrors of vendor entities.

Responsibility:
    Upsert shipments, returns, receiving orders and inventory slots as the
    vendor reports them, resolving the owning tenant from the vendor
    merchant id (``tenant_merchant_ids``).  Shipment dimensional and
    billable weights are derived here, once, on write.

Architecture position:
    Ingestion > Services -- imperative shell.  Weight rules come from
    billing_engines.weights.

Invariants enforced:
    - Mirror primary keys are the vendor's identifiers; writes are upserts.
    - A known tenant is never replaced by an unknown one (a record whose
      merchant id maps to nobody keeps the stored tenant).

Raw record keys (camelCase, snake_case accepted):
    shipment: id, merchantId, carrierOptionId, orderCategory, weightOz,
              lengthIn, widthIn, heightIn, originCountry, destinationCountry
    return:   id, merchantId, originalShipmentId
    receiving order / inventory slot: id, merchantId
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from billing_engines.weights import derive_weights
from billing_kernel.db.base import SYSTEM_ACTOR_ID
from billing_kernel.domain.types import RowOutcome
from billing_kernel.domain.values import to_decimal
from billing_kernel.logging_config import get_logger
from billing_kernel.models.entities import InventorySlot, ReceivingOrder, Return, Shipment
from billing_kernel.models.tenant import TenantMerchantId

logger = get_logger("ingestion.entity_sync")

_CAMEL = re.compile(r"(?<!^)(?=[A-Z])")


def _get(raw: Mapping[str, Any], name: str) -> Any:
    """Read ``name`` (camelCase) or its snake_case spelling; blank is None."""
    for key in (name, _CAMEL.sub("_", name).lower()):
        value = raw.get(key)
        if value is not None and value != "":
            return value
    return None


def _text(raw: Mapping[str, Any], name: str) -> str | None:
    value = _get(raw, name)
    return str(value) if value is not None else None


def _amount(raw: Mapping[str, Any], name: str):
    value = _get(raw, name)
    return to_decimal(value) if value is not None else None


class EntityMirrorService:
    """
    Upsert vendor entities into the local mirror tables.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT fetch from the vendor; callers pass the records.
    """

    def __init__(self, session: Session, actor_id: UUID | None = None):
        self._session = session
        self._actor_id = actor_id or SYSTEM_ACTOR_ID
        self._merchant_tenants: dict[str, str] | None = None

    def tenant_for_merchant(self, merchant_id: str | None) -> str | None:
        if merchant_id is None:
            return None
        if self._merchant_tenants is None:
            rows = self._session.execute(
                select(TenantMerchantId.merchant_id, TenantMerchantId.tenant_id)
            ).all()
            self._merchant_tenants = {m: t for m, t in rows}
        return self._merchant_tenants.get(str(merchant_id))

    def _upsert(self, model: type, entity_id: str, tenant_id: str | None, **fields: Any) -> Any:
        entity = self._session.get(model, entity_id)
        if entity is None:
            entity = model(id=entity_id, tenant_id=tenant_id, created_by_id=self._actor_id, **fields)
            self._session.add(entity)
        else:
            if tenant_id is not None:
                entity.tenant_id = tenant_id
            for name, value in fields.items():
                setattr(entity, name, value)
            entity.updated_by_id = self._actor_id
        return entity

    def _require_id(self, raw: Mapping[str, Any]) -> str:
        entity_id = _text(raw, "id")
        if entity_id is None:
            raise ValueError("id is required")
        return entity_id

    def upsert_shipment(self, raw: Mapping[str, Any]) -> Shipment:
        shipment_id = self._require_id(raw)
        merchant_id = _text(raw, "merchantId")
        actual = _amount(raw, "weightOz")
        length, width, height = (
            _amount(raw, "lengthIn"),
            _amount(raw, "widthIn"),
            _amount(raw, "heightIn"),
        )
        origin = _text(raw, "originCountry")
        destination = _text(raw, "destinationCountry")
        weights = derive_weights(
            actual_weight_oz=actual,
            length_in=length,
            width_in=width,
            height_in=height,
            origin_country=origin,
            destination_country=destination,
        )
        shipment = self._upsert(
            Shipment,
            shipment_id,
            self.tenant_for_merchant(merchant_id),
            merchant_id=merchant_id,
            carrier_option_id=_text(raw, "carrierOptionId"),
            order_category=_text(raw, "orderCategory"),
            actual_weight_oz=actual,
            length_in=length,
            width_in=width,
            height_in=height,
            origin_country=origin,
            destination_country=destination,
            dim_weight_oz=weights.dim_oz,
            billable_weight_oz=weights.billable_oz,
        )
        self._session.flush()
        return shipment

    def upsert_return(self, raw: Mapping[str, Any]) -> Return:
        entity = self._upsert(
            Return,
            self._require_id(raw),
            self.tenant_for_merchant(_text(raw, "merchantId")),
            original_shipment_id=_text(raw, "originalShipmentId"),
        )
        self._session.flush()
        return entity

    def upsert_receiving_order(self, raw: Mapping[str, Any]) -> ReceivingOrder:
        entity = self._upsert(
            ReceivingOrder,
            self._require_id(raw),
            self.tenant_for_merchant(_text(raw, "merchantId")),
        )
        self._session.flush()
        return entity

    def upsert_inventory_slot(self, raw: Mapping[str, Any]) -> InventorySlot:
        entity = self._upsert(
            InventorySlot,
            self._require_id(raw),
            self.tenant_for_merchant(_text(raw, "merchantId")),
        )
        self._session.flush()
        return entity

    def sync(self, kind: str, records: Iterable[Mapping[str, Any]]) -> list[RowOutcome]:
        """
        Upsert a batch of one entity kind: ``shipment``, ``return``,
        ``receiving_order`` or ``inventory_slot``.
        """
        writer = {
            "shipment": self.upsert_shipment,
            "return": self.upsert_return,
            "receiving_order": self.upsert_receiving_order,
            "inventory_slot": self.upsert_inventory_slot,
        }[kind]

        outcomes: list[RowOutcome] = []
        unowned = 0
        for index, raw in enumerate(records):
            key = _text(raw, "id") or f"row:{index}"
            try:
                with self._session.begin_nested():
                    entity = writer(raw)
            except ValueError as exc:
                outcomes.append(RowOutcome.failed(key, "INVALID_RECORD", str(exc)))
                continue
            if entity.tenant_id is None:
                unowned += 1
            outcomes.append(RowOutcome.succeeded(key))

        logger.info(
            "entities_synced",
            extra={"kind": kind, "total": len(outcomes), "without_tenant": unowned},
        )
        return outcomes
