"""
Module: billing_kernel.models.entities
Responsibility: Local mirrors of vendor-side entities that transactions
    reference: shipments, returns, receiving orders and inventory slots.
    Each mirror records which tenant owns the entity, which is what direct
    attribution reads.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Primary keys are the vendor's own identifiers.
    - Shipment dim_weight_oz / billable_weight_oz are derived once on write
      (billing_engines.weights) and then only read.
"""

from decimal import Decimal

from sqlalchemy import ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import TrackedBase


class Shipment(TrackedBase):
    __tablename__ = "shipments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    tenant_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("tenants.id"), nullable=True
    )

    merchant_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    carrier_option_id: Mapped[str | None] = mapped_column(String(50), nullable=True)

    order_category: Mapped[str | None] = mapped_column(String(50), nullable=True)

    actual_weight_oz: Mapped[Decimal | None] = mapped_column(nullable=True)

    length_in: Mapped[Decimal | None] = mapped_column(nullable=True)

    width_in: Mapped[Decimal | None] = mapped_column(nullable=True)

    height_in: Mapped[Decimal | None] = mapped_column(nullable=True)

    origin_country: Mapped[str | None] = mapped_column(String(2), nullable=True)

    destination_country: Mapped[str | None] = mapped_column(String(2), nullable=True)

    dim_weight_oz: Mapped[Decimal | None] = mapped_column(nullable=True)

    billable_weight_oz: Mapped[Decimal | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<Shipment {self.id} tenant={self.tenant_id}>"


class Return(TrackedBase):
    __tablename__ = "returns"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    tenant_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("tenants.id"), nullable=True
    )

    original_shipment_id: Mapped[str | None] = mapped_column(String(64), nullable=True)


class ReceivingOrder(TrackedBase):
    __tablename__ = "receiving_orders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    tenant_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("tenants.id"), nullable=True
    )


class InventorySlot(TrackedBase):
    """Inventory item held in storage, keyed by the vendor inventory id."""

    __tablename__ = "inventory_slots"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    tenant_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("tenants.id"), nullable=True
    )
