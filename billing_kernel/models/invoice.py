"""
Module: billing_kernel.models.invoice
Responsibility: ORM persistence for tenant invoices and their versioned line
    items.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/types.py only.

Invariants enforced:
    - invoice_number is unique across all tenants.
    - Line items are unique per (invoice, version, transaction).  A draft
      regeneration writes a new version; earlier versions remain as history.
    - Approved and paid invoices, and their line items, are immutable except
      for the approved -> paid transition (db/immutability.py).  Status
      transitions themselves are conditional UPDATEs on (status, version)
      issued by services/invoice_lifecycle.py.

Failure modes:
    - IntegrityError on duplicate invoice_number.
    - ImmutabilityViolationError on edits to a locked invoice.
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_kernel.db.base import TrackedBase, UUIDString
from billing_kernel.domain.types import InvoiceStatus


class Invoice(TrackedBase):
    """Weekly tenant invoice header."""

    __tablename__ = "invoices"

    __table_args__ = (
        UniqueConstraint("invoice_number", name="uq_invoice_number"),
        Index("idx_invoice_tenant_period", "tenant_id", "period_start"),
        Index("idx_invoice_status", "status"),
    )

    tenant_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("tenants.id"), nullable=False
    )

    invoice_number: Mapped[str] = mapped_column(String(40), nullable=False)

    status: Mapped[InvoiceStatus] = mapped_column(
        String(10), nullable=False, default=InvoiceStatus.DRAFT
    )

    version: Mapped[int] = mapped_column(nullable=False, default=1)

    invoice_date: Mapped[date] = mapped_column(nullable=False)

    period_start: Mapped[date] = mapped_column(nullable=False)

    period_end: Mapped[date] = mapped_column(nullable=False)

    storage_period_start: Mapped[date | None] = mapped_column(nullable=True)

    storage_period_end: Mapped[date | None] = mapped_column(nullable=True)

    subtotal: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    total_markup: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    total_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    vendor_invoice_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    approved_at: Mapped[datetime | None] = mapped_column(nullable=True)

    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)

    line_items: Mapped[list["InvoiceLineItem"]] = relationship(
        back_populates="invoice",
        order_by=lambda: [
            InvoiceLineItem.version,
            InvoiceLineItem.charge_date,
            InvoiceLineItem.reference_id,
        ],
        lazy="selectin",
    )

    @property
    def current_line_items(self) -> list["InvoiceLineItem"]:
        return [item for item in self.line_items if item.version == self.version]

    def __repr__(self) -> str:
        return f"<Invoice {self.invoice_number} v{self.version} ({self.status})>"


class InvoiceLineItem(TrackedBase):
    """Snapshot of one transaction's pricing at a given invoice version."""

    __tablename__ = "invoice_line_items"

    __table_args__ = (
        UniqueConstraint(
            "invoice_id", "version", "transaction_id", name="uq_invoice_line_item"
        ),
    )

    invoice_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("invoices.id"), nullable=False
    )

    version: Mapped[int] = mapped_column(nullable=False)

    transaction_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("transactions.id"), nullable=False
    )

    line_category: Mapped[str] = mapped_column(String(30), nullable=False)

    description: Mapped[str] = mapped_column(Text, nullable=False)

    fee_type: Mapped[str] = mapped_column(String(100), nullable=False)

    reference_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    charge_date: Mapped[date] = mapped_column(nullable=False)

    base_cost: Mapped[Decimal] = mapped_column(nullable=False)

    markup_applied: Mapped[Decimal] = mapped_column(nullable=False)

    markup_percentage: Mapped[Decimal] = mapped_column(nullable=False)

    billed_amount: Mapped[Decimal] = mapped_column(nullable=False)

    markup_rule_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    attribution_confidence: Mapped[str | None] = mapped_column(String(10), nullable=True)

    invoice: Mapped[Invoice] = relationship(back_populates="line_items")
