"""
Module: billing_kernel.models.transaction
Responsibility: ORM persistence for canonical vendor transactions -- one row
    per vendor transaction id, merged from every source that reported it.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/types.py only.

Invariants enforced:
    - vendor_transaction_id is unique and never changes (upsert key).
    - base_cost is immutable once written (db/immutability.py).
    - Pricing and attribution fields are frozen while the transaction sits on
      an approved or paid invoice (db/immutability.py).
    - A transaction references at most one invoice (invoice_id).

Failure modes:
    - IntegrityError on duplicate vendor_transaction_id.
    - ImmutabilityViolationError on base_cost overwrite or edits to an
      invoiced transaction.
"""

from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import JSON, Boolean, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_kernel.db.base import TrackedBase, UUIDString
from billing_kernel.domain.types import ReferenceKind

if TYPE_CHECKING:
    from billing_kernel.models.invoice import Invoice


class Transaction(TrackedBase):
    """
    Canonical transaction.

    ``field_provenance`` maps a merged field name to
    ``{"source", "rank", "observed_at"}`` describing which observation the
    stored value came from.  It is always reassigned, never mutated in place.
    """

    __tablename__ = "transactions"

    __table_args__ = (
        UniqueConstraint("vendor_transaction_id", name="uq_transaction_vendor_id"),
        Index("idx_transaction_vendor_invoice", "vendor_invoice_id"),
        Index("idx_transaction_tenant", "tenant_id"),
        Index("idx_transaction_reference", "reference_id"),
        Index("idx_transaction_invoice", "invoice_id"),
    )

    vendor_transaction_id: Mapped[str] = mapped_column(String(64), nullable=False)

    reference_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    reference_type: Mapped[ReferenceKind] = mapped_column(
        String(30), nullable=False, default=ReferenceKind.OTHER
    )

    # Raw vendor string, kept for display only.
    vendor_reference_type: Mapped[str | None] = mapped_column(String(50), nullable=True)

    fee_type: Mapped[str] = mapped_column(String(100), nullable=False)

    fee_category: Mapped[str] = mapped_column(String(30), nullable=False)

    base_cost: Mapped[Decimal] = mapped_column(nullable=False)

    billed_amount: Mapped[Decimal | None] = mapped_column(nullable=True)

    markup_percentage: Mapped[Decimal | None] = mapped_column(nullable=True)

    markup_applied: Mapped[Decimal | None] = mapped_column(nullable=True)

    markup_rule_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("markup_rules.id"), nullable=True
    )

    tenant_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("tenants.id"), nullable=True
    )

    attribution_confidence: Mapped[str | None] = mapped_column(String(10), nullable=True)

    attribution_strategy: Mapped[str | None] = mapped_column(String(30), nullable=True)

    invoice_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("invoices.id"), nullable=True
    )

    vendor_invoice_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    charge_date: Mapped[date] = mapped_column(nullable=False)

    invoiced_status: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    additional_details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    field_provenance: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    # Set only by an explicit duplicate confirmation.
    excluded_reason: Mapped[str | None] = mapped_column(String(200), nullable=True)

    invoice: Mapped["Invoice | None"] = relationship(foreign_keys=[invoice_id])

    @property
    def is_priced(self) -> bool:
        return self.billed_amount is not None

    @property
    def is_billable(self) -> bool:
        return (
            self.tenant_id is not None
            and self.billed_amount is not None
            and self.excluded_reason is None
        )

    def __repr__(self) -> str:
        return (
            f"<Transaction {self.vendor_transaction_id}: {self.reference_type} "
            f"{self.reference_id} {self.fee_type} {self.base_cost}>"
        )
