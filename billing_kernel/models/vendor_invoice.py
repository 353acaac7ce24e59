"""
Module: billing_kernel.models.vendor_invoice
Responsibility: ORM persistence for invoices issued by the vendor to the
    billing operator.  Their reported totals anchor reconciliation.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Payment-type vendor invoices are never billable.
    - closed_by_invoice_id is written once, when a tenant invoice covering
      this vendor invoice is approved.
"""

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import TrackedBase, UUIDString

PAYMENT_INVOICE_TYPE = "Payment"


class VendorInvoice(TrackedBase):
    __tablename__ = "vendor_invoices"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    invoice_type: Mapped[str] = mapped_column(String(50), nullable=False)

    invoice_date: Mapped[date] = mapped_column(nullable=False)

    reported_total: Mapped[Decimal | None] = mapped_column(nullable=True)

    closed_by_invoice_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("invoices.id"), nullable=True
    )

    @property
    def is_billable(self) -> bool:
        return self.invoice_type != PAYMENT_INVOICE_TYPE

    def __repr__(self) -> str:
        return f"<VendorInvoice {self.id} {self.invoice_type} {self.invoice_date}>"
