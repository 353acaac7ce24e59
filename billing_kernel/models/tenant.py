"""
Module: billing_kernel.models.tenant
Responsibility: ORM persistence for billed tenants, the vendor merchant ids
    that identify them, and the vendor credential each tenant owns.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - short_code is unique; it is embedded in every invoice number.
    - next_invoice_number is the single per-tenant counter row.  It is only
      advanced through services/invoice_counter.py (compare-and-swap).
    - A merchant id identifies at most one tenant.

Failure modes:
    - IntegrityError on duplicate short_code or merchant_id.
"""

from sqlalchemy import Boolean, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_kernel.db.base import TrackedBase


class Tenant(TrackedBase):
    """A client of the billing operator, invoiced weekly."""

    __tablename__ = "tenants"

    __table_args__ = (UniqueConstraint("short_code", name="uq_tenant_short_code"),)

    # Stable external identifier, also the tie-break key for majority votes.
    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    short_code: Mapped[str] = mapped_column(String(10), nullable=False)

    name: Mapped[str] = mapped_column(String(200), nullable=False)

    next_invoice_number: Mapped[int] = mapped_column(nullable=False, default=1)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    merchant_ids: Mapped[list["TenantMerchantId"]] = relationship(
        back_populates="tenant",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    credential: Mapped["TenantCredential | None"] = relationship(
        back_populates="tenant",
        cascade="all, delete-orphan",
        uselist=False,
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<Tenant {self.id}: {self.short_code}>"


class TenantMerchantId(TrackedBase):
    """Vendor merchant identifier belonging to a tenant."""

    __tablename__ = "tenant_merchant_ids"

    __table_args__ = (UniqueConstraint("merchant_id", name="uq_tenant_merchant_id"),)

    tenant_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("tenants.id"), nullable=False
    )

    merchant_id: Mapped[str] = mapped_column(String(64), nullable=False)

    tenant: Mapped[Tenant] = relationship(back_populates="merchant_ids")


class TenantCredential(TrackedBase):
    """
    Reference to the vendor API token a tenant authorizes us to use.

    Only the name of the environment variable holding the token is stored;
    the secret itself never touches the database.
    """

    __tablename__ = "tenant_credentials"

    __table_args__ = (UniqueConstraint("tenant_id", name="uq_tenant_credential"),)

    tenant_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("tenants.id"), nullable=False
    )

    token_env_var: Mapped[str] = mapped_column(String(100), nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    tenant: Mapped[Tenant] = relationship(back_populates="credential")
