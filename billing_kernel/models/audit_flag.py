"""
Module: billing_kernel.models.audit_flag
Responsibility: ORM persistence for review flags raised by the pipeline.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/types.py only.

Invariants enforced:
    - dedup_key is unique: re-running a batch never raises the same flag
      twice (services/audit_flags.py derives the key from type + subject).
    - A flag is resolved only by an explicit action recorded with
      resolution, resolved_at and resolved_by_id.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import JSON, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import TrackedBase, UUIDString
from billing_kernel.domain.types import FlagStatus, FlagType


class AuditFlag(TrackedBase):
    __tablename__ = "audit_flags"

    __table_args__ = (
        UniqueConstraint("dedup_key", name="uq_audit_flag_dedup"),
        Index("idx_audit_flag_status", "status"),
        Index("idx_audit_flag_vendor_invoice", "vendor_invoice_id"),
    )

    flag_type: Mapped[FlagType] = mapped_column(String(40), nullable=False)

    status: Mapped[FlagStatus] = mapped_column(
        String(10), nullable=False, default=FlagStatus.OPEN
    )

    dedup_key: Mapped[str] = mapped_column(String(255), nullable=False)

    transaction_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    vendor_invoice_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    invoice_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    tenant_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    message: Mapped[str] = mapped_column(Text, nullable=False)

    details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    raised_at: Mapped[datetime] = mapped_column(nullable=False)

    resolution: Mapped[str | None] = mapped_column(String(50), nullable=True)

    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)

    resolved_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    @property
    def is_open(self) -> bool:
        return self.status == FlagStatus.OPEN

    def __repr__(self) -> str:
        return f"<AuditFlag {self.flag_type} {self.dedup_key} ({self.status})>"
