"""
Module: billing_kernel.models.markup_rule
Responsibility: ORM persistence for markup rules and their change history.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/types.py only.

Invariants enforced:
    - A rule with tenant_id NULL is global; otherwise it is tenant-scoped.
    - Every nullable matcher column is a wildcard when NULL.
    - Weight brackets are half-open: weight_min_oz <= w < weight_max_oz.
    - Rule edits append a MarkupRuleHistory row (services/markup_rules.py);
      history rows are never updated.
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import JSON, Boolean, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_kernel.db.base import TrackedBase, UUIDString
from billing_kernel.domain.types import MarkupType


class MarkupRule(TrackedBase):
    """One pricing rule.  Selection logic lives in billing_engines.markup."""

    __tablename__ = "markup_rules"

    __table_args__ = (
        Index("idx_markup_rule_category", "billing_category"),
        Index("idx_markup_rule_tenant", "tenant_id"),
    )

    tenant_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("tenants.id"), nullable=True
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)

    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    billing_category: Mapped[str] = mapped_column(String(30), nullable=False)

    fee_type: Mapped[str | None] = mapped_column(String(100), nullable=True)

    order_category: Mapped[str | None] = mapped_column(String(50), nullable=True)

    carrier_option_id: Mapped[str | None] = mapped_column(String(50), nullable=True)

    weight_min_oz: Mapped[Decimal | None] = mapped_column(nullable=True)

    weight_max_oz: Mapped[Decimal | None] = mapped_column(nullable=True)

    effective_from: Mapped[date | None] = mapped_column(nullable=True)

    effective_to: Mapped[date | None] = mapped_column(nullable=True)

    markup_type: Mapped[MarkupType] = mapped_column(
        String(20), nullable=False, default=MarkupType.PERCENTAGE
    )

    markup_value: Mapped[Decimal] = mapped_column(nullable=False)

    priority: Mapped[int] = mapped_column(nullable=False, default=0)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    history: Mapped[list["MarkupRuleHistory"]] = relationship(
        back_populates="rule",
        order_by="MarkupRuleHistory.changed_at",
    )

    def __repr__(self) -> str:
        scope = self.tenant_id or "global"
        return f"<MarkupRule {self.name} [{scope}] {self.markup_type} {self.markup_value}>"


class MarkupRuleHistory(TrackedBase):
    """Append-only audit of rule changes."""

    __tablename__ = "markup_rule_history"

    rule_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("markup_rules.id"), nullable=False
    )

    change_type: Mapped[str] = mapped_column(String(20), nullable=False)

    previous_values: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    new_values: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    change_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    changed_at: Mapped[datetime] = mapped_column(nullable=False)

    changed_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    rule: Mapped[MarkupRule] = relationship(back_populates="history")
