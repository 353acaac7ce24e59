"""
billing_services.markup_rules -- audited maintenance of markup rules.

Responsibility:
    Create, edit and deactivate MarkupRule rows.  Every change appends a
    MarkupRuleHistory row carrying the previous and new values, so the
    rule that priced a transaction can always be reconstructed.

Architecture position:
    Services -- imperative shell.  Called by config_sync and by operators.

Invariants enforced:
    - Rules are never deleted, only deactivated.
    - An edit that changes nothing writes no history row.
    - ``billing_category`` and ``markup_type`` are validated against their
      enums; a weight bracket must not be empty.

Failure modes:
    - MarkupRuleNotFoundError for an unknown rule id.
    - ValueError for an unknown field, category, markup type or an empty
      weight bracket.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from billing_config.schema import MarkupRuleDef
from billing_kernel.db.base import SYSTEM_ACTOR_ID
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.domain.types import BillingCategory, MarkupType
from billing_kernel.exceptions import MarkupRuleNotFoundError
from billing_kernel.logging_config import get_logger
from billing_kernel.models.markup_rule import MarkupRule, MarkupRuleHistory

logger = get_logger("services.markup_rules")

RULE_FIELDS = (
    "name",
    "description",
    "tenant_id",
    "billing_category",
    "fee_type",
    "order_category",
    "carrier_option_id",
    "weight_min_oz",
    "weight_max_oz",
    "effective_from",
    "effective_to",
    "markup_type",
    "markup_value",
    "priority",
    "is_active",
)

CREATED = "created"
UPDATED = "updated"
DEACTIVATED = "deactivated"


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, date):
        return value.isoformat()
    return value


def snapshot(rule: MarkupRule) -> dict[str, Any]:
    return {f: _jsonable(getattr(rule, f)) for f in RULE_FIELDS}


def _validate(values: dict[str, Any]) -> None:
    unknown = set(values) - set(RULE_FIELDS)
    if unknown:
        raise ValueError(f"Unknown markup rule fields: {sorted(unknown)}")
    if "billing_category" in values:
        BillingCategory(values["billing_category"])
    if "markup_type" in values:
        MarkupType(values["markup_type"])
    low, high = values.get("weight_min_oz"), values.get("weight_max_oz")
    if low is not None and high is not None and low >= high:
        raise ValueError(f"Empty weight bracket [{low}, {high})")


def values_from_def(rule: MarkupRuleDef) -> dict[str, Any]:
    return {f: getattr(rule, f) for f in RULE_FIELDS}


class MarkupRuleService:
    """
    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT reprice anything; rule changes apply to the next pricing
          run (or an explicit forced reprice of draft transactions).
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()

    def get(self, rule_id: UUID) -> MarkupRule:
        rule = self._session.get(MarkupRule, rule_id)
        if rule is None:
            raise MarkupRuleNotFoundError(str(rule_id))
        return rule

    def find(self, name: str, tenant_id: str | None) -> MarkupRule | None:
        """Look a rule up by its natural key (scope + name)."""
        stmt = select(MarkupRule).where(MarkupRule.name == name)
        if tenant_id is None:
            stmt = stmt.where(MarkupRule.tenant_id.is_(None))
        else:
            stmt = stmt.where(MarkupRule.tenant_id == tenant_id)
        return self._session.execute(stmt).scalars().first()

    def list_rules(self, tenant_id: str | None = None, active_only: bool = True) -> list[MarkupRule]:
        stmt = select(MarkupRule)
        if tenant_id is not None:
            stmt = stmt.where((MarkupRule.tenant_id == tenant_id) | MarkupRule.tenant_id.is_(None))
        if active_only:
            stmt = stmt.where(MarkupRule.is_active.is_(True))
        return list(self._session.execute(stmt.order_by(MarkupRule.name)).scalars())

    def create_rule(
        self,
        values: dict[str, Any],
        actor_id: UUID | None = None,
        reason: str | None = None,
    ) -> MarkupRule:
        _validate(values)
        actor = actor_id or SYSTEM_ACTOR_ID
        rule = MarkupRule(created_by_id=actor, **values)
        self._session.add(rule)
        self._session.flush()
        self._record(rule, CREATED, None, snapshot(rule), actor, reason)
        logger.info(
            "markup_rule_created",
            extra={"rule_id": str(rule.id), "rule_name": rule.name, "tenant_id": rule.tenant_id},
        )
        return rule

    def update_rule(
        self,
        rule_id: UUID,
        changes: dict[str, Any],
        actor_id: UUID | None = None,
        reason: str | None = None,
    ) -> MarkupRule:
        """
        Apply ``changes`` to a rule.

        Returns:
            The rule, unchanged when every value already matched.
        """
        rule = self.get(rule_id)
        merged = {**{f: getattr(rule, f) for f in RULE_FIELDS}, **changes}
        _validate(merged)

        diff = {k: v for k, v in changes.items() if getattr(rule, k) != v}
        if not diff:
            return rule

        actor = actor_id or SYSTEM_ACTOR_ID
        before = snapshot(rule)
        for key, value in diff.items():
            setattr(rule, key, value)
        rule.updated_by_id = actor
        self._session.flush()

        change_type = DEACTIVATED if diff.get("is_active") is False else UPDATED
        self._record(rule, change_type, before, snapshot(rule), actor, reason)
        logger.info(
            "markup_rule_updated",
            extra={"rule_id": str(rule.id), "fields": sorted(diff), "change_type": change_type},
        )
        return rule

    def deactivate_rule(
        self,
        rule_id: UUID,
        actor_id: UUID | None = None,
        reason: str | None = None,
    ) -> MarkupRule:
        return self.update_rule(rule_id, {"is_active": False}, actor_id, reason)

    def history(self, rule_id: UUID) -> list[MarkupRuleHistory]:
        self.get(rule_id)
        return list(
            self._session.execute(
                select(MarkupRuleHistory)
                .where(MarkupRuleHistory.rule_id == rule_id)
                .order_by(MarkupRuleHistory.changed_at, MarkupRuleHistory.created_at)
            ).scalars()
        )

    def _record(
        self,
        rule: MarkupRule,
        change_type: str,
        before: dict | None,
        after: dict,
        actor: UUID,
        reason: str | None,
    ) -> None:
        self._session.add(
            MarkupRuleHistory(
                rule_id=rule.id,
                change_type=change_type,
                previous_values=before,
                new_values=after,
                change_reason=reason,
                changed_at=self._clock.now(),
                changed_by_id=actor,
                created_by_id=actor,
            )
        )
        self._session.flush()
