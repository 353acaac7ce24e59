"""
Module: billing_engines.markup
Responsibility:
    Select the single applicable markup rule for a transaction and compute
    its billed amount.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import billing_kernel.domain.

Selection ("most matchers wins"):
    1. Keep rules that are active, whose effective window contains the
       charge date, whose scope is global or the transaction's tenant, and
       whose every non-null matcher equals the transaction attribute
       (billing category, fee type, order category, carrier option id,
       weight bracket ``min <= billable_weight < max``).
    2. Rank by specificity: one point per non-null matcher, one for tenant
       scope, one for a weight bracket.  Higher wins.
    3. Tie-break by priority (higher first), then rule id ascending.

    Selection is a pure function of (rules, context); input order never
    affects the result.

Computation:
    percentage -> round2(base * (1 + v / 100))
    fixed      -> round2(base + v)
    markup_applied    = billed - base
    markup_percentage = round2(markup_applied / base * 100), 0 when base is 0

Failure modes:
    - ValueError on an unknown markup_type.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from billing_engines.tracer import traced_engine
from billing_kernel.domain.types import BillingCategory, MarkupType, ReferenceKind
from billing_kernel.domain.values import HUNDRED, ZERO, round2, within_tolerance

STANDARD_FEE_TYPE = "Standard"
SHIPPING_FEE = "Shipping"
CREDIT_FEE = "Credit"


@dataclass(frozen=True)
class RuleSpec:
    """Engine-side view of a markup rule; a None matcher is a wildcard."""

    rule_id: str
    name: str
    billing_category: str
    markup_type: str
    markup_value: Decimal
    tenant_id: str | None = None
    fee_type: str | None = None
    order_category: str | None = None
    carrier_option_id: str | None = None
    weight_min_oz: Decimal | None = None
    weight_max_oz: Decimal | None = None
    effective_from: date | None = None
    effective_to: date | None = None
    priority: int = 0
    is_active: bool = True

    @property
    def has_weight_bracket(self) -> bool:
        return self.weight_min_oz is not None or self.weight_max_oz is not None

    @property
    def specificity(self) -> int:
        matchers = (
            self.billing_category,
            self.fee_type,
            self.order_category,
            self.carrier_option_id,
        )
        score = sum(1 for m in matchers if m is not None)
        if self.tenant_id is not None:
            score += 1
        if self.has_weight_bracket:
            score += 1
        return score


@dataclass(frozen=True)
class PricingContext:
    """Attributes of one transaction that rule matchers compare against."""

    tenant_id: str
    billing_category: str
    fee_type: str
    charge_date: date
    order_category: str | None = None
    carrier_option_id: str | None = None
    billable_weight_oz: Decimal | None = None


@dataclass(frozen=True)
class MarkupResult:
    base_cost: Decimal
    billed_amount: Decimal
    markup_applied: Decimal
    markup_percentage: Decimal
    rule_id: str | None = None
    rule_name: str | None = None

    @property
    def matched(self) -> bool:
        return self.rule_id is not None


def shipment_fee_type(order_category: str | None) -> str:
    """Fee type a shipping charge is priced under: ``Standard`` or the order category."""
    return order_category or STANDARD_FEE_TYPE


def billing_category_for(reference_kind: ReferenceKind, fee_type: str) -> BillingCategory:
    """Which rule family prices a transaction."""
    if fee_type == CREDIT_FEE:
        return BillingCategory.CREDITS
    if reference_kind is ReferenceKind.SHIPMENT:
        if fee_type == SHIPPING_FEE:
            return BillingCategory.SHIPMENTS
        return BillingCategory.SHIPMENT_FEES
    if reference_kind is ReferenceKind.STORAGE_SLOT:
        return BillingCategory.STORAGE
    if reference_kind is ReferenceKind.RETURN:
        return BillingCategory.RETURNS
    if reference_kind is ReferenceKind.RECEIVING_ORDER or "Receiving" in fee_type:
        return BillingCategory.RECEIVING
    return BillingCategory.SHIPMENT_FEES


def _in_weight_bracket(rule: RuleSpec, weight: Decimal | None) -> bool:
    if not rule.has_weight_bracket:
        return True
    if weight is None:
        return False
    if rule.weight_min_oz is not None and weight < rule.weight_min_oz:
        return False
    if rule.weight_max_oz is not None and weight >= rule.weight_max_oz:
        return False
    return True


def rule_matches(rule: RuleSpec, ctx: PricingContext) -> bool:
    if not rule.is_active:
        return False
    if rule.effective_from is not None and ctx.charge_date < rule.effective_from:
        return False
    if rule.effective_to is not None and ctx.charge_date > rule.effective_to:
        return False
    if rule.tenant_id is not None and rule.tenant_id != ctx.tenant_id:
        return False
    if rule.billing_category != ctx.billing_category:
        return False
    if rule.fee_type is not None and rule.fee_type != ctx.fee_type:
        return False
    if rule.order_category is not None and rule.order_category != ctx.order_category:
        return False
    if rule.carrier_option_id is not None and rule.carrier_option_id != ctx.carrier_option_id:
        return False
    return _in_weight_bracket(rule, ctx.billable_weight_oz)


def _rank_key(rule: RuleSpec) -> tuple[int, int, str]:
    return (-rule.specificity, -rule.priority, rule.rule_id)


def select_rule(rules: Iterable[RuleSpec], ctx: PricingContext) -> RuleSpec | None:
    """Return the one winning rule, or None when nothing matches."""
    survivors = [rule for rule in rules if rule_matches(rule, ctx)]
    if not survivors:
        return None
    return min(survivors, key=_rank_key)


def effective_percentage(base_cost: Decimal, markup_applied: Decimal) -> Decimal:
    if base_cost == ZERO:
        return round2(ZERO)
    return round2(markup_applied / base_cost * HUNDRED)


def _result(base_cost: Decimal, billed: Decimal, rule: RuleSpec | None) -> MarkupResult:
    applied = billed - base_cost
    return MarkupResult(
        base_cost=base_cost,
        billed_amount=billed,
        markup_applied=applied,
        markup_percentage=effective_percentage(base_cost, applied),
        rule_id=rule.rule_id if rule else None,
        rule_name=rule.name if rule else None,
    )


def apply_percentage(base_cost: Decimal, percentage: Decimal) -> Decimal:
    return round2(base_cost * (1 + percentage / HUNDRED))


@traced_engine("markup", fingerprint_fields=("base_cost", "rule"))
def compute_markup(*, base_cost: Decimal, rule: RuleSpec | None) -> MarkupResult:
    """
    Price one transaction under ``rule``.

    With no rule the transaction bills at cost; the caller raises the
    no-rule-matched flag.
    """
    if rule is None:
        return _result(base_cost, round2(base_cost), None)

    markup_type = MarkupType(rule.markup_type)
    if markup_type is MarkupType.PERCENTAGE:
        billed = apply_percentage(base_cost, rule.markup_value)
    elif markup_type is MarkupType.FIXED:
        billed = round2(base_cost + rule.markup_value)
    else:
        raise ValueError(f"Unknown markup type: {rule.markup_type}")
    return _result(base_cost, billed, rule)


def inherit_credit_markup(
    *,
    credit_amount: Decimal,
    shipment_base_cost: Decimal,
    shipment_markup_percentage: Decimal | None,
    shipment_rule_id: str | None = None,
) -> MarkupResult | None:
    """
    Price a credit that refunds a shipment charge.

    A credit whose absolute amount equals the shipment's base cost (within
    one cent) reverses exactly what was billed: it carries the shipment's
    markup percentage.  Returns None when the credit is partial or the
    shipment is unpriced, so ordinary rule selection applies instead.
    """
    if shipment_markup_percentage is None:
        return None
    if not within_tolerance(abs(credit_amount), abs(shipment_base_cost)):
        return None
    billed = apply_percentage(credit_amount, shipment_markup_percentage)
    applied = billed - credit_amount
    return MarkupResult(
        base_cost=credit_amount,
        billed_amount=billed,
        markup_applied=applied,
        markup_percentage=effective_percentage(credit_amount, applied),
        rule_id=shipment_rule_id,
        rule_name="inherited from shipment",
    )
