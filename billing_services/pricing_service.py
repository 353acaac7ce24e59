"""
billing_services.pricing_service -- apply markup rules to transactions.

Responsibility:
    Price every attributed, unpriced, billable transaction: pick its one
    markup rule (billing_engines.markup), compute the billed amount and
    persist the result with the rule id.  Storage is priced per aggregate
    and spread back over daily rows; refunds of a shipment inherit the
    shipment's markup.

Architecture position:
    Services -- imperative shell over billing_engines.markup and
    billing_engines.storage.

Invariants enforced:
    - Only transactions that are attributed, not excluded and not on an
      approved or paid invoice are priced.
    - A vendor-authoritative spreadsheet billed amount is never overwritten,
      not even with ``force``.
    - No matching rule: billed = base cost, rule id NULL, and a
      ``no-rule-matched`` flag.  The transaction stays billable.
    - Pricing provenance is recorded at rank 0 so any vendor-reported
      billed amount outranks it.
    - A storage aggregate is always priced whole: one new daily row
      reprices every repriceable row of its group.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from billing_engines.attribution import EntityLookup
from billing_engines.markup import (
    CREDIT_FEE,
    SHIPPING_FEE,
    MarkupResult,
    PricingContext,
    RuleSpec,
    compute_markup,
    inherit_credit_markup,
    select_rule,
    shipment_fee_type,
)
from billing_engines.storage import StorageRow, parse_storage_reference, price_storage_group
from billing_kernel.db.base import SYSTEM_ACTOR_ID
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.domain.types import (
    BillingCategory,
    FlagType,
    InvoiceStatus,
    ReferenceKind,
    RowOutcome,
    SourceKind,
)
from billing_kernel.domain.values import ZERO
from billing_kernel.exceptions import BillingError, MissingRuleCoverageError
from billing_kernel.logging_config import get_logger
from billing_kernel.models.invoice import Invoice
from billing_kernel.models.markup_rule import MarkupRule
from billing_kernel.models.transaction import Transaction
from billing_kernel.services.audit_flags import AuditFlagService
from billing_services.entity_lookup import SqlEntityLookup

logger = get_logger("services.pricing")

PRICING_SOURCE = "pricing"


def rule_spec(rule: MarkupRule) -> RuleSpec:
    return RuleSpec(
        rule_id=str(rule.id),
        name=rule.name,
        billing_category=rule.billing_category,
        markup_type=rule.markup_type,
        markup_value=rule.markup_value,
        tenant_id=rule.tenant_id,
        fee_type=rule.fee_type,
        order_category=rule.order_category,
        carrier_option_id=rule.carrier_option_id,
        weight_min_oz=rule.weight_min_oz,
        weight_max_oz=rule.weight_max_oz,
        effective_from=rule.effective_from,
        effective_to=rule.effective_to,
        priority=rule.priority,
        is_active=rule.is_active,
    )


def _spreadsheet_priced(txn: Transaction) -> bool:
    prov = (txn.field_provenance or {}).get("billed_amount") or {}
    return prov.get("source") == SourceKind.SPREADSHEET.value


@dataclass
class PricingResult:
    outcomes: list[RowOutcome] = field(default_factory=list)
    priced: int = 0
    inherited: int = 0
    no_rule: list[str] = field(default_factory=list)


class PricingService:
    """
    Persisting wrapper around rule selection and markup computation.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT touch invoice line items; a draft picks up new prices
          when it is regenerated.
    """

    def __init__(
        self,
        session: Session,
        lookup: EntityLookup | None = None,
        clock: Clock | None = None,
        actor_id: UUID | None = None,
    ):
        self._session = session
        self._lookup = lookup or SqlEntityLookup(session)
        self._clock = clock or SystemClock()
        self._actor_id = actor_id or SYSTEM_ACTOR_ID
        self._flags = AuditFlagService(session, self._clock)

    def load_rules(self) -> list[RuleSpec]:
        rules = self._session.execute(select(MarkupRule)).scalars()
        return [rule_spec(r) for r in rules]

    @staticmethod
    def _repriceable():
        """Attributed, billable transactions not yet frozen on an approved invoice."""
        return (
            select(Transaction)
            .outerjoin(Invoice, Invoice.id == Transaction.invoice_id)
            .where(Transaction.tenant_id.is_not(None))
            .where(Transaction.excluded_reason.is_(None))
            .where(or_(Transaction.invoice_id.is_(None), Invoice.status == InvoiceStatus.DRAFT.value))
        )

    def _candidates(
        self,
        tenant_id: str | None,
        vendor_invoice_ids: Iterable[str] | None,
        force: bool,
    ) -> list[Transaction]:
        stmt = self._repriceable()
        if not force:
            stmt = stmt.where(Transaction.billed_amount.is_(None))
        if tenant_id is not None:
            stmt = stmt.where(Transaction.tenant_id == tenant_id)
        if vendor_invoice_ids is not None:
            stmt = stmt.where(Transaction.vendor_invoice_id.in_(list(vendor_invoice_ids)))
        rows = self._session.execute(stmt.order_by(Transaction.vendor_transaction_id)).scalars()
        return [t for t in rows if not _spreadsheet_priced(t)]

    def _storage_group(self, key: tuple) -> list[Transaction]:
        """
        Every repriceable row of one (tenant, vendor invoice, slot, location
        type) aggregate, priced or not.  Daily rows arrive across runs; the
        ratio is always taken over the whole aggregate.
        """
        tenant_id, vendor_invoice_id, inventory_id, location_type = key
        stmt = (
            self._repriceable()
            .where(Transaction.tenant_id == tenant_id)
            .where(Transaction.fee_category == BillingCategory.STORAGE.value)
        )
        if vendor_invoice_id is None:
            stmt = stmt.where(Transaction.vendor_invoice_id.is_(None))
        else:
            stmt = stmt.where(Transaction.vendor_invoice_id == vendor_invoice_id)

        group = []
        for txn in self._session.execute(stmt.order_by(Transaction.vendor_transaction_id)).scalars():
            ref = parse_storage_reference(txn.reference_id, txn.additional_details)
            if (ref.inventory_id, ref.location_type) != (inventory_id, location_type):
                continue
            if not _spreadsheet_priced(txn):
                group.append(txn)
        return group

    # -- context -----------------------------------------------------------------

    def context_for(self, txn: Transaction) -> PricingContext:
        kind = ReferenceKind(txn.reference_type)
        facts = None
        if kind is ReferenceKind.SHIPMENT and txn.reference_id:
            facts = self._lookup.shipment(txn.reference_id)
        fee_type = txn.fee_type
        if kind is ReferenceKind.SHIPMENT and txn.fee_type == SHIPPING_FEE:
            fee_type = shipment_fee_type(facts.order_category if facts else None)
        return PricingContext(
            tenant_id=txn.tenant_id,
            billing_category=txn.fee_category,
            fee_type=fee_type,
            charge_date=txn.charge_date,
            order_category=facts.order_category if facts else None,
            carrier_option_id=facts.carrier_option_id if facts else None,
            billable_weight_oz=facts.billable_weight_oz if facts else None,
        )

    # -- entry point -----------------------------------------------------------------

    def price(
        self,
        tenant_id: str | None = None,
        vendor_invoice_ids: Iterable[str] | None = None,
        force: bool = False,
    ) -> PricingResult:
        """
        Price candidate transactions.

        Args:
            tenant_id: Limit to one tenant.
            vendor_invoice_ids: Limit to some vendor invoices.
            force: Re-price already priced transactions (draft or
                uninvoiced only, spreadsheet amounts excepted).
        """
        rules = self.load_rules()
        now = self._clock.now()
        result = PricingResult()
        candidates = self._candidates(tenant_id, vendor_invoice_ids, force)

        storage_keys: set[tuple] = set()
        credits: list[Transaction] = []
        singles: list[Transaction] = []
        for txn in candidates:
            if txn.fee_category == BillingCategory.STORAGE.value:
                ref = parse_storage_reference(txn.reference_id, txn.additional_details)
                storage_keys.add((txn.tenant_id, txn.vendor_invoice_id, ref.inventory_id, ref.location_type))
            elif txn.fee_type == CREDIT_FEE:
                credits.append(txn)
            else:
                singles.append(txn)

        # Credits last among singles: they may inherit from a shipment priced here.
        for txn in singles + credits:
            self._guarded([txn], result, lambda t=txn: self._price_single(t, rules, now, result))
        for key in sorted(storage_keys, key=lambda k: tuple(str(p) for p in k)):
            group = self._storage_group(key)
            self._guarded(group, result, lambda g=group: self._price_storage(g, rules, now, result))

        logger.info(
            "transactions_priced",
            extra={
                "tenant_id": tenant_id,
                "candidates": len(candidates),
                "priced": result.priced,
                "inherited": result.inherited,
                "no_rule": len(result.no_rule),
                "failed": sum(1 for o in result.outcomes if o.error_code),
            },
        )
        return result

    def _guarded(self, txns: list[Transaction], result: PricingResult, work) -> None:
        try:
            with self._session.begin_nested():
                work()
        except BillingError as exc:
            logger.warning(
                "pricing_failed",
                extra={
                    "transactions": [t.vendor_transaction_id for t in txns],
                    "error_code": exc.code,
                    "error": str(exc),
                },
            )
            for txn in txns:
                result.outcomes.append(RowOutcome.failed(txn.vendor_transaction_id, exc.code, str(exc)))

    # -- pricing paths -------------------------------------------------------------

    def _shipping_charge(self, txn: Transaction) -> Transaction | None:
        if not txn.reference_id or ReferenceKind(txn.reference_type) is not ReferenceKind.SHIPMENT:
            return None
        return self._session.execute(
            select(Transaction)
            .where(Transaction.reference_id == txn.reference_id)
            .where(Transaction.fee_type == SHIPPING_FEE)
            .where(Transaction.billed_amount.is_not(None))
            .order_by(Transaction.charge_date, Transaction.vendor_transaction_id)
            .limit(1)
        ).scalar_one_or_none()

    def _price_single(self, txn: Transaction, rules: list[RuleSpec], now: datetime, result: PricingResult) -> None:
        if txn.fee_type == CREDIT_FEE:
            shipment = self._shipping_charge(txn)
            if shipment is not None:
                inherited = inherit_credit_markup(
                    credit_amount=txn.base_cost,
                    shipment_base_cost=shipment.base_cost,
                    shipment_markup_percentage=shipment.markup_percentage,
                    shipment_rule_id=str(shipment.markup_rule_id) if shipment.markup_rule_id else None,
                )
                if inherited is not None:
                    self._write(txn, inherited, now)
                    result.inherited += 1
                    result.priced += 1
                    result.outcomes.append(RowOutcome.succeeded(txn.vendor_transaction_id, "inherited"))
                    return

        ctx = self.context_for(txn)
        rule = select_rule(rules, ctx)
        priced = compute_markup(base_cost=txn.base_cost, rule=rule)
        self._finish(txn, ctx, priced, now, result)

    def _price_storage(self, group: list[Transaction], rules: list[RuleSpec], now: datetime, result: PricingResult) -> None:
        first = min(group, key=lambda t: (t.charge_date, t.vendor_transaction_id))
        ctx = self.context_for(first)
        rule = select_rule(rules, ctx)
        rows = [StorageRow(t.vendor_transaction_id, t.base_cost) for t in group]
        aggregate = compute_markup(base_cost=sum((r.base_cost for r in rows), ZERO), rule=rule)
        pricing = price_storage_group(rows, aggregate)
        for txn in group:
            self._finish(txn, ctx, pricing.rows[txn.vendor_transaction_id], now, result)

    def _finish(
        self,
        txn: Transaction,
        ctx: PricingContext,
        priced: MarkupResult,
        now: datetime,
        result: PricingResult,
    ) -> None:
        self._write(txn, priced, now)
        result.priced += 1
        pass_through = BillingCategory(ctx.billing_category).is_pass_through
        if priced.matched:
            logger.debug(
                "rule_selected",
                extra={
                    "vendor_transaction_id": txn.vendor_transaction_id,
                    "rule_id": priced.rule_id,
                    "rule_name": priced.rule_name,
                    "billed_amount": priced.billed_amount,
                    "pass_through": pass_through,
                },
            )
            result.outcomes.append(RowOutcome.succeeded(txn.vendor_transaction_id, priced.rule_id))
            return

        missing = MissingRuleCoverageError(txn.vendor_transaction_id, ctx.billing_category)
        logger.warning(
            "no_rule_matched",
            extra={
                "vendor_transaction_id": txn.vendor_transaction_id,
                "error_code": missing.code,
                "billing_category": ctx.billing_category,
                "fee_type": ctx.fee_type,
            },
        )
        result.no_rule.append(txn.vendor_transaction_id)
        result.outcomes.append(RowOutcome.succeeded(txn.vendor_transaction_id, "billed at cost"))
        self._flags.raise_flag(
            FlagType.NO_RULE_MATCHED,
            txn.vendor_transaction_id,
            str(missing),
            transaction_id=txn.id,
            vendor_invoice_id=txn.vendor_invoice_id,
            tenant_id=txn.tenant_id,
            details={
                "billing_category": ctx.billing_category,
                "pass_through": pass_through,
                "fee_type": ctx.fee_type,
                "order_category": ctx.order_category,
                "carrier_option_id": ctx.carrier_option_id,
            },
        )

    def _write(self, txn: Transaction, priced: MarkupResult, now: datetime) -> None:
        txn.billed_amount = priced.billed_amount
        txn.markup_applied = priced.markup_applied
        txn.markup_percentage = priced.markup_percentage
        txn.markup_rule_id = UUID(priced.rule_id) if priced.rule_id else None
        provenance = dict(txn.field_provenance or {})
        provenance["billed_amount"] = {
            "source": PRICING_SOURCE,
            "rank": 0,
            "observed_at": now.isoformat(),
        }
        txn.field_provenance = provenance
        txn.updated_by_id = self._actor_id
        self._session.flush()
