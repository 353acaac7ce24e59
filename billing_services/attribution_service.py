"""
billing_services.attribution_service -- assign tenants to vendor transactions.

Responsibility:
    Run the attribution strategies from billing_engines.attribution over
    every transaction that has no trusted tenant, persist the outcome, and
    flag what could not be attributed or was only guessed.

Architecture position:
    Services -- imperative shell over the pure attribution engine, the
    SqlEntityLookup and (optionally) the CredentialProber.

Order of strategies:
    direct -> invoice unanimous -> majority vote -> credential probe
    With ``probe_before_majority`` the probe runs before the majority vote.

Invariants enforced:
    - Candidates are transactions not on any invoice and not excluded whose
      tenant is missing or below high confidence.
    - A stored attribution is replaced only by a strictly stronger one, so
      re-running is a no-op.
    - Majority-vote results carry low confidence and a
      ``low-confidence-attribution`` flag; tenant and confidence are stored
      separately, never collapsed.
    - A transaction nothing resolves keeps ``tenant_id = NULL`` and gets an
      ``unattributed`` flag; it is excluded from invoicing, never dropped.
    - When a later run does attribute it, its open ``unattributed`` flag is
      resolved.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from billing_engines.attribution import (
    AttributionSubject,
    EntityLookup,
    ProbeAttempt,
    Resolution,
    count_votes,
    needs_attribution,
    resolve_direct,
    resolve_from_probes,
    resolve_majority,
    resolve_unanimous,
    should_replace,
)
from billing_kernel.db.base import SYSTEM_ACTOR_ID
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.domain.types import (
    AttributionStrategy,
    Confidence,
    FlagType,
    ReferenceKind,
    RowOutcome,
)
from billing_kernel.logging_config import get_logger
from billing_kernel.models.transaction import Transaction
from billing_kernel.services.audit_flags import AuditFlagService
from billing_services.credential_prober import CredentialProber, ProbeRequest
from billing_services.entity_lookup import SqlEntityLookup

logger = get_logger("services.attribution")

UNATTRIBUTED_RESOLUTION = "attributed"
UPGRADED_RESOLUTION = "reattributed"


def subject_for(txn: Transaction) -> AttributionSubject:
    return AttributionSubject(
        key=txn.vendor_transaction_id,
        reference_kind=ReferenceKind(txn.reference_type),
        reference_id=txn.reference_id,
        vendor_invoice_id=txn.vendor_invoice_id,
        tenant_id=txn.tenant_id,
        confidence=Confidence(txn.attribution_confidence) if txn.attribution_confidence else None,
        additional_details=txn.additional_details or {},
    )


@dataclass
class AttributionResult:
    outcomes: list[RowOutcome] = field(default_factory=list)
    by_strategy: dict[str, int] = field(default_factory=dict)
    unattributed: list[str] = field(default_factory=list)
    low_confidence: list[str] = field(default_factory=list)
    probe_attempts: dict[str, list[ProbeAttempt]] = field(default_factory=dict)

    def count(self, strategy: AttributionStrategy) -> int:
        return self.by_strategy.get(strategy.value, 0)


class AttributionService:
    """
    Persisting wrapper around the attribution strategies.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT decide pricing; unpriced attributed transactions are
          picked up by PricingService.
    """

    def __init__(
        self,
        session: Session,
        lookup: EntityLookup | None = None,
        prober: CredentialProber | None = None,
        clock: Clock | None = None,
        probe_before_majority: bool = False,
        actor_id: UUID | None = None,
    ):
        self._session = session
        self._lookup = lookup or SqlEntityLookup(session)
        self._prober = prober
        self._clock = clock or SystemClock()
        self._probe_first = probe_before_majority
        self._actor_id = actor_id or SYSTEM_ACTOR_ID
        self._flags = AuditFlagService(session, self._clock)

    # -- loading ---------------------------------------------------------------

    def _candidates(self, vendor_invoice_ids: Iterable[str] | None) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.invoice_id.is_(None))
            .where(Transaction.excluded_reason.is_(None))
            .where(
                or_(
                    Transaction.tenant_id.is_(None),
                    Transaction.attribution_confidence.is_(None),
                    Transaction.attribution_confidence != Confidence.HIGH.value,
                )
            )
        )
        if vendor_invoice_ids is not None:
            stmt = stmt.where(Transaction.vendor_invoice_id.in_(list(vendor_invoice_ids)))
        return list(
            self._session.execute(stmt.order_by(Transaction.vendor_transaction_id)).scalars()
        )

    def _group_voters(self, vendor_invoice_ids: set[str]) -> dict[str, list[AttributionSubject]]:
        """High-confidence members of each vendor invoice group, from the database."""
        if not vendor_invoice_ids:
            return {}
        rows = self._session.execute(
            select(Transaction)
            .where(Transaction.vendor_invoice_id.in_(sorted(vendor_invoice_ids)))
            .where(Transaction.tenant_id.is_not(None))
            .where(Transaction.attribution_confidence == Confidence.HIGH.value)
        ).scalars()
        groups: dict[str, list[AttributionSubject]] = defaultdict(list)
        for txn in rows:
            groups[txn.vendor_invoice_id].append(subject_for(txn))
        return groups

    # -- main entry point ----------------------------------------------------------

    def attribute(self, vendor_invoice_ids: Iterable[str] | None = None) -> AttributionResult:
        """
        Attribute every candidate transaction, optionally limited to some
        vendor invoices.
        """
        result = AttributionResult()
        candidates = self._candidates(vendor_invoice_ids)
        if not candidates:
            return result

        resolved: dict[str, Resolution] = {}

        # Strategy 1: direct.
        for txn in candidates:
            resolution = resolve_direct(subject_for(txn), self._lookup)
            if resolution is not None:
                self._apply(txn, resolution, resolved)

        # Flush so direct hits vote in their vendor invoice group.
        self._session.flush()
        residual = [t for t in candidates if needs_attribution(subject_for(t))]

        # Strategy 2: unanimous group.
        groups = self._group_voters({t.vendor_invoice_id for t in residual if t.vendor_invoice_id})
        split: list[Transaction] = []
        for txn in residual:
            votes = count_votes(groups.get(txn.vendor_invoice_id, ())) if txn.vendor_invoice_id else {}
            resolution = resolve_unanimous(votes)
            if resolution is not None:
                self._apply(txn, resolution, resolved)
            else:
                split.append(txn)

        if self._probe_first:
            split = self._probe(split, resolved, result)
            split = self._majority(split, groups, resolved)
        else:
            split = self._majority(split, groups, resolved)
            split = self._probe(split, resolved, result)

        self._session.flush()
        self._record(candidates, resolved, result)
        logger.info(
            "attribution_completed",
            extra={
                "candidates": len(candidates),
                "by_strategy": result.by_strategy,
                "unattributed": len(result.unattributed),
                "low_confidence": len(result.low_confidence),
            },
        )
        return result

    # -- strategies 3 and 4 ----------------------------------------------------------

    def _majority(
        self,
        pending: list[Transaction],
        groups: dict[str, list[AttributionSubject]],
        resolved: dict[str, Resolution],
    ) -> list[Transaction]:
        left = []
        for txn in pending:
            votes = count_votes(groups.get(txn.vendor_invoice_id, ())) if txn.vendor_invoice_id else {}
            resolution = resolve_majority(votes)
            if resolution is not None and self._apply(txn, resolution, resolved):
                continue
            left.append(txn)
        return left

    def _probe(
        self,
        pending: list[Transaction],
        resolved: dict[str, Resolution],
        result: AttributionResult,
    ) -> list[Transaction]:
        if self._prober is None:
            return pending
        requests_ = [
            ProbeRequest(t.vendor_transaction_id, ReferenceKind(t.reference_type), t.reference_id)
            for t in pending
            if t.reference_id and ReferenceKind(t.reference_type).probe_resource is not None
            and t.tenant_id is None
        ]
        attempts = self._prober.probe_many(requests_)
        result.probe_attempts.update(attempts)

        left = []
        for txn in pending:
            resolution = resolve_from_probes(attempts.get(txn.vendor_transaction_id, []))
            if resolution is not None and self._apply(txn, resolution, resolved):
                continue
            left.append(txn)
        return left

    # -- persistence -----------------------------------------------------------------

    def _apply(self, txn: Transaction, resolution: Resolution, resolved: dict[str, Resolution]) -> bool:
        current = Confidence(txn.attribution_confidence) if txn.attribution_confidence else None
        if txn.tenant_id is not None and not should_replace(current, resolution):
            return False
        txn.tenant_id = resolution.tenant_id
        txn.attribution_confidence = resolution.confidence.value
        txn.attribution_strategy = resolution.strategy.value
        txn.updated_by_id = self._actor_id
        resolved[txn.vendor_transaction_id] = resolution
        logger.debug(
            "transaction_attributed",
            extra={
                "vendor_transaction_id": txn.vendor_transaction_id,
                "tenant_id": resolution.tenant_id,
                "confidence": resolution.confidence.value,
                "strategy": resolution.strategy.value,
            },
        )
        return True

    def _record(
        self,
        candidates: list[Transaction],
        resolved: dict[str, Resolution],
        result: AttributionResult,
    ) -> None:
        newly_attributed: list[UUID] = []
        upgraded: list[UUID] = []
        for txn in candidates:
            key = txn.vendor_transaction_id
            resolution = resolved.get(key)
            if resolution is not None:
                strategy = resolution.strategy.value
                result.by_strategy[strategy] = result.by_strategy.get(strategy, 0) + 1
                result.outcomes.append(RowOutcome.succeeded(key, strategy))
                newly_attributed.append(txn.id)
                if resolution.confidence is not Confidence.LOW:
                    upgraded.append(txn.id)
            elif txn.tenant_id is None:
                result.outcomes.append(RowOutcome.skipped(key, "unattributed"))
            else:
                result.outcomes.append(RowOutcome.skipped(key, "unchanged"))

            if txn.tenant_id is None:
                result.unattributed.append(key)
                self._flags.raise_flag(
                    FlagType.UNATTRIBUTED,
                    key,
                    f"No tenant could be determined for transaction {key}",
                    transaction_id=txn.id,
                    vendor_invoice_id=txn.vendor_invoice_id,
                    details={
                        "reference_type": txn.reference_type,
                        "reference_id": txn.reference_id,
                        "probe_attempts": [
                            {"tenant_id": a.tenant_id, "outcome": a.outcome.value}
                            for a in result.probe_attempts.get(key, [])
                        ],
                    },
                )
            elif txn.attribution_confidence == Confidence.LOW.value:
                result.low_confidence.append(key)
                self._flags.raise_flag(
                    FlagType.LOW_CONFIDENCE_ATTRIBUTION,
                    key,
                    f"Transaction {key} attributed to {txn.tenant_id} by majority vote",
                    transaction_id=txn.id,
                    vendor_invoice_id=txn.vendor_invoice_id,
                    tenant_id=txn.tenant_id,
                    details={"strategy": txn.attribution_strategy},
                )

        if newly_attributed:
            for flag in self._flags.open_flags(
                flag_types=[FlagType.UNATTRIBUTED], transaction_ids=newly_attributed
            ):
                self._flags.resolve(flag.id, UNATTRIBUTED_RESOLUTION, self._actor_id)
        if upgraded:
            for flag in self._flags.open_flags(
                flag_types=[FlagType.LOW_CONFIDENCE_ATTRIBUTION], transaction_ids=upgraded
            ):
                self._flags.resolve(flag.id, UPGRADED_RESOLUTION, self._actor_id)
