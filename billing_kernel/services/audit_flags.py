"""
AuditFlagService -- raise, query and resolve review flags.

Responsibility:
    Every condition the pipeline must not silently absorb (an unattributed
    transaction, a missing rule, a suspected duplicate, a reconciliation
    mismatch, a guessed tenant) is recorded as an ``AuditFlag`` row.  This
    service owns the dedup key so re-running a batch finds the flag it
    already raised instead of adding another.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.
    Called by billing_ingestion and every billing_services component.

Invariants enforced:
    - One flag per ``(flag_type, subject)``: the dedup key is
      ``"{flag_type}:{subject}"`` and carries a unique constraint.
    - Raising an already-resolved flag does not reopen it.
    - Resolution is explicit and recorded (resolution, resolved_at,
      resolved_by_id).

Failure modes:
    - AuditFlagNotFoundError when resolving an unknown flag id.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing_kernel.db.base import SYSTEM_ACTOR_ID
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.domain.types import FlagStatus, FlagType
from billing_kernel.exceptions import AuditFlagNotFoundError
from billing_kernel.logging_config import get_logger
from billing_kernel.models.audit_flag import AuditFlag

logger = get_logger("services.audit_flags")


def flag_dedup_key(flag_type: FlagType, subject: str) -> str:
    return f"{FlagType(flag_type).value}:{subject}"


@dataclass(frozen=True)
class RaisedFlag:
    flag: AuditFlag
    created: bool


class AuditFlagService:
    """
    Idempotent access to the audit flag table.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT act on flags; the owning component decides what a
          resolution means (e.g. duplicate exclusion).
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()

    def _by_key(self, dedup_key: str) -> AuditFlag | None:
        return self._session.execute(
            select(AuditFlag).where(AuditFlag.dedup_key == dedup_key)
        ).scalar_one_or_none()

    def raise_flag(
        self,
        flag_type: FlagType,
        subject: str,
        message: str,
        *,
        transaction_id: UUID | None = None,
        vendor_invoice_id: str | None = None,
        invoice_id: UUID | None = None,
        tenant_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> RaisedFlag:
        """
        Record a flag unless one with the same type and subject exists.

        ``subject`` identifies what the flag is about (a vendor transaction
        id, a vendor invoice id, a duplicate group key) and must be stable
        across runs.
        """
        dedup_key = flag_dedup_key(flag_type, subject)
        existing = self._by_key(dedup_key)
        if existing is not None:
            return RaisedFlag(existing, created=False)

        flag = AuditFlag(
            flag_type=FlagType(flag_type).value,
            status=FlagStatus.OPEN.value,
            dedup_key=dedup_key,
            transaction_id=transaction_id,
            vendor_invoice_id=vendor_invoice_id,
            invoice_id=invoice_id,
            tenant_id=tenant_id,
            message=message,
            details=details or {},
            raised_at=self._clock.now(),
        )
        try:
            with self._session.begin_nested():
                self._session.add(flag)
                self._session.flush()
        except IntegrityError:
            # A concurrent run raised the same flag first.
            existing = self._by_key(dedup_key)
            if existing is None:
                raise
            return RaisedFlag(existing, created=False)

        logger.warning(
            "audit_flag_raised",
            extra={
                "flag_type": flag.flag_type,
                "dedup_key": dedup_key,
                "tenant_id": tenant_id,
                "vendor_invoice_id": vendor_invoice_id,
            },
        )
        return RaisedFlag(flag, created=True)

    def get(self, flag_id: UUID) -> AuditFlag:
        flag = self._session.get(AuditFlag, flag_id)
        if flag is None:
            raise AuditFlagNotFoundError(str(flag_id))
        return flag

    def resolve(
        self,
        flag_id: UUID,
        resolution: str,
        actor_id: UUID | None = None,
    ) -> AuditFlag:
        """Close a flag.  Resolving an already-resolved flag is a no-op."""
        flag = self.get(flag_id)
        if not flag.is_open:
            logger.info(
                "audit_flag_already_resolved",
                extra={"flag_id": str(flag_id), "resolution": flag.resolution},
            )
            return flag

        actor = actor_id or SYSTEM_ACTOR_ID
        flag.status = FlagStatus.RESOLVED.value
        flag.resolution = resolution
        flag.resolved_at = self._clock.now()
        flag.resolved_by_id = actor
        flag.updated_by_id = actor
        self._session.flush()

        logger.info(
            "audit_flag_resolved",
            extra={
                "flag_id": str(flag_id),
                "flag_type": flag.flag_type,
                "resolution": resolution,
            },
        )
        return flag

    def open_flags(
        self,
        *,
        flag_types: Iterable[FlagType] | None = None,
        tenant_id: str | None = None,
        vendor_invoice_ids: Iterable[str] | None = None,
        transaction_ids: Iterable[UUID] | None = None,
    ) -> list[AuditFlag]:
        stmt = select(AuditFlag).where(AuditFlag.status == FlagStatus.OPEN.value)
        if flag_types is not None:
            stmt = stmt.where(
                AuditFlag.flag_type.in_([FlagType(t).value for t in flag_types])
            )
        if tenant_id is not None:
            stmt = stmt.where(AuditFlag.tenant_id == tenant_id)
        if vendor_invoice_ids is not None:
            stmt = stmt.where(AuditFlag.vendor_invoice_id.in_(list(vendor_invoice_ids)))
        if transaction_ids is not None:
            stmt = stmt.where(AuditFlag.transaction_id.in_(list(transaction_ids)))
        return list(
            self._session.execute(
                stmt.order_by(AuditFlag.raised_at, AuditFlag.dedup_key)
            ).scalars()
        )
