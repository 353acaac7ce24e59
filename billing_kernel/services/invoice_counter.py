"""
InvoiceCounterService -- per-tenant invoice number allocation by compare-and-swap.

Responsibility:
    Hands out the next invoice sequence number for a tenant from the single
    ``tenants.next_invoice_number`` row.  The counter is advanced with a
    conditional UPDATE (``WHERE next_invoice_number = :expected``) instead of
    a row lock, so concurrent runs for the same tenant cannot both consume
    one number.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.
    Called by billing_services.invoice_assembler.

Invariants enforced:
    - Numbers are never reused: the counter only moves forward.
    - Numbers are never skipped: the caller peeks, creates the invoice, and
      only then advances; a failed creation leaves the counter untouched.

Failure modes:
    - TenantNotFoundError if the tenant row does not exist.
    - OptimisticLockError if another writer advanced the counter between
      peek and advance.
"""

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from billing_kernel.exceptions import OptimisticLockError, TenantNotFoundError
from billing_kernel.logging_config import get_logger
from billing_kernel.models.tenant import Tenant

logger = get_logger("services.invoice_counter")


class InvoiceCounterService:
    """
    Compare-and-swap access to the per-tenant invoice counter.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.

    Usage:
        n = counter.peek(tenant_id)
        ... create invoice numbered n ...
        counter.advance(tenant_id, expected=n)
    """

    def __init__(self, session: Session):
        self._session = session

    def peek(self, tenant_id: str) -> int:
        """Return the number the next invoice for this tenant should carry."""
        value = self._session.execute(
            select(Tenant.next_invoice_number).where(Tenant.id == tenant_id)
        ).scalar_one_or_none()
        if value is None:
            raise TenantNotFoundError(tenant_id)
        return value

    def advance(self, tenant_id: str, expected: int) -> int:
        """
        Move the counter from ``expected`` to ``expected + 1``.

        Returns:
            The new counter value.

        Raises:
            OptimisticLockError: If the counter no longer equals ``expected``.
        """
        result = self._session.execute(
            update(Tenant)
            .where(Tenant.id == tenant_id)
            .where(Tenant.next_invoice_number == expected)
            .values(next_invoice_number=expected + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning(
                "invoice_counter_conflict",
                extra={"tenant_id": tenant_id, "expected": expected},
            )
            raise OptimisticLockError("Tenant", tenant_id, f"next_invoice_number={expected}")

        tenant = self._session.get(Tenant, tenant_id)
        if tenant is not None:
            self._session.expire(tenant, ["next_invoice_number"])

        logger.debug(
            "invoice_number_allocated",
            extra={"tenant_id": tenant_id, "value": expected},
        )
        return expected + 1
