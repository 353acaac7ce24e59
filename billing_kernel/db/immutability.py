"""
ORM-Level Immutability Enforcement.

===============================================================================
WHAT IS PROTECTED
===============================================================================

Entity            | When Immutable                     | Fields
------------------|------------------------------------|---------------------------
Transaction       | base_cost, once written            | base_cost
Transaction       | while on an approved/paid invoice  | pricing + attribution
Invoice           | after status leaves DRAFT          | everything except the
                  |                                    | approved -> paid fields
InvoiceLineItem   | when parent invoice is not DRAFT   | insert / update / delete

===============================================================================
HOW IT WORKS
===============================================================================

A single Session ``before_flush`` listener walks ``session.new``,
``session.dirty`` and ``session.deleted`` before the flush plan is built
and checks attribute history:

    session.flush()
         |
         v
    [before_flush] --> _check_*() --> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

Conditional UPDATE statements issued by services/invoice_lifecycle.py go
through Core, not the unit of work, and are not seen here; they carry their
own (status, version) predicate.

updated_at / updated_by_id are audit metadata and may always change.

===============================================================================
USAGE
===============================================================================

    from billing_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # Called once at startup

To temporarily disable (TESTS ONLY):

    unregister_immutability_listeners()
"""

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import get_history

from billing_kernel.domain.types import InvoiceStatus
from billing_kernel.exceptions import ImmutabilityViolationError
from billing_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_AUDIT_FIELDS = frozenset({"updated_at", "updated_by_id"})

# Fields on a transaction that an approved invoice has already snapshotted.
_INVOICED_TRANSACTION_FIELDS = frozenset(
    {
        "base_cost",
        "billed_amount",
        "markup_percentage",
        "markup_applied",
        "markup_rule_id",
        "tenant_id",
        "attribution_confidence",
        "attribution_strategy",
        "invoice_id",
        "excluded_reason",
    }
)

# The only invoice fields the approved -> paid transition may touch.
_PAYMENT_FIELDS = frozenset({"status", "paid_at", "version"})


def _blocked(entity_type: str, entity_id: str, operation: str, reason: str):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": entity_id,
            "operation": operation,
            "reason": reason,
        },
    )
    return ImmutabilityViolationError(
        entity_type=entity_type, entity_id=entity_id, reason=reason
    )


def _changed_fields(target) -> list[str]:
    return [
        attr.key
        for attr in inspect(target).attrs
        if attr.key not in _AUDIT_FIELDS and attr.history.has_changes()
    ]


def _previous_value(target, field: str):
    """Value as loaded from the database, before this flush."""
    hist = get_history(target, field)
    if hist.deleted:
        return hist.deleted[0]
    if hist.unchanged:
        return hist.unchanged[0]
    return None


def _is_locked(status) -> bool:
    return status is not None and InvoiceStatus(status).is_locked


def _check_transaction(session: Session, target) -> None:
    base_hist = get_history(target, "base_cost")
    if base_hist.deleted and base_hist.added:
        old, new = base_hist.deleted[0], base_hist.added[0]
        if old is not None and old != new:
            raise _blocked(
                "Transaction",
                target.vendor_transaction_id,
                "UPDATE",
                f"base_cost is immutable once written ({old} -> {new})",
            )

    changed = set(_changed_fields(target)) & _INVOICED_TRANSACTION_FIELDS
    if not changed:
        return

    from billing_kernel.models.invoice import Invoice

    invoice_id = _previous_value(target, "invoice_id")
    if invoice_id is None:
        return
    with session.no_autoflush:
        invoice = session.get(Invoice, invoice_id)
    if invoice is not None and _is_locked(_previous_value(invoice, "status")):
        raise _blocked(
            "Transaction",
            target.vendor_transaction_id,
            "UPDATE",
            f"fields {sorted(changed)} are frozen by {invoice.status} "
            f"invoice {invoice.invoice_number}",
        )


def _check_invoice(target) -> None:
    if not _is_locked(_previous_value(target, "status")):
        return

    changed = set(_changed_fields(target))
    was_approved = _previous_value(target, "status") == InvoiceStatus.APPROVED
    if was_approved and changed <= _PAYMENT_FIELDS and target.status == InvoiceStatus.PAID:
        return
    if changed:
        raise _blocked(
            "Invoice",
            target.invoice_number,
            "UPDATE",
            f"cannot modify {sorted(changed)} on {_previous_value(target, 'status')} invoice",
        )


def _check_line_item(session: Session, target, operation: str) -> None:
    from billing_kernel.models.invoice import Invoice

    if target.invoice_id is None:
        return
    with session.no_autoflush:
        invoice = session.get(Invoice, target.invoice_id)
    if invoice is None:
        return
    if _is_locked(_previous_value(invoice, "status")):
        raise _blocked(
            "InvoiceLineItem",
            str(target.id),
            operation,
            f"line items of {invoice.status} invoice {invoice.invoice_number} are immutable",
        )


def _check_invoice_delete(target) -> None:
    if _is_locked(_previous_value(target, "status")):
        raise _blocked(
            "Invoice",
            target.invoice_number,
            "DELETE",
            "approved and paid invoices cannot be deleted",
        )


def _enforce_immutability_before_flush(session, flush_context, instances):
    """Run every immutability check against the pending unit of work."""
    from billing_kernel.models.invoice import Invoice, InvoiceLineItem
    from billing_kernel.models.transaction import Transaction

    for obj in list(session.dirty):
        if not session.is_modified(obj, include_collections=False):
            continue
        if isinstance(obj, Transaction):
            _check_transaction(session, obj)
        elif isinstance(obj, Invoice):
            _check_invoice(obj)
        elif isinstance(obj, InvoiceLineItem):
            _check_line_item(session, obj, "UPDATE")

    for obj in list(session.new):
        if isinstance(obj, InvoiceLineItem):
            _check_line_item(session, obj, "INSERT")

    for obj in list(session.deleted):
        if isinstance(obj, Invoice):
            _check_invoice_delete(obj)
        elif isinstance(obj, InvoiceLineItem):
            _check_line_item(session, obj, "DELETE")


def register_immutability_listeners() -> None:
    """
    Register the immutability listener on all sessions.

    Idempotent; call once at startup after models are imported.
    """
    if not event.contains(Session, "before_flush", _enforce_immutability_before_flush):
        event.listen(Session, "before_flush", _enforce_immutability_before_flush)


def unregister_immutability_listeners() -> None:
    """Remove the immutability listener. FOR TESTING ONLY."""
    if event.contains(Session, "before_flush", _enforce_immutability_before_flush):
        event.remove(Session, "before_flush", _enforce_immutability_before_flush)
