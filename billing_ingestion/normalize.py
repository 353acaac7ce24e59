"""
Module: billing_ingestion.normalize
Responsibility:
    Turn one raw vendor transaction record (live feed or per-invoice fetch)
    into a ``NormalizedTransaction``.  This is the single place vendor
    strings are mapped to ``ReferenceKind`` arms and transactions are
    assigned their billing category.

Accepted keys (camelCase as documented, snake_case as the API returns):
    transactionId, referenceId, referenceType, feeType, amount, chargeDate,
    invoicedStatus, vendorInvoiceId, additionalDetails

Failure modes:
    - ValueError naming the field when a required value is missing or
      unparseable.  The caller records a failed RowOutcome for the record.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from billing_engines.markup import billing_category_for
from billing_kernel.domain.types import BillingCategory, ReferenceKind
from billing_kernel.domain.values import to_decimal

_ALIASES = {
    "transactionId": ("transactionId", "transaction_id"),
    "referenceId": ("referenceId", "reference_id"),
    "referenceType": ("referenceType", "reference_type"),
    "feeType": ("feeType", "fee_type", "transaction_fee"),
    "amount": ("amount",),
    "chargeDate": ("chargeDate", "charge_date"),
    "invoicedStatus": ("invoicedStatus", "invoiced_status"),
    "vendorInvoiceId": ("vendorInvoiceId", "invoice_id", "vendor_invoice_id"),
    "additionalDetails": ("additionalDetails", "additional_details"),
}


def _pick(raw: Mapping[str, Any], name: str) -> Any:
    for key in _ALIASES[name]:
        value = raw.get(key)
        if value is not None and value != "":
            return value
    return None


def scope_to_vendor_invoice(raw: Mapping[str, Any], vendor_invoice_id: str) -> dict[str, Any]:
    """Copy of ``raw`` carrying ``vendor_invoice_id`` unless it already names one."""
    scoped = dict(raw)
    if _pick(raw, "vendorInvoiceId") is None:
        for key in _ALIASES["vendorInvoiceId"]:
            scoped.pop(key, None)
        scoped["vendorInvoiceId"] = vendor_invoice_id
    return scoped


def parse_charge_date(value: Any) -> date:
    """Accept a date, a datetime, or an ISO string (``Z`` suffix allowed)."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    if "T" in text or " " in text:
        return datetime.fromisoformat(text).date()
    return date.fromisoformat(text)


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in ("true", "1", "yes", "invoiced")


@dataclass(frozen=True)
class NormalizedTransaction:
    vendor_transaction_id: str
    reference_id: str | None
    reference_kind: ReferenceKind
    vendor_reference_type: str | None
    fee_type: str
    fee_category: BillingCategory
    base_cost: Decimal
    charge_date: date
    vendor_invoice_id: str | None
    vendor_invoiced: bool = False
    additional_details: dict = field(default_factory=dict)


def normalize_feed_record(raw: Mapping[str, Any]) -> NormalizedTransaction:
    """Validate and normalise one vendor transaction record."""
    txn_id = _pick(raw, "transactionId")
    if txn_id is None:
        raise ValueError("transactionId is required")

    fee_type = _pick(raw, "feeType")
    if fee_type is None:
        raise ValueError(f"{txn_id}: feeType is required")

    amount = _pick(raw, "amount")
    if amount is None:
        raise ValueError(f"{txn_id}: amount is required")
    try:
        base_cost = to_decimal(amount)
    except ValueError as exc:
        raise ValueError(f"{txn_id}: amount {amount!r} is not a number") from exc

    charge = _pick(raw, "chargeDate")
    if charge is None:
        raise ValueError(f"{txn_id}: chargeDate is required")
    try:
        charge_date = parse_charge_date(charge)
    except ValueError as exc:
        raise ValueError(f"{txn_id}: chargeDate {charge!r} is not a date") from exc

    vendor_ref_type = _pick(raw, "referenceType")
    kind = ReferenceKind.from_vendor(vendor_ref_type)
    reference_id = _pick(raw, "referenceId")
    vendor_invoice_id = _pick(raw, "vendorInvoiceId")
    details = _pick(raw, "additionalDetails") or {}
    if not isinstance(details, Mapping):
        raise ValueError(f"{txn_id}: additionalDetails must be an object")

    fee_type = str(fee_type).strip()
    return NormalizedTransaction(
        vendor_transaction_id=str(txn_id),
        reference_id=str(reference_id) if reference_id is not None else None,
        reference_kind=kind,
        vendor_reference_type=str(vendor_ref_type) if vendor_ref_type is not None else None,
        fee_type=fee_type,
        fee_category=billing_category_for(kind, fee_type),
        base_cost=base_cost,
        charge_date=charge_date,
        vendor_invoice_id=str(vendor_invoice_id) if vendor_invoice_id is not None else None,
        vendor_invoiced=_as_bool(_pick(raw, "invoicedStatus")),
        additional_details=dict(details),
    )
