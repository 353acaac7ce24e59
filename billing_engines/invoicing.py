"""
Module: billing_engines.invoicing
Responsibility:
    Pure invoice arithmetic: issuance date and billing period, invoice
    number format, storage period rounding, line categorisation and the
    per-category summary.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Rules:
    - Issuance date is the Monday of the run week; the billing period is
      the prior Monday through Sunday.
    - Invoice number: ``{prefix}{SHORT}-{NNNN}-{MMDDYY}`` where NNNN is the
      tenant counter zero-padded to four digits and MMDDYY the issuance date.
    - Storage period: the span of storage line dates rounded to half-month
      boundaries (1-15, 16-end of month, or the whole month when the span
      crosses the 15th).
    - Totals: subtotal = sum(base), total_markup = sum(markup),
      total_amount = subtotal + total_markup, each rounded to cents.
"""

from __future__ import annotations

import calendar
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal

from billing_engines.markup import CREDIT_FEE, SHIPPING_FEE
from billing_engines.storage import parse_storage_reference
from billing_kernel.domain.types import LineCategory, ReferenceKind
from billing_kernel.domain.values import ZERO, round2

FBA_ORDER_CATEGORY = "FBA"

ADDITIONAL_SERVICE_FEES = frozenset(
    {
        "Per Pick Fee",
        "B2B - Each Pick Fee",
        "B2B - Label Fee",
        "B2B - Case Pick Fee",
        "B2B - Pallet Pick Fee",
        "WRO Receiving Fee",
        "Inventory Placement Program Fee",
        "Warehousing Fee",
        "Multi-Hub IQ Fee",
        "Kitting Fee",
        "VAS Fee",
        "VAS - Paid Requests",
    }
)


# ---------------------------------------------------------------------------
# Dates and numbering
# ---------------------------------------------------------------------------


def issuance_date(run_date: date) -> date:
    """Monday of the week containing ``run_date``."""
    return run_date - timedelta(days=run_date.weekday())


def billing_period(issued: date) -> tuple[date, date]:
    """Prior Monday through Sunday."""
    period_end = issued - timedelta(days=1)
    return period_end - timedelta(days=6), period_end


def format_invoice_number(prefix: str, short_code: str, counter: int, issued: date) -> str:
    if counter < 1:
        raise ValueError(f"Invoice counter must be positive, got {counter}")
    return f"{prefix}{short_code}-{counter:04d}-{issued.strftime('%m%d%y')}"


def storage_period(dates: Iterable[date]) -> tuple[date, date] | None:
    """Half-month-rounded span of storage charge dates, anchored on the earliest."""
    dates = list(dates)
    if not dates:
        return None
    first, last = min(dates), max(dates)
    month_end = calendar.monthrange(first.year, first.month)[1]
    day_max = last.day if (last.year, last.month) == (first.year, first.month) else month_end

    if first.day <= 15 < day_max:
        return first.replace(day=1), first.replace(day=month_end)
    if day_max <= 15:
        return first.replace(day=1), first.replace(day=15)
    return first.replace(day=16), first.replace(day=month_end)


# ---------------------------------------------------------------------------
# Line categorisation
# ---------------------------------------------------------------------------


def _service_fee_category(fee_type: str) -> LineCategory:
    if fee_type.startswith("B2B"):
        return LineCategory.B2B_FEES
    if "Pick" in fee_type:
        return LineCategory.PICK_FEES
    return LineCategory.ADDITIONAL_SERVICES


def line_category(
    reference_kind: ReferenceKind,
    fee_type: str,
    order_category: str | None = None,
) -> LineCategory:
    """Summary bucket for one transaction; unknown shapes fall into Additional Services."""
    if fee_type == CREDIT_FEE:
        return LineCategory.CREDITS
    if reference_kind is ReferenceKind.SHIPMENT:
        if fee_type == SHIPPING_FEE:
            if order_category == FBA_ORDER_CATEGORY:
                return LineCategory.FULFILLMENT
            return LineCategory.SHIPPING
        return _service_fee_category(fee_type)
    if reference_kind is ReferenceKind.STORAGE_SLOT:
        return LineCategory.STORAGE
    if reference_kind is ReferenceKind.RETURN:
        return LineCategory.RETURNS
    if reference_kind is ReferenceKind.RECEIVING_ORDER or "Receiving" in fee_type:
        return LineCategory.RECEIVING
    if fee_type in ADDITIONAL_SERVICE_FEES:
        return _service_fee_category(fee_type)
    return LineCategory.ADDITIONAL_SERVICES


def line_description(
    reference_kind: ReferenceKind,
    reference_id: str | None,
    fee_type: str,
    additional_details: dict | None = None,
) -> str:
    details = additional_details or {}
    if fee_type == CREDIT_FEE:
        return str(details.get("Comment") or details.get("CreditReason") or "Credit")
    if reference_kind is ReferenceKind.SHIPMENT and fee_type == SHIPPING_FEE:
        return f"Shipment {reference_id or 'N/A'} - {fee_type}"
    if reference_kind is ReferenceKind.STORAGE_SLOT:
        ref = parse_storage_reference(reference_id, details)
        return f"{ref.location_type or 'Storage'} - {ref.fc_id or 'FC'}"
    if reference_kind is ReferenceKind.RECEIVING_ORDER:
        return f"WRO {reference_id or 'N/A'} - {fee_type or 'Receiving'}"
    return fee_type or "Unknown fee"


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LineAmounts:
    category: LineCategory
    base_cost: Decimal
    markup_applied: Decimal
    billed_amount: Decimal


@dataclass
class CategoryTotals:
    count: int = 0
    subtotal: Decimal = ZERO
    markup: Decimal = ZERO
    total: Decimal = ZERO


@dataclass(frozen=True)
class InvoiceSummary:
    subtotal: Decimal
    total_markup: Decimal
    total_amount: Decimal
    by_category: dict[LineCategory, CategoryTotals] = field(default_factory=dict)


def summarize(lines: Iterable[LineAmounts]) -> InvoiceSummary:
    by_category = {category: CategoryTotals() for category in LineCategory}
    subtotal = ZERO
    markup = ZERO
    for line in lines:
        subtotal += line.base_cost
        markup += line.markup_applied
        bucket = by_category[line.category]
        bucket.count += 1
        bucket.subtotal += line.base_cost
        bucket.markup += line.markup_applied
        bucket.total += line.billed_amount

    for bucket in by_category.values():
        bucket.subtotal = round2(bucket.subtotal)
        bucket.markup = round2(bucket.markup)
        bucket.total = round2(bucket.total)

    return InvoiceSummary(
        subtotal=round2(subtotal),
        total_markup=round2(markup),
        total_amount=round2(subtotal + markup),
        by_category=by_category,
    )
