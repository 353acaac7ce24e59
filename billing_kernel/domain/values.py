"""
Values -- Money arithmetic helpers.

Responsibility:
    Two-decimal, half-up rounding used by every monetary computation in the
    billing pipeline, plus the currency tolerance used by reconciliation.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - All monetary amounts are Decimal; floats are converted through str()
      so binary artefacts never leak into totals.
    - Rounding is ROUND_HALF_UP at two decimal places at each step.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable

ZERO = Decimal("0")
CENT = Decimal("0.01")
HUNDRED = Decimal("100")

# Sources that agree within one cent are considered to agree.
CURRENCY_TOLERANCE = CENT


def to_decimal(value: Any) -> Decimal:
    """
    Coerce a vendor-supplied amount into a Decimal.

    Raises:
        ValueError: If the value is not numeric.
    """
    if isinstance(value, Decimal):
        return value
    if value is None or isinstance(value, bool):
        raise ValueError(f"Not a monetary amount: {value!r}")
    try:
        if isinstance(value, float):
            return Decimal(str(value))
        if isinstance(value, str):
            return Decimal(value.strip().replace(",", "").replace("$", ""))
        return Decimal(value)
    except InvalidOperation as exc:
        raise ValueError(f"Not a monetary amount: {value!r}") from exc


def round2(value: Decimal) -> Decimal:
    """Round to cents, half away from zero."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def sum_money(values: Iterable[Decimal]) -> Decimal:
    return round2(sum(values, ZERO))


def within_tolerance(a: Decimal, b: Decimal, tolerance: Decimal = CURRENCY_TOLERANCE) -> bool:
    return abs(a - b) <= tolerance
