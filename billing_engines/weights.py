"""
Module: billing_engines.weights
Responsibility:
    Derive dimensional and billable weight for a shipment.  Computed once
    when a shipment mirror is written and read by markup selection.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Rules:
    dim weight (oz) = round(L * W * H / divisor * 16), half-up to whole oz.
    Divisor by route:
        either side AU               -> 110
        US -> US, actual >= 16 oz    -> 166
        US -> US, actual <  16 oz    -> no dimensional weight
        any other route              -> 139
    billable weight = max(actual, dim); actual alone when there is no dim
    weight or any dimension is missing or non-positive.
    A missing country is treated as US.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

AU_DIVISOR = Decimal("110")
US_DOMESTIC_DIVISOR = Decimal("166")
INTERNATIONAL_DIVISOR = Decimal("139")

# US domestic parcels under one pound are billed on actual weight.
US_DOMESTIC_DIM_THRESHOLD_OZ = Decimal("16")

_OZ_PER_LB = Decimal("16")


@dataclass(frozen=True)
class ShipmentWeights:
    actual_oz: Decimal | None
    dim_oz: Decimal | None
    billable_oz: Decimal | None


def dim_divisor(
    origin_country: str | None,
    destination_country: str | None,
    actual_weight_oz: Decimal | None,
) -> Decimal | None:
    origin = (origin_country or "US").upper()
    destination = (destination_country or "US").upper()

    if "AU" in (origin, destination):
        return AU_DIVISOR
    if origin == "US" and destination == "US":
        if actual_weight_oz is not None and actual_weight_oz >= US_DOMESTIC_DIM_THRESHOLD_OZ:
            return US_DOMESTIC_DIVISOR
        return None
    return INTERNATIONAL_DIVISOR


def dimensional_weight_oz(
    length_in: Decimal | None,
    width_in: Decimal | None,
    height_in: Decimal | None,
    divisor: Decimal | None,
) -> Decimal | None:
    if divisor is None:
        return None
    dims = (length_in, width_in, height_in)
    if any(d is None or d <= 0 for d in dims):
        return None
    volume = length_in * width_in * height_in
    return (volume / divisor * _OZ_PER_LB).quantize(Decimal("1"), rounding=ROUND_HALF_UP)


def derive_weights(
    *,
    actual_weight_oz: Decimal | None,
    length_in: Decimal | None,
    width_in: Decimal | None,
    height_in: Decimal | None,
    origin_country: str | None,
    destination_country: str | None,
) -> ShipmentWeights:
    divisor = dim_divisor(origin_country, destination_country, actual_weight_oz)
    dim = dimensional_weight_oz(length_in, width_in, height_in, divisor)

    if dim is None:
        billable = actual_weight_oz
    elif actual_weight_oz is None:
        billable = dim
    else:
        billable = max(actual_weight_oz, dim)

    return ShipmentWeights(actual_oz=actual_weight_oz, dim_oz=dim, billable_oz=billable)
