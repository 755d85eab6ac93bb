"""Fare engine.

Pure functions only: identical inputs always produce the identical breakdown,
which keeps stored fares auditable and test fixtures stable.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, NamedTuple

from pydantic import BaseModel

from .config import settings
from .errors import ValidationError
from . import models


class Rates(NamedTuple):
    base: Decimal
    per_km: Decimal
    per_min: Decimal


RATE_TABLE: Dict[str, Rates] = {
    "Bike": Rates(Decimal("20"), Decimal("8"), Decimal("1")),
    "Auto": Rates(Decimal("30"), Decimal("12"), Decimal("1.5")),
    "Car": Rates(Decimal("50"), Decimal("15"), Decimal("2")),
    "Truck": Rates(Decimal("100"), Decimal("25"), Decimal("3")),
}

# classes missing from RATE_TABLE are priced as this one
DEFAULT_CLASS = "Car"

_CENTS = Decimal("0.01")


class FareBreakdown(BaseModel):
    base: float
    distance_fare: float
    time_fare: float
    total: float
    surge_multiplier: float = 1.0


def _round2(value: Decimal) -> float:
    return float(value.quantize(_CENTS, rounding=ROUND_HALF_UP))


def rates_for(vehicle_class: str) -> Rates:
    rates = RATE_TABLE.get(vehicle_class)
    if rates is None:
        fallback = settings.DEFAULT_VEHICLE_CLASS if settings.DEFAULT_VEHICLE_CLASS in RATE_TABLE else DEFAULT_CLASS
        rates = RATE_TABLE[fallback]
    return rates


def fare(distance_km: float, duration_min: float, vehicle_class: str, surge: float = 1) -> FareBreakdown:
    """Price a trip.

    total = (base + distance * per_km + duration * per_min) * surge, with every
    component rounded to 2 dp half-up. The total is computed from the unrounded
    components.
    """
    if distance_km < 0 or duration_min < 0:
        raise ValidationError("distance and duration must be non-negative")
    if surge < 1:
        raise ValidationError("surge multiplier must be >= 1")

    rates = rates_for(vehicle_class)
    # str() keeps float inputs from dragging binary noise into the Decimal math
    distance = Decimal(str(distance_km))
    duration = Decimal(str(duration_min))
    multiplier = Decimal(str(surge))

    distance_fare = distance * rates.per_km
    time_fare = duration * rates.per_min
    total = (rates.base + distance_fare + time_fare) * multiplier

    return FareBreakdown(
        base=_round2(rates.base),
        distance_fare=_round2(distance_fare),
        time_fare=_round2(time_fare),
        total=_round2(total),
        surge_multiplier=float(multiplier),
    )


def cancellation_fee(amount: float, status: str, rate: float | None = None, cap: float | None = None) -> float:
    """Fee charged to a requester cancelling a ride in `status`.

    Only rides that already have a driver on the way (accepted/arrived) are
    charged: min(rate * amount, cap). Anything earlier is free.
    """
    if status not in (models.RIDE_ACCEPTED, models.RIDE_ARRIVED):
        return 0.0
    rate = settings.CANCELLATION_FEE_RATE if rate is None else rate
    cap = settings.CANCELLATION_FEE_CAP if cap is None else cap
    fee = min(Decimal(str(amount or 0)) * Decimal(str(rate)), Decimal(str(cap)))
    return _round2(max(fee, Decimal("0")))


def refund_amount(amount: float, fee: float) -> float:
    return _round2(max(Decimal(str(amount or 0)) - Decimal(str(fee)), Decimal("0")))
