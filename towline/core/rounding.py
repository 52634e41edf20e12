"""Half-up rounding shared by routing, pricing and tracking."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")
UNIT = Decimal("1")


def to_decimal(value: Decimal | float | int | str) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() keeps 0.1 as 0.1 instead of its binary expansion
    return Decimal(str(value))


def round_money(value: Decimal | float | int | str) -> Decimal:
    """Round to 2 decimal places, half away from zero."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def round_whole(value: Decimal | float | int | str) -> Decimal:
    return to_decimal(value).quantize(UNIT, rounding=ROUND_HALF_UP)


def round_half_up(value: float, digits: int = 0) -> float:
    exponent = Decimal(1).scaleb(-digits)
    return float(to_decimal(value).quantize(exponent, rounding=ROUND_HALF_UP))
