"""Fulfillment — Decimal money helpers.

Arithmetic stays at full precision; rounding happens only when a value leaves
a calculation (a summary, an order item, a persisted total).
"""
from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")
UNIT_PRICE_QUANTUM = Decimal("0.0001")
ZERO = Decimal("0")


def to_decimal(value: Decimal | int | float | str) -> Decimal:
    """Coerce via str() so floats like 0.1 keep their printed value."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def to_cents(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_unit_price(value: Decimal) -> Decimal:
    return value.quantize(UNIT_PRICE_QUANTUM, rounding=ROUND_HALF_UP)


def to_minor_units(value: Decimal) -> int:
    """Integer cents for payment processors."""
    return int(to_cents(value) * 100)
