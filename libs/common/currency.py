"""Currency conversion utilities.

Internal gateway unit: cents (smallest currency unit, 100 cents = 1.00).
Ledger / API unit: Decimal major units quantized to two places.

Conversion chain
----------------
Major × 100 → Cents (round half-up)
Cents ÷ 100 → Major
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

CENTS_PER_UNIT: int = 100
TWO_PLACES = Decimal("0.01")


def to_decimal(value: Decimal | float | int | str) -> Decimal:
    """Coerce a money value to Decimal without float artefacts."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def to_cents(amount: Decimal | float | int | str) -> int:
    """Convert a major-unit amount to cents (round half-up). 1.00 = 100 cents."""
    value = to_decimal(amount) * CENTS_PER_UNIT
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    """Convert cents to a major-unit Decimal. 100 cents = 1.00."""
    return (Decimal(int(cents)) / CENTS_PER_UNIT).quantize(TWO_PLACES)


def percentage_of_cents(
    amount: Decimal | float | int | str, fraction: Decimal | float | str
) -> int:
    """Cents value of ``amount * fraction``, rounded half-up.

    ``percentage_of_cents(Decimal("100.00"), Decimal("0.10")) == 1000``
    """
    value = to_decimal(amount) * to_decimal(fraction) * CENTS_PER_UNIT
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
