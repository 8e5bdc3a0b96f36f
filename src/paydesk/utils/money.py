"""
Money helpers for Paydesk.

Domain code works in Decimal with two places; the database stores integer
cents, and M-PESA only accepts whole shillings.
"""

from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal
from typing import Iterable, Union

CENT = Decimal("0.01")

Number = Union[Decimal, int, float, str]


def to_decimal(value: Number) -> Decimal:
    """
    Convert a value to a Decimal rounded to cents.

    Floats are routed through ``str`` so 0.1 stays 0.10.

    Examples:
        >>> to_decimal("12.345")
        Decimal('12.35')
        >>> to_decimal(7)
        Decimal('7.00')
    """
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(value: Number) -> int:
    """Convert an amount to integer cents."""
    return int(to_decimal(value) * 100)


def from_cents(cents: int) -> Decimal:
    """Convert integer cents back to a Decimal amount."""
    return (Decimal(cents) / 100).quantize(CENT)


def to_gateway_units(value: Number) -> int:
    """
    Round an amount up to whole currency units for the gateway.

    Examples:
        >>> to_gateway_units(Decimal("999.01"))
        1000
    """
    return int(to_decimal(value).to_integral_value(rounding=ROUND_CEILING))


def total(amounts: Iterable[Decimal]) -> Decimal:
    """Sum amounts, returning 0.00 for an empty iterable."""
    return sum(amounts, Decimal("0.00"))
