"""Decimal money helpers."""
from decimal import ROUND_HALF_UP, Decimal
from typing import Union

CENT = Decimal("0.01")

# Currencies whose minor unit is the major unit.
ZERO_DECIMAL_CURRENCIES = frozenset(
    {"BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA", "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF"}
)

Number = Union[Decimal, int, float, str]


def to_decimal(value: Number) -> Decimal:
    """Convert a number to a Decimal quantized to cents (half-up)."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def calculate_tax(price: Number, rate: Number) -> Decimal:
    """
    Calculate tax for a price at a percentage rate.

    Args:
        price: Net price
        rate: Tax rate in percent (18 means 18%)

    Returns:
        Decimal: Tax amount rounded half-up to cents
    """
    return to_decimal(Decimal(str(price)) * Decimal(str(rate)) / Decimal(100))


def to_minor_units(amount: Number, currency: str) -> int:
    """Convert a major-unit amount to the provider's integer minor units."""
    amount = to_decimal(amount)
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(value: Union[int, str], currency: str) -> Decimal:
    """Convert integer minor units to a major-unit Decimal."""
    minor = Decimal(str(value))
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return to_decimal(minor)
    return to_decimal(minor / 100)
