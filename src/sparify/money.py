"""Utilities for working with monetary values in Sparify."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
MAX_AMOUNT = Decimal("1000000.00")

AmountLike = Union[Decimal, int, float, str]


def to_decimal(value: AmountLike) -> Decimal:
    """Convert ``value`` to a :class:`~decimal.Decimal` with two decimal places."""

    if isinstance(value, bool):
        raise TypeError("Booleans are not amounts.")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation as exc:
            raise ValueError(f"Not a decimal amount: {value!r}") from exc
    else:
        raise TypeError(f"Unsupported amount type: {type(value)!r}")

    if not result.is_finite():
        raise ValueError(f"Amount must be finite, got {value!r}")
    try:
        return result.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise ValueError(f"Amount out of range: {value!r}") from exc


def require_positive(amount: Decimal, *, allow_zero: bool = False) -> Decimal:
    """Ensure ``amount`` is positive (or non-negative when ``allow_zero`` is true)."""

    if allow_zero:
        if amount < Decimal("0"):
            raise ValueError("Amount must be zero or greater.")
    else:
        if amount <= Decimal("0"):
            raise ValueError("Amount must be greater than zero.")
    return amount


def require_within_limit(amount: Decimal) -> Decimal:
    """Ensure the magnitude of ``amount`` does not exceed :data:`MAX_AMOUNT`."""

    if abs(amount) > MAX_AMOUNT:
        raise ValueError(f"Amount must not exceed {MAX_AMOUNT}.")
    return amount


def to_cents(amount: Decimal) -> int:
    """Return ``amount`` as an integer number of cents."""

    return int((to_decimal(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def format_currency(amount: Decimal) -> str:
    """Return ``amount`` as a currency formatted string (e.g. ``12.34 €``)."""

    return f"{amount.quantize(CENT, rounding=ROUND_HALF_UP):,.2f} €"


__all__ = [
    "AmountLike",
    "CENT",
    "MAX_AMOUNT",
    "ZERO",
    "format_currency",
    "from_cents",
    "require_positive",
    "require_within_limit",
    "to_cents",
    "to_decimal",
]
