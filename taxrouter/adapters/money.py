from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from taxrouter.core.errors import MalformedInput


CENTS_PER_UNIT = Decimal(100)
_TWO_PLACES = Decimal("0.01")


def to_decimal(value: Any) -> Decimal | None:
    # Floats go through str() so 0.1 stays 0.1 rather than its binary expansion.
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise MalformedInput(f"not a numeric amount: {value!r}") from exc


def cents_to_decimal(value: Any) -> Decimal | None:
    amount = to_decimal(value)
    if amount is None:
        return None
    return (amount / CENTS_PER_UNIT).quantize(_TWO_PLACES, rounding=ROUND_HALF_UP)


def percentage(numerator: int, denominator: int) -> Decimal:
    if denominator <= 0:
        return Decimal("0.00")
    return (Decimal(numerator) / Decimal(denominator) * 100).quantize(_TWO_PLACES, rounding=ROUND_HALF_UP)
