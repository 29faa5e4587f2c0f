from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional, Union

Number = Union[Decimal, int, float, str]

CENT = Decimal("0.01")
ZERO = Decimal("0")


def as_decimal(value: Optional[Number]) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantize(value: Number) -> Decimal:
    return as_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def money_sum(values: Iterable[Optional[Number]]) -> Decimal:
    return quantize(sum((as_decimal(value) for value in values), ZERO))


def floor_zero(value: Number) -> Decimal:
    amount = as_decimal(value)
    return amount if amount > ZERO else ZERO


def format_amount(value: Number) -> str:
    """Render an amount without trailing zeros for whole numbers (30000, 1250.5)."""
    amount = quantize(value)
    if amount == amount.to_integral_value():
        return str(int(amount))
    return format(amount.normalize(), "f")


def percent_of(part: Number, whole: Number) -> Decimal:
    whole_amount = as_decimal(whole)
    if whole_amount <= ZERO:
        return ZERO
    return (as_decimal(part) / whole_amount * Decimal("100")).quantize(CENT, rounding=ROUND_HALF_UP)
