from decimal import ROUND_HALF_UP, Decimal
from typing import Union

Number = Union[int, float, Decimal, str]


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() first so floats like 0.1 don't drag binary noise into the sum
    return Decimal(str(value))


def round_half_up(value: Number) -> int:
    """Round to the nearest whole cent, halves away from zero."""
    return int(to_decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def line_amount(quantity: Number, unit_amount_cents: int) -> int:
    return round_half_up(to_decimal(quantity) * unit_amount_cents)


def apply_rate(amount_cents: int, rate: Number) -> int:
    return round_half_up(to_decimal(amount_cents) * to_decimal(rate))


def format_cents(amount_cents: int, currency: str = "usd") -> str:
    sign = "-" if amount_cents < 0 else ""
    whole, cents = divmod(abs(int(amount_cents)), 100)
    return f"{sign}{whole:,}.{cents:02d} {currency.upper()}"
