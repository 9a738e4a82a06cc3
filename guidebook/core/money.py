"""Money helpers. Amounts are Decimal dollars in the domain and integer cents on the wire."""

from decimal import ROUND_HALF_UP, Decimal
from typing import Union

CENT = Decimal("0.01")

MoneyLike = Union[Decimal, int, float, str]


def to_money(value: MoneyLike) -> Decimal:
    """Coerce to a Decimal quantized to cents."""
    if isinstance(value, float):
        value = repr(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(value: MoneyLike) -> int:
    return int((to_money(value) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(int(cents)) / 100).quantize(CENT)


def percentage_of(amount: MoneyLike, percentage: MoneyLike) -> Decimal:
    return to_money(to_money(amount) * Decimal(str(percentage)) / Decimal(100))
