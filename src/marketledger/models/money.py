"""Money helpers — every amount in the ledger passes through these.

All monetary values use Decimal for exact arithmetic. No floats in finance.
Rounding is half-away-from-zero to the cent, applied once per computed
amount and never to intermediate products.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Iterable, Union

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

MoneyLike = Union[Decimal, int, str]


def round2(value: Decimal) -> Decimal:
    """Round to cents, half away from zero."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_money(value: MoneyLike) -> Decimal:
    """Coerce a boundary value into a cent-quantized Decimal.

    Floats are rejected outright: they cannot represent most cent values.
    """
    if isinstance(value, float):
        raise TypeError(f"Monetary values must not be floats: {value!r}")
    if isinstance(value, bool):
        raise TypeError(f"Not a monetary value: {value!r}")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Not a monetary value: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"Not a monetary value: {value!r}")
    return round2(amount)


def money_sum(values: Iterable[Decimal]) -> Decimal:
    """Sum amounts starting from a cent-scaled zero."""
    total = ZERO
    for value in values:
        total += value
    return total
