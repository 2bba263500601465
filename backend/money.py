# Money is stored as integer cents; the API speaks Decimal with two places.
from decimal import Decimal, InvalidOperation, ROUND_FLOOR
from typing import Union

from errors import InvalidStake

CENT = Decimal("0.01")


def to_cents(amount: Union[Decimal, int, float, str]) -> int:
    """Decimal dollars -> int cents. Rejects more than two decimal places."""
    try:
        value = Decimal(str(amount))
        if not value.is_finite():
            raise InvalidOperation
        # quantize raises when the amount needs more digits than the context holds
        rounded = value.quantize(CENT)
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidStake(f"Invalid amount: {amount!r}")
    if value != rounded:
        raise InvalidStake("Amounts have at most two decimal places")
    return int(value * 100)


def from_cents(cents: int) -> Decimal:
    return (Decimal(int(cents or 0)) / 100).quantize(CENT)


def payout_cents(stake_cents: int, multiplier: Union[Decimal, int, str]) -> int:
    """stake * multiplier, rounded down to the cent."""
    amount = Decimal(int(stake_cents)) * Decimal(str(multiplier))
    return int(amount.to_integral_value(rounding=ROUND_FLOOR))
