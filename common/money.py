"""Fixed-point helpers: amounts are stored as integer minor units (cents)."""
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

CENTS = Decimal("0.01")

def to_minor(value: Union[str, int, Decimal]) -> int:
    """'12.50' -> 1250. Floats are rejected, they cannot represent cents exactly."""
    if isinstance(value, float):
        raise TypeError("monetary amounts must not be floats")
    try:
        amount = Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValueError(f"invalid monetary amount: {value!r}")
    return int(amount * 100)

def from_minor(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENTS)

def format_minor(cents: int) -> str:
    return str(from_minor(cents))
