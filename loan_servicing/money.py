"""
Money Helpers

Monetary values are Decimal end to end, rounded half-up to cents.
NEVER uses float for monetary values; floats arriving from JSON are
converted through their string form.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional

from .errors import InvalidInputError


CENTS = Decimal("0.01")
ZERO = Decimal("0")


def round_cents(value: Decimal) -> Decimal:
    """Round to two decimal places, half-up"""
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def to_decimal(value: Any, field: str, minimum: Optional[Decimal] = None) -> Decimal:
    """
    Parse an amount from user input

    Raises:
        InvalidInputError: not a finite number, or below ``minimum``
    """
    if isinstance(value, bool) or value is None:
        raise InvalidInputError(f"{field} must be a number", field=field)
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidInputError(f"{field} must be a number", field=field)
    if not amount.is_finite():
        raise InvalidInputError(f"{field} must be a number", field=field)
    if minimum is not None and amount < minimum:
        raise InvalidInputError(f"{field} must be at least {minimum}", field=field)
    return amount
