"""
Money parsing and cent conversion.

All balances, limits and fees are Decimal values with two decimal places.
They are persisted as integer cents so balance checks run exactly in SQL.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_EVEN
from typing import Optional, Union

from card_ledger.exceptions import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
# Largest amount whose cents fit a signed 64-bit SQLite INTEGER
MAX_AMOUNT = Decimal(2 ** 63 - 1).scaleb(-2)

MoneyInput = Union[Decimal, int, float, str]


def to_money(value: MoneyInput, field: str = "amount") -> Decimal:
    """Parse a user-supplied value into a cent-precise Decimal.

    Floats go through str() so 0.1 becomes Decimal("0.1") rather than
    its binary expansion.

    Args:
        value: Amount as Decimal, int, float or numeric string
        field: Name used in error messages

    Returns:
        Decimal quantized to 2 decimal places

    Raises:
        ValidationError: If the value is not a finite number or has
            more than two decimal places, or does not fit in stored cents
    """
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number, got {value!r}")
    try:
        amount = Decimal(str(value)) if isinstance(value, float) else Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{field} must be a number, got {value!r}")

    if not amount.is_finite():
        raise ValidationError(f"{field} must be finite, got {value!r}")
    if abs(amount) > MAX_AMOUNT:
        raise ValidationError(f"{field} is out of range: {value!r}")
    if amount != amount.quantize(CENT, rounding=ROUND_HALF_EVEN):
        raise ValidationError(f"{field} cannot have more than two decimal places: {value!r}")
    return amount.quantize(CENT)


def to_optional_money(value: Optional[MoneyInput], field: str) -> Optional[Decimal]:
    """Like to_money, but passes None through."""
    if value is None:
        return None
    return to_money(value, field)


def to_cents(amount: Decimal) -> int:
    """Convert a cent-precise Decimal to integer cents."""
    return int((amount * 100).to_integral_value(rounding=ROUND_HALF_EVEN))


def from_cents(cents: Optional[int]) -> Optional[Decimal]:
    """Convert integer cents back to a Decimal, passing None through."""
    if cents is None:
        return None
    return (Decimal(cents) / 100).quantize(CENT)


def format_money(amount: Optional[Decimal]) -> str:
    """Format an amount with thousands separators, or a dash when absent."""
    if amount is None:
        return "-"
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"
