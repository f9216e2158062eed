"""Conversions between USDT amounts and integer micro-USDT base units."""

from decimal import Decimal, InvalidOperation

USDT_DECIMALS = 6
_SCALE = Decimal(10) ** USDT_DECIMALS


def to_minor(amount) -> int:
    """
    Convert a USDT amount (Decimal, int, float or numeric string) to micro-USDT.

    Raises ValueError for non-finite values, booleans, and amounts with more
    precision than the token supports.
    """
    if isinstance(amount, bool) or amount is None:
        raise ValueError(f"Invalid amount: {amount!r}")
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"Invalid amount: {amount!r}") from exc
    if not value.is_finite():
        raise ValueError(f"Invalid amount: {amount!r}")
    scaled = value * _SCALE
    if scaled != scaled.to_integral_value():
        raise ValueError(f"Amount {amount} has more than {USDT_DECIMALS} decimals")
    return int(scaled)


def from_minor(units: int) -> Decimal:
    """Convert micro-USDT back to a USDT Decimal."""
    return Decimal(units) / _SCALE
