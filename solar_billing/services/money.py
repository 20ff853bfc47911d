"""Decimal helpers for currency and percentage values."""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

TWOPLACES = Decimal("0.01")


def money(value) -> Decimal:
    """Coerce to Decimal rounded half-up to cents (None and "" count as zero).

    Raises:
        ValueError: If the value is not numeric
    """
    if value is None or value == "":
        return Decimal("0.00")
    try:
        return Decimal(str(value)).quantize(TWOPLACES, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError, TypeError) as exc:
        raise ValueError(f"Invalid amount: {value!r}") from exc


def percent(value) -> Decimal:
    """Percentages keep two decimal places, same rounding as money."""
    return money(value)


__all__ = ["TWOPLACES", "money", "percent"]
