"""Major/minor currency unit conversion."""

from decimal import ROUND_HALF_UP, Decimal


def to_minor_units(amount: Decimal | int | float | str) -> int:
    """Convert a major-unit amount to integer minor units, rounding half up."""

    value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_major_units(amount: int) -> Decimal:
    """Convert integer minor units back to a two-place decimal for display."""

    return (Decimal(amount) / 100).quantize(Decimal("0.01"))
