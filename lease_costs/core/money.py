"""
Currency arithmetic in integer cents.

Billing amounts arrive as decimal strings. They are converted to integer cents
once, summed as integers, and converted back to dollars only at the end.
"""

import re
from decimal import Decimal, DecimalException, ROUND_HALF_UP
from typing import Iterable

MAX_AMOUNT_LENGTH = 50

_AMOUNT_PATTERN = re.compile(r"^-?\d+(\.\d+)?([eE][+-]?\d+)?$")
_CENTS_PER_DOLLAR = Decimal("100")


def to_cents(amount: str) -> int:
    """Convert a decimal dollar string to non-negative integer cents.

    Negative amounts (credits) are taken as their absolute value. Sub-cent
    amounts round half-up, so "0.0015" becomes 0 cents. Exponent notation
    ("1.2E-7") is accepted since the billing API uses it for tiny amounts.

    Args:
        amount: Decimal string as returned by the billing API

    Returns:
        Amount in whole cents

    Raises:
        ValueError: If the string is not a decimal number or is out of range
    """
    if not isinstance(amount, str):
        raise ValueError(f"Cost amount must be a string, got {type(amount).__name__}")
    if len(amount) > MAX_AMOUNT_LENGTH:
        raise ValueError(f"Invalid cost amount: exceeds maximum length of {MAX_AMOUNT_LENGTH}")
    if not _AMOUNT_PATTERN.match(amount):
        raise ValueError(f"Invalid cost amount format: {amount!r}")

    try:
        cents = (abs(Decimal(amount)) * _CENTS_PER_DOLLAR).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    except DecimalException:
        raise ValueError(f"Invalid cost amount: {amount!r}")

    return int(cents)


def cents_to_dollars(cents: int) -> float:
    """Convert integer cents to a dollar value."""
    return cents / 100


def sum_cents(amounts: Iterable[int]) -> int:
    """Integer sum of cent amounts."""
    total = 0
    for cents in amounts:
        total += cents
    return total
