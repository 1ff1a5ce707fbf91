"""Token amount conversion.

USDC and pool share tokens use 6 decimals. Human amounts are carried as
Decimal and converted to integer base units only at the ABI boundary, so no
float ever touches a value that the ledger re-derives.
"""

from decimal import ROUND_DOWN, Decimal, InvalidOperation

USDC_DECIMALS = 6


def parse_units(amount: Decimal | int | str, decimals: int = USDC_DECIMALS) -> int:
    """Convert a human amount to integer base units.

    Digits beyond the token's precision are truncated, matching how the
    contracts floor every division.

    Args:
        amount: Amount in human units. Floats are rejected; pass a string or
            Decimal so the value is exact.
        decimals: Token decimals.

    Returns:
        The amount in base units.

    Raises:
        ValueError: If the amount is a float, not a number, or negative.
    """
    if isinstance(amount, float):
        raise ValueError("pass amounts as str or Decimal, not float")
    try:
        value = Decimal(amount)
    except InvalidOperation as exc:
        raise ValueError(f"not a number: {amount!r}") from exc
    if not value.is_finite() or value < 0:
        raise ValueError(f"amount must be a finite non-negative number, got {amount!r}")
    scaled = (value * (Decimal(10) ** decimals)).quantize(Decimal(1), rounding=ROUND_DOWN)
    return int(scaled)


def format_units(value: int, decimals: int = USDC_DECIMALS) -> Decimal:
    """Convert integer base units back to a human Decimal amount."""
    return Decimal(value).scaleb(-decimals)
