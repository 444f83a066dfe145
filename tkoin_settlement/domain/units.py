"""
TKOIN amount conversion.

All amounts are stored and compared as integer base units (1 TKOIN =
10**decimals base units). Human-entered token amounts are converted once at
the service boundary; fractional digits beyond the token's precision are
truncated, never rounded.
"""

from __future__ import annotations

from decimal import ROUND_DOWN, Decimal, InvalidOperation, localcontext

from tkoin_settlement.errors import ValidationError

TOKEN_DECIMALS = 9

# Amount columns are signed 64-bit integers.
MAX_BASE_UNITS = 2**63 - 1


def tokens_to_base_units(tokens: str | int | Decimal, decimals: int = TOKEN_DECIMALS) -> int:
    """
    Convert a token amount to integer base units.

    Accepts ints, Decimals and numeric strings ("1000", "0.5"). Floats are
    rejected because their binary representation is not exact.
    """
    if isinstance(tokens, bool) or isinstance(tokens, float):
        raise ValidationError(f"Token amount must be int, Decimal or str, got {type(tokens).__name__}")
    try:
        value = Decimal(str(tokens).strip())
    except InvalidOperation as exc:
        raise ValidationError(f"Invalid token amount: {tokens!r}") from exc
    if not value.is_finite():
        raise ValidationError(f"Invalid token amount: {tokens!r}")
    if value < 0:
        raise ValidationError(f"Token amount must not be negative: {tokens!r}")

    if value.adjusted() > len(str(MAX_BASE_UNITS)):
        raise ValidationError(f"Token amount is out of range: {tokens!r}")

    with localcontext() as ctx:
        ctx.prec = 60
        try:
            scaled = (value * (Decimal(10) ** decimals)).quantize(Decimal(1), rounding=ROUND_DOWN)
        except InvalidOperation as exc:
            raise ValidationError(f"Token amount is out of range: {tokens!r}") from exc
    if scaled > MAX_BASE_UNITS:
        raise ValidationError(f"Token amount is out of range: {tokens!r}")
    return int(scaled)


def base_units_to_tokens(base_units: int, decimals: int = TOKEN_DECIMALS) -> Decimal:
    """Exact token value of an integer base-unit amount."""
    value = Decimal(int(base_units)) / (Decimal(10) ** decimals)
    normalized = value.normalize()
    # normalize() turns 1000 into 1E+3
    if normalized == normalized.to_integral_value():
        return normalized.quantize(Decimal(1))
    return normalized


def format_tokens(base_units: int, decimals: int = TOKEN_DECIMALS) -> str:
    return f"{base_units_to_tokens(base_units, decimals)} TKOIN"
