"""
Decimal Utilities Module - Consistent handling of money and multipliers
Stakes, balances and payouts are Decimal; multipliers arrive from the wire as floats
"""

import logging
import math
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Union

logger = logging.getLogger(__name__)

# Type alias for numeric types
Numeric = Union[Decimal, float, str, int]

__all__ = [
    "CENT",
    "ONE",
    "ZERO",
    "finite_float",
    "format_money",
    "format_multiplier",
    "is_valid_amount",
    "multiplier_to_decimal",
    "round_money",
    "to_decimal",
]

ZERO = Decimal("0")
ONE = Decimal("1")
CENT = Decimal("0.01")


# ========================================================================
# CONVERSION UTILITIES
# ========================================================================


def to_decimal(value: Numeric, default: Decimal | None = None) -> Decimal:
    """
    Safely convert value to Decimal

    Floats go through str() so 1.85 becomes Decimal("1.85"), not its binary expansion.

    Args:
        value: Value to convert
        default: Default value if conversion fails

    Returns:
        Decimal value

    Raises:
        ValueError if conversion fails and no default provided
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError(f"Cannot convert boolean {value!r} to Decimal")

    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError) as e:
        if default is not None:
            logger.warning(f"Failed to convert {value!r} to Decimal: {e}, using default {default}")
            return default
        raise ValueError(f"Cannot convert {value!r} to Decimal: {e}") from e


def finite_float(value: Any, default: float | None = None) -> float | None:
    """
    Convert a wire value to a finite float

    Returns default for None, booleans, non-numeric strings, NaN and +/-Infinity.
    """
    if value is None or isinstance(value, bool):
        return default
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(result):
        return default
    return result


def multiplier_to_decimal(value: Numeric) -> Decimal:
    """Multiplier as a two-place Decimal (the precision the server settles at)."""
    return round_money(to_decimal(value))


# ========================================================================
# ROUNDING UTILITIES
# ========================================================================


def round_money(value: Decimal) -> Decimal:
    """Round to cents, half-up"""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


# ========================================================================
# VALIDATION UTILITIES
# ========================================================================


def is_valid_amount(value: Any, allow_zero: bool = False) -> bool:
    """
    Check if value is a valid amount

    Args:
        value: Value to check
        allow_zero: Whether zero is valid

    Returns:
        True if valid amount
    """
    try:
        decimal_value = to_decimal(value)
    except ValueError:
        return False

    if not decimal_value.is_finite():
        return False

    if allow_zero:
        return decimal_value >= 0
    return decimal_value > 0


# ========================================================================
# FORMATTING UTILITIES
# ========================================================================


def format_money(value: Numeric, currency: str = "") -> str:
    """
    Format an amount for display

    Returns:
        Formatted string (e.g., "1,234.50" or "Ksh 1,234.50")
    """
    rounded = round_money(to_decimal(value))
    text = f"{rounded:,.2f}"
    return f"{currency} {text}" if currency else text


def format_multiplier(value: Numeric) -> str:
    """
    Format a multiplier for display

    Returns:
        Formatted string (e.g., "2.40x")
    """
    return f"{to_decimal(value):.2f}x"
