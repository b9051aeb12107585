"""Utility helpers"""

from .decimal_utils import (
    CENT,
    ONE,
    ZERO,
    finite_float,
    format_money,
    format_multiplier,
    is_valid_amount,
    multiplier_to_decimal,
    round_money,
    to_decimal,
)

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
