# -*- coding: utf-8 -*-
"""
impl_pips.py
Fixed-point arithmetic on pips.

All money and quantity values in the risk engine are plain Python ints
scaled by 10^8 ("pips"). Python ints never overflow, so intermediates are
exact; every result is range-checked against the 64-bit width the venue
stores, and anything outside it raises ArithmeticOverflow.

Rounding:
- multiply_pips_by_fraction truncates toward zero (not floor), so
  f(a, b, d) == -f(-a, b, d) for every input.
- divide_round_up / divide_round_nearest operate on non-negative operands.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Union

from core_errors import ArithmeticOverflow


PIPS_DECIMALS = 8
PIP_PRICE_MULTIPLIER = 10 ** PIPS_DECIMALS  # SCALE

INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1
UINT64_MAX = 2 ** 64 - 1


# ============================================================================
# DIVISION HELPERS
# ============================================================================

def divide_toward_zero(numerator: int, denominator: int) -> int:
    """Integer division truncating toward zero; no range check."""
    if denominator == 0:
        raise ArithmeticOverflow("Division by zero")
    quotient = abs(numerator) // abs(denominator)
    if (numerator < 0) != (denominator < 0):
        return -quotient
    return quotient


def divide_round_up(numerator: int, denominator: int) -> int:
    """Ceiling division of non-negative operands."""
    if denominator == 0:
        raise ArithmeticOverflow("Division by zero")
    if numerator < 0 or denominator < 0:
        raise ValueError("divide_round_up expects non-negative operands")
    return -(-numerator // denominator)


def divide_round_nearest(numerator: int, denominator: int) -> int:
    """Division of non-negative operands rounding halves up."""
    if denominator == 0:
        raise ArithmeticOverflow("Division by zero")
    if numerator < 0 or denominator < 0:
        raise ValueError("divide_round_nearest expects non-negative operands")
    return (numerator + denominator // 2) // denominator


# ============================================================================
# MULTIPLY BY FRACTION
# ============================================================================

def multiply_pips_by_fraction(multiplicand: int, fraction_numerator: int, fraction_denominator: int) -> int:
    """
    Compute round_toward_zero(multiplicand * numerator / denominator).

    Args:
        multiplicand: Signed pip quantity
        fraction_numerator: Signed numerator
        fraction_denominator: Signed, non-zero denominator

    Returns:
        Signed pip quantity within int64

    Raises:
        ArithmeticOverflow: Result outside int64, or zero denominator
    """
    result = divide_toward_zero(multiplicand * fraction_numerator, fraction_denominator)
    if result > INT64_MAX:
        raise ArithmeticOverflow("Pip quantity overflows int64")
    if result < INT64_MIN:
        raise ArithmeticOverflow("Pip quantity underflows int64")
    return result


def multiply_pips_by_fraction_unsigned(multiplicand: int, fraction_numerator: int, fraction_denominator: int) -> int:
    """Unsigned variant of multiply_pips_by_fraction with a uint64 target."""
    if multiplicand < 0 or fraction_numerator < 0 or fraction_denominator < 0:
        raise ValueError("Unsigned pip multiplication expects non-negative operands")
    result = divide_toward_zero(multiplicand * fraction_numerator, fraction_denominator)
    if result > UINT64_MAX:
        raise ArithmeticOverflow("Pip quantity overflows uint64")
    return result


def validate_int64(value: int) -> int:
    """Range-check a signed pip quantity produced by addition."""
    if value > INT64_MAX:
        raise ArithmeticOverflow("Pip quantity overflows int64")
    if value < INT64_MIN:
        raise ArithmeticOverflow("Pip quantity underflows int64")
    return value


# ============================================================================
# ABS / MIN / MAX
# ============================================================================

def abs_pips(value: int) -> int:
    """Absolute value; fails only on the int64 minimum, which has no positive twin."""
    if value == INT64_MIN:
        raise ArithmeticOverflow("Pip quantity overflows int64")
    return value if value >= 0 else -value


def max_signed(a: int, b: int) -> int:
    return a if a >= b else b


def min_signed(a: int, b: int) -> int:
    return a if a <= b else b


def max_unsigned(a: int, b: int) -> int:
    if a < 0 or b < 0:
        raise ValueError("Unsigned operands must be non-negative")
    return a if a >= b else b


def min_unsigned(a: int, b: int) -> int:
    if a < 0 or b < 0:
        raise ValueError("Unsigned operands must be non-negative")
    return a if a <= b else b


# ============================================================================
# DECIMAL CONVERSION
# ============================================================================

def decimal_to_pips(value: Union[str, Decimal, int]) -> int:
    """
    Convert a decimal quantity to pips.

    Examples:
        "1.00000000" -> 100000000
        "-0.5" -> -50000000

    Raises:
        ValueError: Not a number, or more than 8 decimal places
    """
    try:
        d = Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"Invalid decimal quantity: {value!r}") from e
    scaled = d.scaleb(PIPS_DECIMALS)
    if scaled != scaled.to_integral_value():
        raise ValueError(f"Quantity {value!r} exceeds {PIPS_DECIMALS} decimals")
    return validate_int64(int(scaled))


def pips_to_decimal(pips: int) -> Decimal:
    """Convert pips to a Decimal with exactly 8 decimal places."""
    return Decimal(pips).scaleb(-PIPS_DECIMALS).quantize(Decimal(1).scaleb(-PIPS_DECIMALS))
