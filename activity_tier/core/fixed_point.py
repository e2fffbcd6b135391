"""Pure 1e18 fixed-point arithmetic for the activity-tier engine.

Every function is stateless and operates on plain Python ints.

Rounding is explicit: multiply first, then floor-divide with `//`. Callers only
pass non-negative operands to the scaled helpers, so floor division truncates
toward zero. Division by zero is rejected upstream (the velocity and tier
functions branch on a zero denominator before calling in here).
"""

from __future__ import annotations

SCALE: int = 10**18

# Domain bounds for observed inputs (uint160 prices, int256 amounts, uint128 liquidity).
MAX_REFERENCE: int = 2**160 - 1
MAX_ABS_AMOUNT: int = 2**255
MAX_LIQUIDITY: int = 2**128 - 1


def abs_val(x: int) -> int:
    """Absolute value of *x*."""
    return x if x >= 0 else -x


def mul_scaled(a: int, b: int) -> int:
    """``a * b / SCALE`` (floor)."""
    return (a * b) // SCALE


def div_scaled(a: int, b: int) -> int:
    """``a * SCALE / b`` (floor). *b* must be non-zero."""
    return (a * SCALE) // b


def mul_div(a: int, b: int, denominator: int) -> int:
    """``a * b / denominator`` (floor) with a single rounding step."""
    return (a * b) // denominator


def clamp(x: int, lo: int, hi: int) -> int:
    """Clamp *x* into ``[lo, hi]``."""
    if x < lo:
        return lo
    if x > hi:
        return hi
    return x
