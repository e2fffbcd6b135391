"""Instantaneous velocity signals.

Both signals are linear stand-ins for a log/relative change, chosen for
determinism over exactness. They only track a true logarithm for small moves.

Outputs are fixed-point (1e18) and never negative.
"""

from __future__ import annotations

from ..state.params import VelocityMode
from .fixed_point import abs_val, div_scaled


def price_velocity(new_reference: int, old_reference: int) -> int:
    """``|new - old| / old``; 0 when there is no prior reference."""
    if old_reference == 0:
        return 0
    return div_scaled(abs_val(new_reference - old_reference), old_reference)


def flow_velocity(signed_amount: int, liquidity: int) -> int:
    """``|amount| / liquidity``; 0 for an empty pool."""
    if liquidity == 0:
        return 0
    return div_scaled(abs_val(signed_amount), liquidity)


def instantaneous_signal(
    mode: VelocityMode,
    *,
    new_reference: int,
    old_reference: int,
    signed_amount: int,
    liquidity: int,
) -> int:
    """Dispatch to the signal selected by *mode*."""
    if mode is VelocityMode.PRICE:
        return price_velocity(new_reference, old_reference)
    if mode is VelocityMode.FLOW:
        return flow_velocity(signed_amount, liquidity)
    raise ValueError(f"unknown velocity mode: {mode!r}")
