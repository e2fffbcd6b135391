"""Invariant checkers for one pool's (Observation, TierState) pair.

Each function returns True when the invariant holds; `check_all()` returns the
list of violated invariant IDs (empty = all pass).
"""

from __future__ import annotations

from typing import Callable

from ..state.records import MAX_TIER, Observation, TierState


def inv_tier_bounded(obs: Observation, ts: TierState) -> bool:
    return 0 <= ts.tier <= MAX_TIER


def inv_ema_nonneg(obs: Observation, ts: TierState) -> bool:
    return obs.ema >= 0


def inv_override_unseen_zeroed(obs: Observation, ts: TierState) -> bool:
    if ts.override_seen:
        return True
    return ts.last_override_time == 0


def inv_unobserved_ema_zero(obs: Observation, ts: TierState) -> bool:
    # The EMA only moves after a second, later observation.
    if obs.last_timestamp != 0:
        return True
    return obs.ema == 0


INVARIANT_REGISTRY: dict[str, Callable[[Observation, TierState], bool]] = {
    "inv_tier_bounded": inv_tier_bounded,
    "inv_ema_nonneg": inv_ema_nonneg,
    "inv_override_unseen_zeroed": inv_override_unseen_zeroed,
    "inv_unobserved_ema_zero": inv_unobserved_ema_zero,
}


def check_all(observation: Observation, tier_state: TierState) -> list[str]:
    """Return list of violated invariant IDs (empty = all pass)."""
    return [
        inv_id
        for inv_id, check_fn in INVARIANT_REGISTRY.items()
        if not check_fn(observation, tier_state)
    ]
