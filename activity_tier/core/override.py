"""Authorized tier override kernel.

Pure functions for the trusted write path:
  - `apply_override`: single-item, all-or-nothing (rejects inside the cooldown).
  - `plan_batch`: multi-item; items inside the cooldown are skipped, not rejected.
  - `reset_tier_state`: administrative zeroing that opens a fresh cooldown window.

Authorization is decided by the caller (see `integration.authority`) and passed
in as a bool, so the guards stay pure predicates.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Mapping, Optional, Sequence

from ..state.records import MAX_TIER, TierState
from .errors import REJECT_INVALID_TIER, REJECT_TOO_FREQUENT, REJECT_UNAUTHORIZED


DEFAULT_COOLDOWN_SECONDS = 60


@dataclass(frozen=True)
class OverrideResult:
    """Result of a single override attempt."""

    accepted: bool
    state: Optional[TierState] = None
    rejection: Optional[str] = None
    retry_at: int = 0


@dataclass(frozen=True)
class BatchPlan:
    """Outcome of planning a batch: per-key post-states plus skipped keys."""

    applied: tuple[tuple[str, TierState], ...] = ()
    skipped: tuple[str, ...] = ()
    rejection: Optional[str] = None
    previous: Mapping[str, int] = field(default_factory=dict)

    @property
    def accepted(self) -> bool:
        return self.rejection is None


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------

def guard_tier(tier: object) -> bool:
    """Tier must be an int in ``[0, MAX_TIER]``."""
    if not isinstance(tier, int) or isinstance(tier, bool):
        return False
    return 0 <= tier <= MAX_TIER


def cooldown_anchor(state: TierState, *, include_engine_writes: bool = False) -> Optional[int]:
    """Timestamp the cooldown is measured from, or None if the pool has none yet."""
    anchors: list[int] = []
    if state.override_seen:
        anchors.append(state.last_override_time)
    if include_engine_writes and (state.override_seen or state.last_tier_write_time > 0):
        anchors.append(state.last_tier_write_time)
    return max(anchors) if anchors else None


def cooldown_elapsed(
    state: TierState,
    now: int,
    *,
    cooldown_seconds: int,
    include_engine_writes: bool = False,
) -> bool:
    anchor = cooldown_anchor(state, include_engine_writes=include_engine_writes)
    if anchor is None:
        return True
    return now - anchor >= cooldown_seconds


# ---------------------------------------------------------------------------
# Updates
# ---------------------------------------------------------------------------

def _stamp(state: TierState, tier: int, now: int) -> TierState:
    return replace(
        state,
        tier=tier,
        last_tier_write_time=now,
        override_seen=True,
        last_override_time=now,
    )


def apply_override(
    state: TierState,
    tier: int,
    now: int,
    *,
    authorized: bool,
    cooldown_seconds: int = DEFAULT_COOLDOWN_SECONDS,
    include_engine_writes: bool = False,
) -> OverrideResult:
    """Single-item override: unauthorized, invalid and too-frequent calls are rejected."""
    if not authorized:
        return OverrideResult(accepted=False, rejection=REJECT_UNAUTHORIZED)
    if not guard_tier(tier):
        return OverrideResult(accepted=False, rejection=REJECT_INVALID_TIER)
    if not cooldown_elapsed(
        state, now, cooldown_seconds=cooldown_seconds, include_engine_writes=include_engine_writes
    ):
        anchor = cooldown_anchor(state, include_engine_writes=include_engine_writes) or 0
        return OverrideResult(
            accepted=False,
            rejection=REJECT_TOO_FREQUENT,
            retry_at=anchor + cooldown_seconds,
        )
    return OverrideResult(accepted=True, state=_stamp(state, tier, now))


def plan_batch(
    states: Mapping[str, TierState],
    keys: Sequence[str],
    tiers: Sequence[int],
    now: int,
    *,
    authorized: bool,
    cooldown_seconds: int = DEFAULT_COOLDOWN_SECONDS,
    include_engine_writes: bool = False,
) -> BatchPlan:
    """Plan a batch override.

    Every tier is validated before anything is planned, so one bad value
    rejects the whole batch. Keys still cooling down are skipped. Items apply
    in order, so a key repeated in one batch is written once and then skipped
    (for any positive cooldown).
    """
    if not authorized:
        return BatchPlan(rejection=REJECT_UNAUTHORIZED)
    if not all(guard_tier(t) for t in tiers):
        return BatchPlan(rejection=REJECT_INVALID_TIER)

    working: dict[str, TierState] = {}
    previous: dict[str, int] = {}
    applied: list[tuple[str, TierState]] = []
    skipped: list[str] = []
    for key, tier in zip(keys, tiers):
        current = working.get(key, states[key])
        if not cooldown_elapsed(
            current, now, cooldown_seconds=cooldown_seconds, include_engine_writes=include_engine_writes
        ):
            skipped.append(key)
            continue
        previous.setdefault(key, states[key].tier)
        post = _stamp(current, tier, now)
        working[key] = post
        applied.append((key, post))
    return BatchPlan(applied=tuple(applied), skipped=tuple(skipped), previous=previous)


def reset_tier_state(now: int) -> TierState:
    """Zeroed tier state whose cooldown window starts at *now*."""
    return TierState(tier=0, last_tier_write_time=now, override_seen=True, last_override_time=now)
