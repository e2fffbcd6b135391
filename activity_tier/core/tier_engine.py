"""Activity tier engine: velocity EMA and fee-tier derivation.

Pure functional core. `observe()` takes one pool's current records plus one
observed trade and returns the next records:

  params? -> dt gate -> alpha -> signal -> EMA -> tier -> invariant check

Properties:
  - Never raises on valid inputs. Unconfigured pools, first observations,
    same-instant calls and clock regressions come back as `UpdateOutcome`
    variants with the EMA untouched.
  - Deterministic: floor division everywhere, so the EMA is biased toward 0
    relative to the real-number recurrence.
  - The EMA path writes `tier`/`last_tier_write_time` only when the derived
    tier differs; it never touches the override cooldown clock.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum, unique
from typing import Optional

from ..state.params import CurveParams
from ..state.records import MAX_TIER, Observation, TierState
from .errors import TierInvariantError
from .fixed_point import SCALE, clamp, mul_div, mul_scaled
from .invariants import check_all
from .velocity import instantaneous_signal


@unique
class UpdateOutcome(Enum):
    """How an observed trade was absorbed."""
    UNCONFIGURED = "unconfigured"   # no parameters: nothing stored
    INITIALIZED = "initialized"     # first observation: reference/timestamp recorded
    SAME_INSTANT = "same_instant"   # dt == 0: reference refreshed only
    STALE = "stale"                 # dt < 0: nothing changed
    UPDATED = "updated"             # EMA advanced (tier possibly changed)


@dataclass(frozen=True)
class TradeObservation:
    """One observed trade, as reported by the fee-application layer."""

    new_reference: int
    signed_amount: int
    liquidity: int
    now: int


@dataclass(frozen=True)
class UpdateResult:
    """Result of a single `observe()` call."""

    outcome: UpdateOutcome
    observation: Observation
    tier_state: TierState
    alpha: int = 0
    signal: int = 0
    previous_tier: int = 0

    @property
    def tier_changed(self) -> bool:
        return self.tier_state.tier != self.previous_tier

    @property
    def observation_changed(self) -> bool:
        return self.outcome in (UpdateOutcome.INITIALIZED, UpdateOutcome.SAME_INSTANT, UpdateOutcome.UPDATED)


# ---------------------------------------------------------------------------
# Math
# ---------------------------------------------------------------------------

def decay_alpha(dt: int, half_life_seconds: int) -> int:
    """Linear stand-in for ``1 - e^(-dt/tau)``, saturating at 1.0 once dt >= tau."""
    if dt >= half_life_seconds:
        return SCALE
    return (dt * SCALE) // half_life_seconds


def next_ema(alpha: int, signal: int, ema_old: int) -> int:
    """``alpha * x + (1 - alpha) * ema_old``, each term truncated."""
    return mul_scaled(alpha, signal) + mul_scaled(SCALE - alpha, ema_old)


def derive_tier(ema: int, params: CurveParams) -> int:
    """Map an EMA onto ``[0, MAX_TIER]`` through the pool's linear fee curve."""
    span = params.max_bps - params.min_bps
    if span <= 0:
        return 0
    ratio = min((ema * SCALE) // params.target, params.cap_multiplier * SCALE)
    fee_bps = clamp(
        params.base_bps + mul_div(params.slope, ratio, SCALE * SCALE),
        params.min_bps,
        params.max_bps,
    )
    return ((fee_bps - params.min_bps) * MAX_TIER) // span


def tier_fee_bps(tier: int, params: CurveParams) -> int:
    """Inverse read for fee consumers: the bps level at the bottom of *tier*."""
    if not (0 <= tier <= MAX_TIER):
        raise ValueError(f"tier must be in [0, {MAX_TIER}]: {tier}")
    return params.min_bps + ((params.max_bps - params.min_bps) * tier) // MAX_TIER


# ---------------------------------------------------------------------------
# Step
# ---------------------------------------------------------------------------

def observe(
    params: Optional[CurveParams],
    observation: Observation,
    tier_state: TierState,
    trade: TradeObservation,
) -> UpdateResult:
    """Fold one observed trade into a pool's state.

    Raises TierInvariantError only if the post-state is corrupt (a bug).
    """
    prior_tier = tier_state.tier
    if params is None:
        return UpdateResult(UpdateOutcome.UNCONFIGURED, observation, tier_state, previous_tier=prior_tier)

    dt = trade.now - observation.last_timestamp
    if observation.last_timestamp == 0 or dt == 0:
        outcome = UpdateOutcome.INITIALIZED if observation.last_timestamp == 0 else UpdateOutcome.SAME_INSTANT
        refreshed = replace(observation, last_reference=trade.new_reference, last_timestamp=trade.now)
        return UpdateResult(outcome, refreshed, tier_state, previous_tier=prior_tier)
    if dt < 0:
        return UpdateResult(UpdateOutcome.STALE, observation, tier_state, previous_tier=prior_tier)

    alpha = decay_alpha(dt, params.decay_half_life_seconds)
    signal = instantaneous_signal(
        params.mode,
        new_reference=trade.new_reference,
        old_reference=observation.last_reference,
        signed_amount=trade.signed_amount,
        liquidity=trade.liquidity,
    )
    ema = next_ema(alpha, signal, observation.ema)

    new_tier = derive_tier(ema, params)
    if new_tier != tier_state.tier:
        tier_state = replace(tier_state, tier=new_tier, last_tier_write_time=trade.now)

    new_observation = Observation(
        last_timestamp=trade.now,
        last_reference=trade.new_reference,
        ema=ema,
    )

    violations = check_all(new_observation, tier_state)
    if violations:
        raise TierInvariantError(violations)

    return UpdateResult(
        UpdateOutcome.UPDATED,
        new_observation,
        tier_state,
        alpha=alpha,
        signal=signal,
        previous_tier=prior_tier,
    )
