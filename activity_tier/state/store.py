"""
Per-pool state tables for the activity-tier engine.

`TierStore` keeps four independent maps keyed by `PoolKey`:
parameters, observations, tier states and opaque aggregates. Records are
immutable; the store only swaps them. Iteration order is not relied upon;
snapshot code sorts keys explicitly.
"""

from __future__ import annotations

import hashlib
from typing import Dict, Iterator, Optional

from .params import CurveParams
from .records import Observation, OpaqueAggregate, TierState


PoolKey = str  # opaque, non-empty identifier

_EMPTY_OBSERVATION = Observation()
_EMPTY_TIER_STATE = TierState()


def require_pool_key(key: object) -> PoolKey:
    if not isinstance(key, str) or not key:
        raise TypeError(f"pool key must be a non-empty str, got {key!r}")
    try:
        key.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise TypeError(f"pool key must be valid UTF-8 text, got {key!r}") from exc
    return key


def derive_pool_key(asset0: str, asset1: str, fee_bps: int, *, label: str = "") -> PoolKey:
    """
    Deterministically derive a pool key from a pool description.

    Assets are sorted so (a, b) and (b, a) map to the same key.
    """
    if not isinstance(asset0, str) or not asset0 or not isinstance(asset1, str) or not asset1:
        raise ValueError("assets must be non-empty strings")
    if asset0 == asset1:
        raise ValueError("pool assets must differ")
    if not isinstance(fee_bps, int) or isinstance(fee_bps, bool) or not (0 <= fee_bps <= 10_000):
        raise ValueError(f"fee_bps must be in [0, 10000]: {fee_bps}")
    lo, hi = sorted((asset0, asset1))
    data = (
        b"ActivityTierPool\x00"
        + lo.encode("utf-8") + b"\x00"
        + hi.encode("utf-8") + b"\x00"
        + str(fee_bps).encode("ascii") + b"\x00"
        + label.encode("utf-8")
    )
    return "0x" + hashlib.sha256(data).hexdigest()


class TierStore:
    """
    Owner of all per-pool records.

    Reads of missing keys return the empty records (tier 0, never observed);
    only `get_params` distinguishes "unset" by returning None.
    """

    def __init__(self) -> None:
        self._params: Dict[PoolKey, CurveParams] = {}
        self._observations: Dict[PoolKey, Observation] = {}
        self._tiers: Dict[PoolKey, TierState] = {}
        self._aggregates: Dict[PoolKey, OpaqueAggregate] = {}

    # -- parameters ---------------------------------------------------------

    def get_params(self, key: PoolKey) -> Optional[CurveParams]:
        return self._params.get(key)

    def set_params(self, key: PoolKey, params: CurveParams) -> None:
        self._params[require_pool_key(key)] = params

    # -- observations -------------------------------------------------------

    def has_observation(self, key: PoolKey) -> bool:
        return key in self._observations

    def get_observation(self, key: PoolKey) -> Observation:
        return self._observations.get(key, _EMPTY_OBSERVATION)

    def set_observation(self, key: PoolKey, observation: Observation) -> None:
        self._observations[require_pool_key(key)] = observation

    # -- tier states --------------------------------------------------------

    def get_tier_state(self, key: PoolKey) -> TierState:
        return self._tiers.get(key, _EMPTY_TIER_STATE)

    def set_tier_state(self, key: PoolKey, state: TierState) -> None:
        self._tiers[require_pool_key(key)] = state

    # -- opaque aggregates --------------------------------------------------

    def get_aggregate(self, key: PoolKey) -> Optional[OpaqueAggregate]:
        return self._aggregates.get(key)

    def set_aggregate(self, key: PoolKey, aggregate: OpaqueAggregate) -> None:
        self._aggregates[require_pool_key(key)] = aggregate

    # -- whole-key operations -----------------------------------------------

    def reset(self, key: PoolKey, tier_state: TierState) -> None:
        """Drop the observation and install *tier_state*; parameters survive."""
        self._observations.pop(key, None)
        self._tiers[require_pool_key(key)] = tier_state

    def keys(self) -> Iterator[PoolKey]:
        """Every key with at least one record, sorted."""
        seen = set(self._params) | set(self._observations) | set(self._tiers) | set(self._aggregates)
        return iter(sorted(seen))

    def params_items(self):
        return sorted(self._params.items())

    def observation_items(self):
        return sorted(self._observations.items())

    def tier_items(self):
        return sorted(self._tiers.items())

    def aggregate_items(self):
        return sorted(self._aggregates.items())
