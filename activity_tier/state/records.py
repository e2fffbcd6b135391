"""Per-pool running state for the activity-tier engine.

Two records per pool, both immutable:

- `Observation`: engine-owned EMA state (last timestamp, last reference, ema).
- `TierState`: the single published tier plus its write clocks. Both write
  paths (EMA derivation and authorized override) produce new `TierState`
  values; neither mutates one in place.

`OpaqueAggregate` is carried for the confidential-computation collaborator and
is never interpreted here.
"""

from __future__ import annotations

from dataclasses import dataclass


MAX_TIER = 10


def _require_uint(name: str, val: object) -> None:
    if not isinstance(val, int) or isinstance(val, bool):
        raise TypeError(f"{name} must be an int")
    if val < 0:
        raise ValueError(f"{name} must be non-negative: {val}")


@dataclass(frozen=True)
class Observation:
    """EMA state. `last_timestamp == 0` means the EMA path has never run."""

    last_timestamp: int = 0
    last_reference: int = 0
    ema: int = 0

    def __post_init__(self) -> None:
        _require_uint("last_timestamp", self.last_timestamp)
        _require_uint("last_reference", self.last_reference)
        _require_uint("ema", self.ema)


@dataclass(frozen=True)
class TierState:
    """Published tier for one pool.

    `last_tier_write_time` tracks the latest tier mutation from either path.
    `last_override_time` is the cooldown clock: it is stamped only by
    overrides and resets, and is meaningful only when `override_seen`.
    """

    tier: int = 0
    last_tier_write_time: int = 0
    override_seen: bool = False
    last_override_time: int = 0

    def __post_init__(self) -> None:
        _require_uint("tier", self.tier)
        _require_uint("last_tier_write_time", self.last_tier_write_time)
        _require_uint("last_override_time", self.last_override_time)
        if not isinstance(self.override_seen, bool):
            raise TypeError("override_seen must be a bool")
        if self.tier > MAX_TIER:
            raise ValueError(f"tier must be in [0, {MAX_TIER}]: {self.tier}")


@dataclass(frozen=True)
class OpaqueAggregate:
    """Uninterpreted blob recorded by the trusted authority."""

    tag: str
    blob: bytes
    recorded_at: int = 0

    def __post_init__(self) -> None:
        if not isinstance(self.tag, str) or not self.tag:
            raise TypeError("tag must be a non-empty str")
        if not isinstance(self.blob, bytes):
            raise TypeError("blob must be bytes")
        _require_uint("recorded_at", self.recorded_at)
