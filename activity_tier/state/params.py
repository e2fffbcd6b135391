"""Per-pool curve parameters for activity-tier derivation.

A `CurveParams` record shapes both halves of the engine:
- the EMA responsiveness (`decay_half_life_seconds`) and signal source (`mode`),
- the EMA -> fee -> tier mapping (`target`, `slope`, `cap_multiplier`, bps bounds).

Units:
  *_bps        basis points (1/10_000)
  target       fixed-point 1e18 signal level treated as "ratio 1.0"
  slope        fixed-point 1e18 basis points added per unit of ratio
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, unique

from ..core.errors import InvalidParametersError
from ..core.fixed_point import SCALE


MAX_HALF_LIFE_SECONDS = 2**32 - 1


@unique
class VelocityMode(Enum):
    """Which instantaneous signal feeds the EMA."""
    PRICE = "price"
    FLOW = "flow"


@dataclass(frozen=True)
class CurveParams:
    """Immutable, validated curve configuration for one pool."""

    base_bps: int
    min_bps: int
    max_bps: int
    decay_half_life_seconds: int
    target: int
    slope: int
    cap_multiplier: int
    mode: VelocityMode = VelocityMode.PRICE

    def __post_init__(self) -> None:
        for name, val in (
            ("base_bps", self.base_bps),
            ("min_bps", self.min_bps),
            ("max_bps", self.max_bps),
            ("decay_half_life_seconds", self.decay_half_life_seconds),
            ("target", self.target),
            ("slope", self.slope),
            ("cap_multiplier", self.cap_multiplier),
        ):
            if not isinstance(val, int) or isinstance(val, bool):
                raise TypeError(f"{name} must be an int")
            if val < 0:
                raise InvalidParametersError(f"{name} must be non-negative: {val}")
        if not isinstance(self.mode, VelocityMode):
            raise TypeError("mode must be a VelocityMode")
        if not (self.min_bps < self.max_bps):
            raise InvalidParametersError(
                f"bps bounds must be ordered: min={self.min_bps} < max={self.max_bps}"
            )
        if not (0 < self.decay_half_life_seconds <= MAX_HALF_LIFE_SECONDS):
            raise InvalidParametersError(
                f"decay_half_life_seconds must be in [1, {MAX_HALF_LIFE_SECONDS}]: "
                f"{self.decay_half_life_seconds}"
            )
        if self.target <= 0:
            raise InvalidParametersError(f"target must be positive: {self.target}")
        if self.cap_multiplier <= 0:
            raise InvalidParametersError(f"cap_multiplier must be positive: {self.cap_multiplier}")


# Default curve: zero activity -> tier 0, ratio at the 5x cap -> 5 + 19*5 = 100 bps -> tier 10.
_DEFAULT_TARGET = {
    VelocityMode.PRICE: 2 * 10**15,   # 0.2% relative move
    VelocityMode.FLOW: 10**16,        # 1% of liquidity
}


def default_params(mode: VelocityMode) -> CurveParams:
    """Return the documented default curve for *mode*."""
    return CurveParams(
        base_bps=5,
        min_bps=5,
        max_bps=100,
        decay_half_life_seconds=180,
        target=_DEFAULT_TARGET[mode],
        slope=19 * SCALE,
        cap_multiplier=5,
        mode=mode,
    )


def parse_mode(value: object) -> VelocityMode:
    """Accept a `VelocityMode` or its (case-insensitive) string value."""
    if isinstance(value, VelocityMode):
        return value
    if not isinstance(value, str) or not value.strip():
        raise InvalidParametersError(f"mode must be one of price/flow, got {value!r}")
    try:
        return VelocityMode(value.strip().lower())
    except ValueError as exc:
        raise InvalidParametersError(f"unknown velocity mode: {value!r}") from exc


def params_to_dict(params: CurveParams) -> dict[str, int | str]:
    """Serialize to a JSON-safe dict (ints + mode string)."""
    return {
        "base_bps": params.base_bps,
        "min_bps": params.min_bps,
        "max_bps": params.max_bps,
        "decay_half_life_seconds": params.decay_half_life_seconds,
        "target": params.target,
        "slope": params.slope,
        "cap_multiplier": params.cap_multiplier,
        "mode": params.mode.value,
    }


def params_from_dict(d: dict) -> CurveParams:
    """Deserialize a dict produced by `params_to_dict` (or a config file entry).

    Raises KeyError on missing fields and InvalidParametersError on bad values.
    """
    return CurveParams(
        base_bps=d["base_bps"],
        min_bps=d["min_bps"],
        max_bps=d["max_bps"],
        decay_half_life_seconds=d["decay_half_life_seconds"],
        target=d["target"],
        slope=d["slope"],
        cap_multiplier=d["cap_multiplier"],
        mode=parse_mode(d.get("mode", VelocityMode.PRICE.value)),
    )
