"""
Service configuration.

Sources, lowest precedence first:
  1. `ServiceConfig` defaults,
  2. a YAML document (`load_config`),
  3. environment overrides (`apply_env_overrides` / `config_from_env`).

YAML layout:

    cooldown_seconds: 60
    cooldown_includes_engine_writes: false
    namespace: activity-tier-local
    admin_principal: ops-admin
    authority_principal: fhe-relayer        # or authority_bls_pubkey: 0x...
    pools:
      pool-a: price                         # default curve for the mode
      pool-b:                               # explicit curve
        base_bps: 10
        min_bps: 5
        max_bps: 100
        decay_half_life_seconds: 300
        target: 2000000000000000
        slope: 19000000000000000000
        cap_multiplier: 5
        mode: flow

Fixed-point values must be written as integers (YAML floats are rejected).
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from ..core.errors import InvalidParametersError
from ..core.override import DEFAULT_COOLDOWN_SECONDS
from ..state.params import CurveParams, default_params, params_from_dict, parse_mode
from .authority import DEFAULT_NAMESPACE


try:
    import yaml  # type: ignore

    _YAML_AVAILABLE = True
except Exception:  # pragma: no cover - optional dependency in some environments
    yaml = None  # type: ignore[assignment]
    _YAML_AVAILABLE = False


logger = logging.getLogger(__name__)

ENV_PREFIX = "ACTIVITY_TIER_"

_KNOWN_KEYS = {
    "cooldown_seconds",
    "cooldown_includes_engine_writes",
    "namespace",
    "admin_principal",
    "authority_principal",
    "authority_bls_pubkey",
    "pools",
}


@dataclass(frozen=True)
class ServiceConfig:
    cooldown_seconds: int = DEFAULT_COOLDOWN_SECONDS
    # When True, EMA-driven tier changes also restart the override cooldown.
    cooldown_includes_engine_writes: bool = False
    # Domain-separation namespace for signed (BLS) credentials.
    namespace: str = DEFAULT_NAMESPACE
    admin_principal: Optional[str] = None
    authority_principal: Optional[str] = None
    authority_bls_pubkey: Optional[str] = None
    pools: Dict[str, CurveParams] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.cooldown_seconds, int) or isinstance(self.cooldown_seconds, bool):
            raise TypeError("cooldown_seconds must be an int")
        if self.cooldown_seconds < 0:
            raise ValueError(f"cooldown_seconds must be non-negative: {self.cooldown_seconds}")
        if not isinstance(self.cooldown_includes_engine_writes, bool):
            raise TypeError("cooldown_includes_engine_writes must be a bool")
        if not isinstance(self.namespace, str) or not self.namespace:
            raise ValueError("namespace must be a non-empty string")
        if self.authority_principal and self.authority_bls_pubkey:
            raise ValueError("configure at most one of authority_principal / authority_bls_pubkey")
        for key, params in self.pools.items():
            if not isinstance(key, str) or not key:
                raise TypeError(f"pool key must be a non-empty str, got {key!r}")
            if not isinstance(params, CurveParams):
                raise TypeError(f"pools[{key!r}] must be CurveParams")


def _bool_value(raw: object, *, name: str) -> bool:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, str):
        v = raw.strip().lower()
        if v in {"1", "true", "yes", "on"}:
            return True
        if v in {"0", "false", "no", "off"}:
            return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


def _optional_str(raw: object, *, name: str) -> Optional[str]:
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise TypeError(f"{name} must be a string")
    return raw.strip() or None


def _pool_params(key: str, raw: object) -> CurveParams:
    if isinstance(raw, str):
        return default_params(parse_mode(raw))
    if isinstance(raw, Mapping):
        try:
            return params_from_dict(dict(raw))
        except KeyError as exc:
            raise InvalidParametersError(f"pools[{key!r}] missing field {exc}") from exc
    raise TypeError(f"pools[{key!r}] must be a mode name or a mapping")


def config_from_mapping(obj: Mapping[str, Any]) -> ServiceConfig:
    """Build a `ServiceConfig` from a parsed document; unknown keys are rejected."""
    if not isinstance(obj, Mapping):
        raise TypeError("config must be a mapping")
    unknown = set(obj) - _KNOWN_KEYS
    if unknown:
        raise ValueError(f"unknown config keys: {sorted(unknown)}")

    pools_raw = obj.get("pools") or {}
    if not isinstance(pools_raw, Mapping):
        raise TypeError("pools must be a mapping")
    pools = {str(k): _pool_params(str(k), v) for k, v in pools_raw.items()}

    kwargs: Dict[str, Any] = {"pools": pools}
    if "cooldown_seconds" in obj:
        kwargs["cooldown_seconds"] = obj["cooldown_seconds"]
    if "cooldown_includes_engine_writes" in obj:
        kwargs["cooldown_includes_engine_writes"] = _bool_value(
            obj["cooldown_includes_engine_writes"], name="cooldown_includes_engine_writes"
        )
    if "namespace" in obj:
        kwargs["namespace"] = obj["namespace"]
    for name in ("admin_principal", "authority_principal", "authority_bls_pubkey"):
        if name in obj:
            kwargs[name] = _optional_str(obj[name], name=name)
    return ServiceConfig(**kwargs)


def load_config(path: str | Path) -> ServiceConfig:
    """Load a YAML config file, then apply environment overrides."""
    if not _YAML_AVAILABLE:
        raise RuntimeError("PyYAML is required to load config files (pip install pyyaml)")
    p = Path(path)
    obj = yaml.safe_load(p.read_text(encoding="utf-8"))
    if obj is None:
        obj = {}
    if not isinstance(obj, Mapping):
        raise TypeError("config YAML must be a mapping")
    cfg = apply_env_overrides(config_from_mapping(obj))
    logger.info("loaded config from %s (%d preset pools)", p, len(cfg.pools))
    return cfg


def apply_env_overrides(cfg: ServiceConfig, environ: Optional[Mapping[str, str]] = None) -> ServiceConfig:
    """Override scalar settings from `ACTIVITY_TIER_*` environment variables."""
    env = os.environ if environ is None else environ
    changes: Dict[str, Any] = {}

    raw = env.get(ENV_PREFIX + "COOLDOWN_SECONDS")
    if raw is not None and raw.strip():
        try:
            changes["cooldown_seconds"] = int(raw.strip())
        except ValueError as exc:
            raise ValueError(f"{ENV_PREFIX}COOLDOWN_SECONDS must be an int: {raw!r}") from exc

    raw = env.get(ENV_PREFIX + "COOLDOWN_INCLUDES_ENGINE_WRITES")
    if raw is not None and raw.strip():
        changes["cooldown_includes_engine_writes"] = _bool_value(
            raw, name=ENV_PREFIX + "COOLDOWN_INCLUDES_ENGINE_WRITES"
        )

    for name in ("namespace", "admin_principal", "authority_principal", "authority_bls_pubkey"):
        raw = env.get(ENV_PREFIX + name.upper())
        if raw is not None and raw.strip():
            changes[name] = raw.strip()

    if not changes:
        return cfg
    logger.debug("environment overrides: %s", sorted(changes))
    return replace(cfg, **changes)


def config_from_env(environ: Optional[Mapping[str, str]] = None) -> ServiceConfig:
    """Defaults plus environment overrides (no file)."""
    return apply_env_overrides(ServiceConfig(), environ)
