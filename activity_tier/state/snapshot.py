"""
Tier store snapshot encoding.

Goals:
- Deterministic JSON serialization for hashing / persistence by the caller.
- Round-trippable into `TierStore`.
- Explicit versioning.

Round-trip property (tested): `snapshot_root(store_from_snapshot(store_to_snapshot(s))) == snapshot_root(s)`.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping

from ..core.invariants import check_all
from .canonical import bytes_to_hex, canonical_json_bytes, domain_sep_bytes, hex_to_bytes, sha256_hex
from .params import params_from_dict, params_to_dict
from .records import Observation, OpaqueAggregate, TierState
from .store import TierStore, require_pool_key


SNAPSHOT_VERSION = 1


def _require_int(value: Any, *, name: str) -> int:
    if not isinstance(value, int) or isinstance(value, bool):
        raise TypeError(f"{name} must be an int")
    if value < 0:
        raise ValueError(f"{name} must be non-negative")
    return int(value)


def _require_mapping(value: Any, *, name: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise TypeError(f"{name} must be an object")
    return value


def store_to_snapshot(store: TierStore) -> Dict[str, Any]:
    """Serialize a store to a JSON-safe dict (ints, strings, hex blobs)."""
    return {
        "version": SNAPSHOT_VERSION,
        "params": {k: params_to_dict(p) for k, p in store.params_items()},
        "observations": {
            k: {"last_timestamp": o.last_timestamp, "last_reference": o.last_reference, "ema": o.ema}
            for k, o in store.observation_items()
        },
        "tiers": {
            k: {
                "tier": t.tier,
                "last_tier_write_time": t.last_tier_write_time,
                "override_seen": t.override_seen,
                "last_override_time": t.last_override_time,
            }
            for k, t in store.tier_items()
        },
        "aggregates": {
            k: {"tag": a.tag, "blob": bytes_to_hex(a.blob), "recorded_at": a.recorded_at}
            for k, a in store.aggregate_items()
        },
    }


def store_from_snapshot(obj: Mapping[str, Any]) -> TierStore:
    """Rebuild a `TierStore`; raises TypeError/ValueError/KeyError on malformed input.

    Every loaded pool must also pass `check_all`.
    """
    obj = _require_mapping(obj, name="snapshot")
    version = obj.get("version")
    if version != SNAPSHOT_VERSION:
        raise ValueError(f"unsupported snapshot version: {version!r}")

    store = TierStore()
    for key, raw in _require_mapping(obj.get("params", {}), name="params").items():
        store.set_params(require_pool_key(key), params_from_dict(dict(_require_mapping(raw, name=f"params[{key}]"))))
    for key, raw in _require_mapping(obj.get("observations", {}), name="observations").items():
        raw = _require_mapping(raw, name=f"observations[{key}]")
        store.set_observation(
            require_pool_key(key),
            Observation(
                last_timestamp=_require_int(raw["last_timestamp"], name="last_timestamp"),
                last_reference=_require_int(raw["last_reference"], name="last_reference"),
                ema=_require_int(raw["ema"], name="ema"),
            ),
        )
    for key, raw in _require_mapping(obj.get("tiers", {}), name="tiers").items():
        raw = _require_mapping(raw, name=f"tiers[{key}]")
        store.set_tier_state(
            require_pool_key(key),
            TierState(
                tier=_require_int(raw["tier"], name="tier"),
                last_tier_write_time=_require_int(raw["last_tier_write_time"], name="last_tier_write_time"),
                override_seen=raw["override_seen"],
                last_override_time=_require_int(raw["last_override_time"], name="last_override_time"),
            ),
        )
    for key, raw in _require_mapping(obj.get("aggregates", {}), name="aggregates").items():
        raw = _require_mapping(raw, name=f"aggregates[{key}]")
        store.set_aggregate(
            require_pool_key(key),
            OpaqueAggregate(
                tag=raw["tag"],
                blob=hex_to_bytes(raw["blob"], name="blob"),
                recorded_at=_require_int(raw.get("recorded_at", 0), name="recorded_at"),
            ),
        )
    for key in store.keys():
        violated = check_all(store.get_observation(key), store.get_tier_state(key))
        if violated:
            raise ValueError(f"snapshot record for {key!r} violates {', '.join(violated)}")
    return store


def snapshot_root(store: TierStore) -> str:
    """Domain-separated sha256 over the canonical snapshot."""
    payload = canonical_json_bytes(store_to_snapshot(store))
    return sha256_hex(domain_sep_bytes("tier_store_root", version=SNAPSHOT_VERSION) + payload)
