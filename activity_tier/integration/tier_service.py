"""
Activity tier service (imperative shell).

Wraps the pure kernels in `activity_tier.core` around one `TierStore`:
- validates caller inputs and checks capabilities,
- serializes every mutation behind a single re-entrant lock (the cooldown
  check and the read-then-write tier comparison must see a consistent prior state),
- commits new immutable records and publishes the change events before releasing
  the lock, so listeners see events in commit order.

Two independent write paths share each pool's `TierState`:
- `update()`: the EMA path, fed by every observed trade. Never raises on valid input.
- `set_tier()` / `set_tier_batch()`: the authorized override path, rate limited.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Sequence

from ..core.errors import (
    REJECT_INVALID_TIER,
    REJECT_TOO_FREQUENT,
    REJECT_UNAUTHORIZED,
    InvalidBatchError,
    InvalidTierError,
    TooFrequentError,
    UnauthorizedError,
)
from ..core.fixed_point import MAX_ABS_AMOUNT, MAX_LIQUIDITY, MAX_REFERENCE
from ..core.override import apply_override, plan_batch, reset_tier_state
from ..core.tier_engine import TradeObservation, UpdateOutcome, UpdateResult, observe, tier_fee_bps
from ..state.params import CurveParams, VelocityMode, default_params, params_to_dict, parse_mode
from ..state.records import MAX_TIER, Observation, OpaqueAggregate, TierState
from ..state.snapshot import snapshot_root, store_from_snapshot, store_to_snapshot
from ..state.store import PoolKey, TierStore, require_pool_key
from .authority import BlsCapability, Capability, DenyAllCapability, PrincipalCapability, call_payload
from .config import ServiceConfig
from .events import Event, EventBus, Listener, TierEvent, TierSource


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchResult:
    applied: tuple[str, ...] = ()
    skipped: tuple[str, ...] = ()


def _require_uint(value: Any, *, name: str, max_value: Optional[int] = None) -> int:
    if not isinstance(value, int) or isinstance(value, bool):
        raise TypeError(f"{name} must be an int")
    if value < 0:
        raise ValueError(f"{name} must be non-negative: {value}")
    if max_value is not None and value > max_value:
        raise ValueError(f"{name} exceeds domain bound: {value}")
    return value


def _require_signed(value: Any, *, name: str, max_abs: int) -> int:
    if not isinstance(value, int) or isinstance(value, bool):
        raise TypeError(f"{name} must be an int")
    if value > max_abs or value < -max_abs:
        raise ValueError(f"{name} exceeds domain bound: {value}")
    return value


def _capabilities_from_config(config: ServiceConfig) -> tuple[Capability, Capability]:
    admin: Capability = (
        PrincipalCapability(config.admin_principal) if config.admin_principal else DenyAllCapability()
    )
    if config.authority_bls_pubkey:
        authority: Capability = BlsCapability(config.authority_bls_pubkey, namespace=config.namespace)
    elif config.authority_principal:
        authority = PrincipalCapability(config.authority_principal)
    else:
        authority = DenyAllCapability()
    return admin, authority


class ActivityTierService:
    """Per-pool activity tiers with an EMA path and an authorized override path."""

    def __init__(
        self,
        *,
        admin: Capability,
        authority: Optional[Capability] = None,
        config: Optional[ServiceConfig] = None,
        store: Optional[TierStore] = None,
    ) -> None:
        if not isinstance(admin, Capability):
            raise TypeError("admin must be a Capability")
        if authority is not None and not isinstance(authority, Capability):
            raise TypeError("authority must be a Capability")
        self._config = config or ServiceConfig()
        self._admin = admin
        self._authority = authority or DenyAllCapability()
        self._store = store or TierStore()
        self._events = EventBus()
        self._lock = threading.RLock()

        for key, params in sorted(self._config.pools.items()):
            if self._store.get_params(key) is None:
                self._store.set_params(key, params)
        if self._config.pools:
            logger.info("preloaded parameters for %d pools", len(self._config.pools))

    @classmethod
    def from_config(
        cls,
        config: ServiceConfig,
        *,
        admin: Optional[Capability] = None,
        authority: Optional[Capability] = None,
    ) -> "ActivityTierService":
        """Build a service whose capabilities come from *config* unless given explicitly."""
        cfg_admin, cfg_authority = _capabilities_from_config(config)
        return cls(admin=admin or cfg_admin, authority=authority or cfg_authority, config=config)

    @classmethod
    def from_snapshot(
        cls,
        snapshot: Mapping[str, Any],
        *,
        admin: Capability,
        authority: Optional[Capability] = None,
        config: Optional[ServiceConfig] = None,
    ) -> "ActivityTierService":
        return cls(admin=admin, authority=authority, config=config, store=store_from_snapshot(snapshot))

    @property
    def config(self) -> ServiceConfig:
        return self._config

    # -- notifications ------------------------------------------------------

    def subscribe(self, listener: Listener) -> None:
        """Register *listener*; it runs synchronously while the service lock is held.

        A listener may read back into the service but must not wait on another
        thread that calls it.
        """
        self._events.subscribe(listener)

    def unsubscribe(self, listener: Listener) -> None:
        self._events.unsubscribe(listener)

    def _publish(self, events: List[TierEvent]) -> None:
        for ev in events:
            self._events.publish(ev)

    # -- authorization ------------------------------------------------------

    def _authorized(self, capability: Capability, credential: object, payload: bytes, *, action: str) -> bool:
        ok, reason = capability.permits(credential, payload)
        if not ok:
            logger.warning("%s rejected: %s", action, reason or "not permitted")
        return ok

    def _require(self, capability: Capability, credential: object, payload: bytes, *, action: str) -> None:
        if not self._authorized(capability, credential, payload, action=action):
            raise UnauthorizedError(f"{action}: caller lacks the required capability")

    # -- ingress: observed trades -------------------------------------------

    def update(
        self,
        key: PoolKey,
        reference_price: int,
        signed_amount: int,
        liquidity: int,
        now: int,
    ) -> UpdateResult:
        """Fold one observed trade into the pool's EMA and derived tier.

        Unconfigured pools, first observations, same-instant calls and clock
        regressions are absorbed (see `UpdateOutcome`); only malformed inputs raise.
        """
        require_pool_key(key)
        trade = TradeObservation(
            new_reference=_require_uint(reference_price, name="reference_price", max_value=MAX_REFERENCE),
            signed_amount=_require_signed(signed_amount, name="signed_amount", max_abs=MAX_ABS_AMOUNT),
            liquidity=_require_uint(liquidity, name="liquidity", max_value=MAX_LIQUIDITY),
            now=_require_uint(now, name="now"),
        )

        with self._lock:
            result = observe(
                self._store.get_params(key),
                self._store.get_observation(key),
                self._store.get_tier_state(key),
                trade,
            )
            if result.observation_changed:
                self._store.set_observation(key, result.observation)
            if result.tier_changed:
                self._store.set_tier_state(key, result.tier_state)
                logger.info("tier %s: %d -> %d (engine, ema=%d)", key, result.previous_tier, result.tier_state.tier, result.observation.ema)
                self._publish(
                    [
                        TierEvent(
                            event=Event.TIER_UPDATED,
                            key=key,
                            timestamp=now,
                            old_tier=result.previous_tier,
                            new_tier=result.tier_state.tier,
                            source=TierSource.ENGINE,
                        )
                    ]
                )

        if result.outcome is not UpdateOutcome.UPDATED:
            logger.debug("update %s absorbed: %s", key, result.outcome.value)
        return result

    # -- egress: reads ------------------------------------------------------

    def get_tier(self, key: PoolKey) -> int:
        """Published tier in [0, 10]; 0 for pools never seen."""
        with self._lock:
            return self._store.get_tier_state(key).tier

    def get_tier_state(self, key: PoolKey) -> TierState:
        with self._lock:
            return self._store.get_tier_state(key)

    def get_observation(self, key: PoolKey) -> Observation:
        with self._lock:
            return self._store.get_observation(key)

    def get_parameters(self, key: PoolKey) -> Optional[CurveParams]:
        with self._lock:
            return self._store.get_params(key)

    def get_fee_bps(self, key: PoolKey) -> Optional[int]:
        """Fee level for the pool's current tier, or None for unconfigured pools."""
        with self._lock:
            params = self._store.get_params(key)
            if params is None:
                return None
            return tier_fee_bps(self._store.get_tier_state(key).tier, params)

    def get_aggregate(self, key: PoolKey) -> Optional[OpaqueAggregate]:
        with self._lock:
            return self._store.get_aggregate(key)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return store_to_snapshot(self._store)

    def state_root(self) -> str:
        with self._lock:
            return snapshot_root(self._store)

    # -- administrative surface ---------------------------------------------

    def set_parameters(self, key: PoolKey, params: CurveParams, *, credential: object, now: int = 0) -> None:
        """Replace the pool's curve (admin only). Validation lives in `CurveParams`."""
        require_pool_key(key)
        if not isinstance(params, CurveParams):
            raise TypeError("params must be CurveParams")
        payload = call_payload("set_parameters", key=key, params=params_to_dict(params), now=now)
        with self._lock:
            self._require(self._admin, credential, payload, action="set_parameters")
            self._store.set_params(key, params)
            logger.info("parameters set for %s (mode=%s)", key, params.mode.value)
            self._publish([TierEvent(event=Event.PARAMETERS_UPDATED, key=key, timestamp=now, detail=params.mode.value)])

    def set_default_parameters(
        self, key: PoolKey, mode: VelocityMode | str, *, credential: object, now: int = 0
    ) -> CurveParams:
        params = default_params(parse_mode(mode))
        self.set_parameters(key, params, credential=credential, now=now)
        return params

    def change_authority(self, new_authority: Capability, *, credential: object, now: int = 0) -> None:
        if not isinstance(new_authority, Capability):
            raise TypeError("new_authority must be a Capability")
        payload = call_payload("change_authority", authority=new_authority.describe(), now=now)
        with self._lock:
            self._require(self._admin, credential, payload, action="change_authority")
            old = self._authority
            self._authority = new_authority
            logger.info("authority changed: %s -> %s", old.describe(), new_authority.describe())
            self._publish([TierEvent(event=Event.AUTHORITY_CHANGED, timestamp=now, detail=new_authority.describe())])

    def change_admin(self, new_admin: Capability, *, credential: object, now: int = 0) -> None:
        if not isinstance(new_admin, Capability):
            raise TypeError("new_admin must be a Capability")
        payload = call_payload("change_admin", admin=new_admin.describe(), now=now)
        with self._lock:
            self._require(self._admin, credential, payload, action="change_admin")
            self._admin = new_admin
            logger.info("admin changed to %s", new_admin.describe())
            self._publish([TierEvent(event=Event.ADMIN_CHANGED, timestamp=now, detail=new_admin.describe())])

    def reset_state(self, key: PoolKey, now: int, *, credential: object) -> None:
        """Zero the pool's observation and tier; the reset opens a fresh cooldown window."""
        require_pool_key(key)
        _require_uint(now, name="now")
        payload = call_payload("reset_state", key=key, now=now)
        with self._lock:
            self._require(self._admin, credential, payload, action="reset_state")
            old_tier = self._store.get_tier_state(key).tier
            self._store.reset(key, reset_tier_state(now))
            logger.info("state reset for %s at %d (tier was %d)", key, now, old_tier)
            events = [TierEvent(event=Event.STATE_RESET, key=key, timestamp=now, old_tier=old_tier, new_tier=0)]
            if old_tier != 0:
                events.append(
                    TierEvent(
                        event=Event.TIER_UPDATED,
                        key=key,
                        timestamp=now,
                        old_tier=old_tier,
                        new_tier=0,
                        source=TierSource.RESET,
                    )
                )
            self._publish(events)

    # -- authorized override path -------------------------------------------

    def set_tier(self, key: PoolKey, tier: int, now: int, *, credential: object) -> None:
        """Directly publish *tier* for one pool; all-or-nothing.

        Raises:
            UnauthorizedError: credential does not satisfy the authority capability.
            InvalidTierError: tier outside [0, 10].
            TooFrequentError: cooldown since the last override/reset has not elapsed.
        """
        require_pool_key(key)
        _require_uint(now, name="now")
        payload = call_payload("set_tier", key=key, tier=tier, now=now)
        with self._lock:
            authorized = self._authorized(self._authority, credential, payload, action="set_tier")
            current = self._store.get_tier_state(key)
            res = apply_override(
                current,
                tier,
                now,
                authorized=authorized,
                cooldown_seconds=self._config.cooldown_seconds,
                include_engine_writes=self._config.cooldown_includes_engine_writes,
            )
            if res.accepted and res.state is not None:
                self._store.set_tier_state(key, res.state)
                logger.info("tier %s: %d -> %d (override)", key, current.tier, tier)
                self._publish(
                    [
                        TierEvent(
                            event=Event.TIER_UPDATED,
                            key=key,
                            timestamp=now,
                            old_tier=current.tier,
                            new_tier=tier,
                            source=TierSource.OVERRIDE,
                        )
                    ]
                )

        if res.rejection == REJECT_UNAUTHORIZED:
            raise UnauthorizedError("set_tier: caller lacks the tier authority capability")
        if res.rejection == REJECT_INVALID_TIER:
            raise InvalidTierError(f"tier must be in [0, {MAX_TIER}]: {tier!r}")
        if res.rejection == REJECT_TOO_FREQUENT:
            logger.warning("set_tier %s at %d inside cooldown (retry at %d)", key, now, res.retry_at)
            raise TooFrequentError(key, res.retry_at)

    def set_tier_batch(
        self,
        keys: Sequence[PoolKey],
        tiers: Sequence[int],
        now: int,
        *,
        credential: object,
    ) -> BatchResult:
        """Publish tiers for several pools; pools still cooling down are skipped, not failed."""
        keys = list(keys)
        tiers = list(tiers)
        if len(keys) != len(tiers):
            raise InvalidBatchError(f"keys/tiers length mismatch: {len(keys)} != {len(tiers)}")
        for key in keys:
            require_pool_key(key)
        _require_uint(now, name="now")
        payload = call_payload("set_tier_batch", keys=keys, tiers=tiers, now=now)
        with self._lock:
            authorized = self._authorized(self._authority, credential, payload, action="set_tier_batch")
            states = {key: self._store.get_tier_state(key) for key in keys}
            plan = plan_batch(
                states,
                keys,
                tiers,
                now,
                authorized=authorized,
                cooldown_seconds=self._config.cooldown_seconds,
                include_engine_writes=self._config.cooldown_includes_engine_writes,
            )
            if plan.accepted:
                events: List[TierEvent] = []
                last_tier = dict(plan.previous)
                for key, post in plan.applied:
                    self._store.set_tier_state(key, post)
                    events.append(
                        TierEvent(
                            event=Event.TIER_UPDATED,
                            key=key,
                            timestamp=now,
                            old_tier=last_tier[key],
                            new_tier=post.tier,
                            source=TierSource.OVERRIDE,
                        )
                    )
                    last_tier[key] = post.tier
                if plan.skipped:
                    logger.info("set_tier_batch skipped %d cooling pools: %s", len(plan.skipped), ", ".join(plan.skipped))
                self._publish(events)

        if plan.rejection == REJECT_UNAUTHORIZED:
            raise UnauthorizedError("set_tier_batch: caller lacks the tier authority capability")
        if plan.rejection == REJECT_INVALID_TIER:
            raise InvalidTierError(f"batch contains a tier outside [0, {MAX_TIER}]")

        return BatchResult(
            applied=tuple(key for key, _ in plan.applied),
            skipped=plan.skipped,
        )

    def record_aggregate(self, key: PoolKey, tag: str, blob: bytes, now: int, *, credential: object) -> None:
        """Store an opaque aggregate for the pool (authority only); never interpreted."""
        require_pool_key(key)
        _require_uint(now, name="now")
        aggregate = OpaqueAggregate(tag=tag, blob=blob, recorded_at=now)
        payload = call_payload("record_aggregate", key=key, tag=tag, blob="0x" + blob.hex(), now=now)
        with self._lock:
            self._require(self._authority, credential, payload, action="record_aggregate")
            self._store.set_aggregate(key, aggregate)
            logger.debug("aggregate %s recorded for %s (%d bytes)", tag, key, len(blob))
            self._publish([TierEvent(event=Event.AGGREGATE_RECORDED, key=key, timestamp=now, detail=tag)])
