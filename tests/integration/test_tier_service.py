"""End-to-end tests for ActivityTierService (EMA path, override path, admin surface)."""

from __future__ import annotations

import logging
import threading

import pytest

from activity_tier import (
    ActivityTierService,
    CurveParams,
    DenyAllCapability,
    Event,
    InvalidBatchError,
    InvalidParametersError,
    InvalidTierError,
    PrincipalCapability,
    ServiceConfig,
    TierEvent,
    TierSource,
    TooFrequentError,
    UnauthorizedError,
    UpdateOutcome,
    VelocityMode,
    default_params,
)
from activity_tier.core.fixed_point import MAX_REFERENCE, SCALE
from activity_tier.state.records import Observation, TierState


ADMIN = "admin"
ORACLE = "oracle"
POOL = "pool-a"


def _service(**config_kwargs) -> ActivityTierService:
    return ActivityTierService(
        admin=PrincipalCapability(ADMIN),
        authority=PrincipalCapability(ORACLE),
        config=ServiceConfig(**config_kwargs),
    )


def _configured(mode: VelocityMode = VelocityMode.PRICE, **config_kwargs) -> ActivityTierService:
    svc = _service(**config_kwargs)
    svc.set_default_parameters(POOL, mode, credential=ADMIN)
    return svc


def _recorder(svc: ActivityTierService) -> list[TierEvent]:
    events: list[TierEvent] = []
    svc.subscribe(events.append)
    return events


# ---------------------------------------------------------------------------
# EMA path
# ---------------------------------------------------------------------------

class TestUpdate:
    def test_unconfigured_pool_stores_nothing(self):
        svc = _service()
        r = svc.update("unknown", SCALE, 5, 1_000, 100)
        assert r.outcome is UpdateOutcome.UNCONFIGURED
        assert svc.get_observation("unknown") == Observation()
        assert svc.get_tier("unknown") == 0
        assert "unknown" not in svc.snapshot()["observations"]

    def test_first_update_only_records_reference(self):
        svc = _configured()
        r = svc.update(POOL, SCALE, 0, 0, 100)
        assert r.outcome is UpdateOutcome.INITIALIZED
        assert svc.get_observation(POOL) == Observation(last_timestamp=100, last_reference=SCALE, ema=0)
        assert svc.get_tier(POOL) == 0

    def test_price_move_raises_tier(self):
        svc = _configured()
        events = _recorder(svc)
        svc.update(POOL, SCALE, 0, 0, 100)
        r = svc.update(POOL, 11 * 10**17, 0, 0, 110)
        assert r.outcome is UpdateOutcome.UPDATED
        assert svc.get_observation(POOL).ema == 5_555_555_555_555_555
        assert svc.get_tier(POOL) == 5
        assert svc.get_tier_state(POOL).last_tier_write_time == 110
        assert events == [
            TierEvent(event=Event.TIER_UPDATED, key=POOL, timestamp=110, old_tier=0, new_tier=5,
                      source=TierSource.ENGINE)
        ]

    def test_flow_mode(self):
        svc = _configured(VelocityMode.FLOW)
        liquidity = 10**24
        svc.update(POOL, SCALE, 0, liquidity, 100)
        svc.update(POOL, SCALE, -(liquidity // 10), liquidity, 110)
        assert svc.get_tier(POOL) == 1

    def test_same_instant_does_not_move_ema(self):
        svc = _configured()
        svc.update(POOL, SCALE, 0, 0, 100)
        svc.update(POOL, 11 * 10**17, 0, 0, 110)
        before = svc.get_observation(POOL)
        r = svc.update(POOL, 2 * SCALE, 0, 0, 110)
        assert r.outcome is UpdateOutcome.SAME_INSTANT
        after = svc.get_observation(POOL)
        assert after.ema == before.ema
        assert after.last_reference == 2 * SCALE
        assert svc.get_tier(POOL) == 5

    def test_clock_regression_ignored(self):
        svc = _configured()
        svc.update(POOL, SCALE, 0, 0, 100)
        before = svc.get_observation(POOL)
        r = svc.update(POOL, 3 * SCALE, 0, 0, 90)
        assert r.outcome is UpdateOutcome.STALE
        assert svc.get_observation(POOL) == before

    def test_activity_decays_back_to_tier0(self):
        svc = _configured()
        svc.update(POOL, SCALE, 0, 0, 100)
        svc.update(POOL, 11 * 10**17, 0, 0, 110)
        assert svc.get_tier(POOL) == 5
        svc.update(POOL, 11 * 10**17, 0, 0, 110 + 180)
        assert svc.get_observation(POOL).ema == 0
        assert svc.get_tier(POOL) == 0

    def test_engine_overwrites_override(self):
        svc = _configured()
        svc.update(POOL, SCALE, 0, 0, 100)
        svc.set_tier(POOL, 9, 105, credential=ORACLE)
        svc.update(POOL, SCALE, 0, 0, 110)
        assert svc.get_tier(POOL) == 0

    @pytest.mark.parametrize(
        "args,exc",
        [
            (("", SCALE, 0, 0, 1), TypeError),
            ((POOL, -1, 0, 0, 1), ValueError),
            ((POOL, MAX_REFERENCE + 1, 0, 0, 1), ValueError),
            ((POOL, SCALE, 2**255 + 1, 0, 1), ValueError),
            ((POOL, SCALE, 0, 2**128, 1), ValueError),
            ((POOL, SCALE, 0, 0, -1), ValueError),
            ((POOL, 1.5, 0, 0, 1), TypeError),
            ((POOL, SCALE, True, 0, 1), TypeError),
        ],
    )
    def test_rejects_malformed_inputs(self, args, exc):
        with pytest.raises(exc):
            _configured().update(*args)


# ---------------------------------------------------------------------------
# override path
# ---------------------------------------------------------------------------

class TestSetTier:
    def test_override_on_fresh_pool_at_time_zero(self):
        svc = _service()
        svc.set_tier(POOL, 7, 0, credential=ORACLE)
        assert svc.get_tier(POOL) == 7

    def test_unauthorized(self):
        svc = _service()
        with pytest.raises(UnauthorizedError):
            svc.set_tier(POOL, 7, 100, credential=ADMIN)
        assert svc.get_tier(POOL) == 0

    def test_invalid_tier(self):
        svc = _service()
        with pytest.raises(InvalidTierError):
            svc.set_tier(POOL, 11, 100, credential=ORACLE)

    def test_cooldown(self):
        svc = _service()
        events = _recorder(svc)
        svc.set_tier(POOL, 3, 100, credential=ORACLE)
        with pytest.raises(TooFrequentError) as info:
            svc.set_tier(POOL, 4, 130, credential=ORACLE)
        assert info.value.retry_at == 160
        assert info.value.key == POOL
        assert svc.get_tier(POOL) == 3
        svc.set_tier(POOL, 4, 161, credential=ORACLE)
        assert svc.get_tier(POOL) == 4
        assert [(e.old_tier, e.new_tier, e.source) for e in events] == [
            (0, 3, TierSource.OVERRIDE),
            (3, 4, TierSource.OVERRIDE),
        ]

    def test_engine_changes_do_not_restart_cooldown_by_default(self):
        svc = _configured()
        svc.set_tier(POOL, 2, 100, credential=ORACLE)
        svc.update(POOL, SCALE, 0, 0, 150)
        svc.update(POOL, 12 * 10**17, 0, 0, 155)
        assert svc.get_tier_state(POOL).last_tier_write_time == 155
        svc.set_tier(POOL, 8, 160, credential=ORACLE)
        assert svc.get_tier(POOL) == 8

    def test_engine_changes_restart_cooldown_when_configured(self):
        svc = _configured(cooldown_includes_engine_writes=True)
        svc.set_tier(POOL, 2, 100, credential=ORACLE)
        svc.update(POOL, SCALE, 0, 0, 150)
        svc.update(POOL, 12 * 10**17, 0, 0, 155)
        with pytest.raises(TooFrequentError) as info:
            svc.set_tier(POOL, 8, 160, credential=ORACLE)
        assert info.value.retry_at == 215

    def test_cooldown_from_time_zero(self):
        svc = _service()
        svc.set_tier(POOL, 5, 0, credential=ORACLE)
        with pytest.raises(TooFrequentError):
            svc.set_tier(POOL, 6, 30, credential=ORACLE)
        svc.set_tier(POOL, 6, 61, credential=ORACLE)
        assert svc.get_tier(POOL) == 6

    def test_lone_surrogate_key_is_a_type_error(self):
        svc = _configured()
        bad = "pool-\ud800"
        with pytest.raises(TypeError):
            svc.set_tier(bad, 5, 0, credential=ORACLE)
        with pytest.raises(TypeError):
            svc.update(bad, SCALE, 0, 0, 100)
        with pytest.raises(TypeError):
            svc.set_default_parameters(bad, "price", credential=ADMIN)
        assert svc.snapshot()["tiers"] == {}

    def test_custom_cooldown(self):
        svc = _service(cooldown_seconds=0)
        svc.set_tier(POOL, 2, 100, credential=ORACLE)
        svc.set_tier(POOL, 3, 100, credential=ORACLE)
        assert svc.get_tier(POOL) == 3


class TestSetTierBatch:
    def test_applies_all(self):
        svc = _service()
        res = svc.set_tier_batch(["a", "b"], [1, 2], 100, credential=ORACLE)
        assert res.applied == ("a", "b")
        assert res.skipped == ()
        assert (svc.get_tier("a"), svc.get_tier("b")) == (1, 2)

    def test_skips_cooling_pool(self):
        svc = _service()
        svc.set_tier("a", 5, 100, credential=ORACLE)
        res = svc.set_tier_batch(["a", "b"], [1, 2], 130, credential=ORACLE)
        assert res.applied == ("b",)
        assert res.skipped == ("a",)
        assert svc.get_tier("a") == 5
        assert svc.get_tier("b") == 2

    def test_length_mismatch(self):
        with pytest.raises(InvalidBatchError):
            _service().set_tier_batch(["a", "b"], [1], 100, credential=ORACLE)

    def test_invalid_tier_rejects_whole_batch(self):
        svc = _service()
        with pytest.raises(InvalidTierError):
            svc.set_tier_batch(["a", "b"], [1, 99], 100, credential=ORACLE)
        assert svc.get_tier("a") == 0

    def test_unauthorized(self):
        with pytest.raises(UnauthorizedError):
            _service().set_tier_batch(["a"], [1], 100, credential="mallory")

    def test_duplicate_key_events(self):
        svc = _service(cooldown_seconds=0)
        events = _recorder(svc)
        svc.set_tier_batch(["a", "a"], [3, 9], 100, credential=ORACLE)
        assert svc.get_tier("a") == 9
        assert [(e.old_tier, e.new_tier) for e in events] == [(0, 3), (3, 9)]


# ---------------------------------------------------------------------------
# administrative surface
# ---------------------------------------------------------------------------

class TestAdmin:
    def test_set_parameters_requires_admin(self):
        svc = _service()
        with pytest.raises(UnauthorizedError):
            svc.set_parameters(POOL, default_params(VelocityMode.PRICE), credential=ORACLE)
        assert svc.get_parameters(POOL) is None

    def test_set_parameters_emits_event(self):
        svc = _service()
        events = _recorder(svc)
        params = svc.set_default_parameters(POOL, "flow", credential=ADMIN, now=5)
        assert svc.get_parameters(POOL) == params
        assert events[0].event is Event.PARAMETERS_UPDATED
        assert events[0].detail == "flow"

    def test_invalid_parameters_never_reach_service(self):
        with pytest.raises(InvalidParametersError):
            CurveParams(base_bps=5, min_bps=100, max_bps=100, decay_half_life_seconds=60,
                        target=SCALE, slope=0, cap_multiplier=1)

    def test_fee_bps_read(self):
        svc = _configured()
        assert svc.get_fee_bps("other") is None
        assert svc.get_fee_bps(POOL) == 5
        svc.set_tier(POOL, 10, 1, credential=ORACLE)
        assert svc.get_fee_bps(POOL) == 100

    def test_reset_state(self):
        svc = _configured()
        events = _recorder(svc)
        svc.update(POOL, SCALE, 0, 0, 100)
        svc.update(POOL, 11 * 10**17, 0, 0, 110)
        svc.reset_state(POOL, 200, credential=ADMIN)
        assert svc.get_tier(POOL) == 0
        assert svc.get_observation(POOL) == Observation()
        assert svc.get_parameters(POOL) is not None
        kinds = [e.event for e in events]
        assert kinds[-2:] == [Event.STATE_RESET, Event.TIER_UPDATED]
        assert events[-1].source is TierSource.RESET
        with pytest.raises(TooFrequentError) as info:
            svc.set_tier(POOL, 4, 230, credential=ORACLE)
        assert info.value.retry_at == 260

    def test_reset_requires_admin(self):
        with pytest.raises(UnauthorizedError):
            _service().reset_state(POOL, 1, credential=ORACLE)

    def test_change_authority(self):
        svc = _service()
        events = _recorder(svc)
        svc.change_authority(PrincipalCapability("relayer-2"), credential=ADMIN)
        with pytest.raises(UnauthorizedError):
            svc.set_tier(POOL, 1, 0, credential=ORACLE)
        svc.set_tier(POOL, 1, 0, credential="relayer-2")
        assert events[0].event is Event.AUTHORITY_CHANGED
        assert events[0].detail == "principal:relayer-2"

    def test_change_authority_requires_admin(self):
        with pytest.raises(UnauthorizedError):
            _service().change_authority(DenyAllCapability(), credential=ORACLE)

    def test_change_admin(self):
        svc = _service()
        svc.change_admin(PrincipalCapability("admin-2"), credential=ADMIN)
        with pytest.raises(UnauthorizedError):
            svc.set_default_parameters(POOL, "price", credential=ADMIN)
        svc.set_default_parameters(POOL, "price", credential="admin-2")

    def test_default_authority_denies(self):
        svc = ActivityTierService(admin=PrincipalCapability(ADMIN))
        with pytest.raises(UnauthorizedError):
            svc.set_tier(POOL, 1, 0, credential=ORACLE)

    def test_aggregate_round_trip(self):
        svc = _service()
        events = _recorder(svc)
        svc.record_aggregate(POOL, "fhe-v1", b"\x00\x01", 50, credential=ORACLE)
        agg = svc.get_aggregate(POOL)
        assert (agg.tag, agg.blob, agg.recorded_at) == ("fhe-v1", b"\x00\x01", 50)
        assert svc.get_tier(POOL) == 0
        assert events[0].event is Event.AGGREGATE_RECORDED
        with pytest.raises(UnauthorizedError):
            svc.record_aggregate(POOL, "fhe-v1", b"\x02", 60, credential=ADMIN)


# ---------------------------------------------------------------------------
# snapshots, notifications, concurrency
# ---------------------------------------------------------------------------

def test_snapshot_restores_equivalent_service() -> None:
    svc = _configured()
    svc.update(POOL, SCALE, 0, 0, 100)
    svc.update(POOL, 11 * 10**17, 0, 0, 110)
    svc.set_tier("other", 3, 120, credential=ORACLE)
    restored = ActivityTierService.from_snapshot(
        svc.snapshot(), admin=PrincipalCapability(ADMIN), authority=PrincipalCapability(ORACLE)
    )
    assert restored.state_root() == svc.state_root()
    assert restored.get_tier(POOL) == 5
    with pytest.raises(TooFrequentError):
        restored.set_tier("other", 4, 150, credential=ORACLE)


def test_config_pools_are_preloaded() -> None:
    cfg = ServiceConfig(pools={POOL: default_params(VelocityMode.FLOW)})
    svc = ActivityTierService(admin=PrincipalCapability(ADMIN), config=cfg)
    assert svc.get_parameters(POOL).mode is VelocityMode.FLOW


def test_failing_listener_is_logged_not_raised(caplog) -> None:
    svc = _service()

    def boom(_event: TierEvent) -> None:
        raise RuntimeError("listener down")

    seen: list[TierEvent] = []
    svc.subscribe(boom)
    svc.subscribe(seen.append)
    with caplog.at_level(logging.ERROR, logger="activity_tier.integration.events"):
        svc.set_tier(POOL, 2, 0, credential=ORACLE)
    assert svc.get_tier(POOL) == 2
    assert len(seen) == 1
    assert any("listener" in rec.getMessage() for rec in caplog.records)


def test_unsubscribe_stops_delivery() -> None:
    svc = _service()
    seen = _recorder(svc)
    svc.unsubscribe(seen.append)
    svc.set_tier(POOL, 2, 0, credential=ORACLE)
    assert seen == []


def test_concurrent_overrides_respect_cooldown() -> None:
    svc = _service()
    barrier = threading.Barrier(8)
    outcomes: list[str] = []
    lock = threading.Lock()

    def worker(tier: int) -> None:
        barrier.wait()
        try:
            svc.set_tier(POOL, tier, 100, credential=ORACLE)
            result = "ok"
        except TooFrequentError:
            result = "cooling"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=worker, args=(t,)) for t in range(1, 9)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert sorted(outcomes) == ["cooling"] * 7 + ["ok"]
    assert svc.get_tier_state(POOL).last_override_time == 100


def test_listener_mirror_follows_commit_order() -> None:
    svc = _service()
    mirror: list[int] = []
    in_listener = threading.Event()
    release = threading.Event()

    def slow_mirror(ev: TierEvent) -> None:
        if ev.event is not Event.TIER_UPDATED:
            return
        if ev.source is TierSource.OVERRIDE:
            in_listener.set()
            release.wait(timeout=5)
        mirror.append(ev.new_tier)

    svc.subscribe(slow_mirror)
    writer = threading.Thread(target=svc.set_tier, args=(POOL, 3, 0), kwargs={"credential": ORACLE})
    writer.start()
    assert in_listener.wait(timeout=5)

    reset_done = threading.Event()

    def reset() -> None:
        svc.reset_state(POOL, 100, credential=ADMIN)
        reset_done.set()

    resetter = threading.Thread(target=reset)
    resetter.start()
    # The reset cannot commit while the override's listener is still running.
    assert not reset_done.wait(timeout=0.2)
    release.set()
    writer.join(timeout=5)
    resetter.join(timeout=5)

    assert reset_done.is_set()
    assert mirror == [3, 0]
    assert mirror[-1] == svc.get_tier(POOL)


def test_listener_can_read_back_committed_state() -> None:
    svc = _service()
    reads: list[tuple[int, int]] = []
    svc.subscribe(lambda ev: reads.append((ev.new_tier, svc.get_tier(POOL))))
    svc.set_tier(POOL, 4, 0, credential=ORACLE)
    assert reads == [(4, 4)]


def test_concurrent_updates_are_serialized() -> None:
    svc = _configured()
    svc.update(POOL, SCALE, 0, 0, 1)
    errors: list[BaseException] = []

    def worker(offset: int) -> None:
        try:
            for i in range(50):
                svc.update(POOL, SCALE + offset + i, 0, 0, 2 + offset * 50 + i)
        except BaseException as exc:  # pragma: no cover - surfaced below
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert errors == []
    ts = svc.get_tier_state(POOL)
    assert isinstance(ts, TierState)
    assert 0 <= ts.tier <= 10
    assert svc.get_observation(POOL).last_timestamp >= 2
