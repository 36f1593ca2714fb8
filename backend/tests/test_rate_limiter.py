import asyncio
import os
import threading
import uuid

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

import gridrank.db.redis_client as redis_client_module
from gridrank.core.config import get_settings
from gridrank.db.redis_client import close_loop_redis_client
from gridrank.providers.errors import ProviderDependencyError
from gridrank.providers.rate_limiter import (
    EndpointClass,
    EndpointLimiter,
    LimiterConfig,
    RedisEndpointLimiter,
    build_limiters,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


def _limiter(clock: FakeClock, **overrides) -> EndpointLimiter:
    values = {"max_concurrent": 10, "min_interval_seconds": 0.0, "reservoir": 100, "reservoir_interval_seconds": 60.0}
    values.update(overrides)
    return EndpointLimiter("test", LimiterConfig(**values), clock=clock, sleep_fn=clock.sleep)


def test_reservoir_caps_dispatches_in_any_rolling_window() -> None:
    clock = FakeClock()
    limiter = _limiter(clock, reservoir=3, reservoir_interval_seconds=10.0)

    async def run() -> list[float]:
        dispatched: list[float] = []
        for _ in range(7):
            async with limiter.slot():
                dispatched.append(clock())
        return dispatched

    dispatched = asyncio.run(run())
    assert dispatched == [0.0, 0.0, 0.0, 10.0, 10.0, 10.0, 20.0]
    for start in dispatched:
        in_window = [value for value in dispatched if start <= value < start + 10.0]
        assert len(in_window) <= 3


def test_min_interval_spaces_consecutive_dispatches() -> None:
    clock = FakeClock()
    limiter = _limiter(clock, min_interval_seconds=0.5)

    async def run() -> list[float]:
        dispatched: list[float] = []
        for _ in range(3):
            await limiter.acquire()
            dispatched.append(clock())
            await limiter.release()
        return dispatched

    assert asyncio.run(run()) == [0.0, 0.5, 1.0]


def test_acquire_reports_time_waited() -> None:
    clock = FakeClock()
    limiter = _limiter(clock, reservoir=1, reservoir_interval_seconds=4.0)

    async def run() -> list[float]:
        waits = []
        for _ in range(2):
            waits.append(await limiter.acquire())
            await limiter.release()
        return waits

    assert asyncio.run(run()) == [0.0, 4.0]


def test_in_flight_never_exceeds_max_concurrent() -> None:
    clock = FakeClock()
    limiter = _limiter(clock, max_concurrent=2)
    state = {"current": 0, "peak": 0}

    async def call() -> None:
        async with limiter.slot():
            state["current"] += 1
            state["peak"] = max(state["peak"], state["current"])
            for _ in range(3):
                await asyncio.sleep(0)
            state["current"] -= 1

    async def run() -> None:
        await asyncio.gather(*(call() for _ in range(6)))

    asyncio.run(run())
    assert state["peak"] == 2
    assert limiter.snapshot().in_flight == 0


def test_callers_are_admitted_in_arrival_order() -> None:
    clock = FakeClock()
    limiter = _limiter(clock, reservoir=1, reservoir_interval_seconds=1.0)
    order: list[int] = []

    async def call(index: int) -> None:
        async with limiter.slot():
            order.append(index)

    async def run() -> None:
        await asyncio.gather(*(call(index) for index in range(4)))

    asyncio.run(run())
    assert order == [0, 1, 2, 3]
    assert clock() == 3.0


def test_snapshot_reports_remaining_reservoir() -> None:
    clock = FakeClock()
    limiter = _limiter(clock, reservoir=3, reservoir_interval_seconds=10.0)

    async def run() -> None:
        await limiter.acquire()
        await limiter.acquire()

    asyncio.run(run())
    snapshot = limiter.snapshot()
    assert snapshot.in_flight == 2
    assert snapshot.reservoir_remaining == 1
    assert snapshot.max_concurrent == 10

    clock.now = 10.0
    assert limiter.snapshot().reservoir_remaining == 3


def test_limiter_is_reusable_across_event_loops() -> None:
    clock = FakeClock()
    limiter = _limiter(clock, max_concurrent=1)

    async def run() -> None:
        async with limiter.slot():
            await asyncio.sleep(0)

    asyncio.run(run())
    asyncio.run(run())
    assert limiter.snapshot().in_flight == 0


@pytest.mark.parametrize(
    "values",
    [
        {"max_concurrent": 0, "min_interval_seconds": 0.0, "reservoir": 1, "reservoir_interval_seconds": 1.0},
        {"max_concurrent": 1, "min_interval_seconds": 0.0, "reservoir": 0, "reservoir_interval_seconds": 1.0},
        {"max_concurrent": 1, "min_interval_seconds": -1.0, "reservoir": 1, "reservoir_interval_seconds": 1.0},
        {"max_concurrent": 1, "min_interval_seconds": 0.0, "reservoir": 1, "reservoir_interval_seconds": 0.0},
    ],
)
def test_limiter_config_rejects_invalid_values(values) -> None:
    with pytest.raises(ValueError):
        LimiterConfig(**values)


def test_build_limiters_shares_general_limiter_with_maps_by_default() -> None:
    limiters = build_limiters(get_settings())
    assert set(limiters) == set(EndpointClass)
    assert limiters[EndpointClass.MAPS] is limiters[EndpointClass.GENERAL]
    assert limiters[EndpointClass.TASKS_READY].config.max_concurrent == 5
    assert limiters[EndpointClass.GOOGLE_ADS].config.reservoir == 12


def test_build_limiters_can_isolate_maps() -> None:
    settings = get_settings().model_copy(update={"maps_limiter_shares_general": False, "maps_limiter_max_concurrent": 4})
    limiters = build_limiters(settings)
    assert limiters[EndpointClass.MAPS] is not limiters[EndpointClass.GENERAL]
    assert limiters[EndpointClass.MAPS].config.max_concurrent == 4


def _peak_in_flight_across_threads(limiter, *, threads: int = 3, calls_per_thread: int = 3) -> int:
    guard = threading.Lock()
    state = {"current": 0, "peak": 0}

    async def call() -> None:
        async with limiter.slot():
            with guard:
                state["current"] += 1
                state["peak"] = max(state["peak"], state["current"])
            await asyncio.sleep(0.01)
            with guard:
                state["current"] -= 1

    async def run() -> None:
        try:
            await asyncio.gather(*(call() for _ in range(calls_per_thread)))
        finally:
            await close_loop_redis_client()

    workers = [threading.Thread(target=asyncio.run, args=(run(),)) for _ in range(threads)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(timeout=30)
    return state["peak"]


def test_concurrency_cap_holds_across_threads_and_event_loops() -> None:
    config = LimiterConfig(max_concurrent=1, min_interval_seconds=0.0, reservoir=100, reservoir_interval_seconds=60.0)
    limiter = EndpointLimiter("shared", config)

    assert _peak_in_flight_across_threads(limiter) == 1
    snapshot = limiter.snapshot()
    assert snapshot.in_flight == 0
    assert snapshot.queued == 0
    assert snapshot.reservoir_remaining == 91


class FakeLimiterRedis:
    def __init__(self, replies) -> None:
        self.replies = list(replies)
        self.eval_calls: list[tuple] = []
        self.removed: list[tuple[str, str]] = []
        self.fail_release = False

    async def eval(self, script, numkeys, *args):
        self.eval_calls.append((numkeys, args))
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def zrem(self, key, member):
        if self.fail_release:
            raise RedisConnectionError("redis down")
        self.removed.append((key, member))
        return 1


def _redis_limiter(clock: FakeClock, redis_client: FakeLimiterRedis) -> RedisEndpointLimiter:
    config = LimiterConfig(max_concurrent=2, min_interval_seconds=0.0, reservoir=5, reservoir_interval_seconds=60.0)
    return RedisEndpointLimiter(
        "maps",
        config,
        lease_seconds=60.0,
        client_factory=lambda: redis_client,
        clock=clock,
        sleep_fn=clock.sleep,
    )


def test_redis_limiter_waits_for_shared_capacity_then_leases_a_slot() -> None:
    clock = FakeClock()
    redis_client = FakeLimiterRedis([[0, b"0.25", 0], [0, b"-1", 0], [1, b"0", 4]])
    limiter = _redis_limiter(clock, redis_client)

    async def run() -> float:
        return await limiter.acquire()

    waited = asyncio.run(run())

    assert clock.sleeps == [0.25, 0.01]
    assert waited == pytest.approx(0.26)
    numkeys, args = redis_client.eval_calls[-1]
    assert numkeys == 3
    assert args[:3] == ("gridrank:limiter:{maps}:window", "gridrank:limiter:{maps}:leases", "gridrank:limiter:{maps}:last")
    assert args[3:8] == (60.0, 5, 2, 0.0, 60.0)
    snapshot = limiter.snapshot()
    assert (snapshot.in_flight, snapshot.reservoir_remaining) == (1, 4)

    asyncio.run(limiter.release())

    assert redis_client.removed == [("gridrank:limiter:{maps}:leases", args[8])]
    assert limiter.snapshot().in_flight == 0


def test_redis_limiter_outage_is_a_retryable_dependency_error() -> None:
    clock = FakeClock()
    limiter = _redis_limiter(clock, FakeLimiterRedis([RedisConnectionError("redis down")]))

    with pytest.raises(ProviderDependencyError) as exc:
        asyncio.run(limiter.acquire())
    assert exc.value.retryable is True
    assert limiter.snapshot().queued == 0


def test_redis_limiter_release_failure_is_logged_not_raised(caplog) -> None:
    clock = FakeClock()
    redis_client = FakeLimiterRedis([[1, b"0", 4]])
    limiter = _redis_limiter(clock, redis_client)
    redis_client.fail_release = True

    async def run() -> None:
        async with limiter.slot():
            pass

    asyncio.run(run())

    assert limiter.snapshot().in_flight == 0
    assert "Could not release limiter lease" in caplog.text


def test_build_limiters_uses_redis_backend_when_configured() -> None:
    settings = get_settings().model_copy(update={"limiter_backend": "redis", "provider_timeout_seconds": 20.0})
    limiters = build_limiters(settings)

    assert all(isinstance(limiter, RedisEndpointLimiter) for limiter in limiters.values())
    assert limiters[EndpointClass.MAPS] is limiters[EndpointClass.GENERAL]
    assert limiters[EndpointClass.GENERAL].lease_seconds == 40.0


def test_build_limiters_rejects_unknown_backend() -> None:
    with pytest.raises(ValueError):
        build_limiters(get_settings().model_copy(update={"limiter_backend": "memcached"}))


@pytest.mark.skipif(not os.getenv("GRIDRANK_TEST_REDIS_URL"), reason="GRIDRANK_TEST_REDIS_URL not set")
def test_redis_limiters_in_separate_workers_share_one_budget(monkeypatch) -> None:
    monkeypatch.setattr(redis_client_module, "_redis_url", lambda: os.environ["GRIDRANK_TEST_REDIS_URL"])
    config = LimiterConfig(max_concurrent=1, min_interval_seconds=0.0, reservoir=100, reservoir_interval_seconds=60.0)
    name = f"shared-{uuid.uuid4().hex}"

    class OneLimiterPerThread:
        def __init__(self) -> None:
            self._local = threading.local()

        def _limiter(self) -> RedisEndpointLimiter:
            if not hasattr(self._local, "limiter"):
                self._local.limiter = RedisEndpointLimiter(name, config, lease_seconds=30.0)
            return self._local.limiter

        def slot(self):
            return self._limiter().slot()

    assert _peak_in_flight_across_threads(OneLimiterPerThread()) == 1
