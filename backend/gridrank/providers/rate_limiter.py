from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
import weakref
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from gridrank.core.config import Settings
from gridrank.db.redis_client import get_loop_redis_client
from gridrank.providers.errors import ProviderDependencyError

logger = logging.getLogger("gridrank.rate_limiter")

# Re-check interval while every concurrency slot is taken.
_CAPACITY_POLL_SECONDS = 0.01

LIMITER_BACKENDS = ("memory", "redis")


class EndpointClass(str, Enum):
    GENERAL = "general"
    MAPS = "maps"
    TASKS_READY = "tasks_ready"
    GOOGLE_ADS = "google_ads"


@dataclass(frozen=True)
class LimiterConfig:
    max_concurrent: int
    min_interval_seconds: float
    reservoir: int
    reservoir_interval_seconds: float

    def __post_init__(self) -> None:
        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        if self.reservoir < 1:
            raise ValueError("reservoir must be at least 1")
        if self.min_interval_seconds < 0 or self.reservoir_interval_seconds <= 0:
            raise ValueError("limiter intervals must be positive")


@dataclass(frozen=True)
class LimiterSnapshot:
    name: str
    in_flight: int
    queued: int
    reservoir_remaining: int
    max_concurrent: int


class BaseEndpointLimiter:
    """Concurrency, spacing and rolling-window quota gate for one endpoint class.

    Callers on one event loop are admitted in arrival order and wait with the
    injected sleep function. Subclasses decide where the dispatch state lives.
    """

    def __init__(
        self,
        name: str,
        config: LimiterConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.name = name
        self.config = config
        self._clock = clock
        self._sleep = sleep_fn
        self._state_lock = threading.Lock()
        self._in_flight = 0
        self._queued = 0
        self._admission_locks: weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Lock] = weakref.WeakKeyDictionary()

    def _admission(self) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        with self._state_lock:
            lock = self._admission_locks.get(loop)
            if lock is None:
                lock = asyncio.Lock()
                self._admission_locks[loop] = lock
            return lock

    async def _claim(self) -> float:
        """Claim one dispatch, or return the seconds to wait before trying again."""
        raise NotImplementedError

    async def _unclaim(self) -> None:
        raise NotImplementedError

    def _reservoir_remaining(self) -> int:
        raise NotImplementedError

    async def acquire(self) -> float:
        """Wait for capacity and claim one dispatch. Returns seconds waited."""
        started = self._clock()
        with self._state_lock:
            self._queued += 1
        try:
            async with self._admission():
                while True:
                    delay = await self._claim()
                    if delay <= 0:
                        break
                    await self._sleep(delay)
        finally:
            with self._state_lock:
                self._queued -= 1
        return max(0.0, self._clock() - started)

    async def release(self) -> None:
        await self._unclaim()

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[float]:
        waited = await self.acquire()
        try:
            yield waited
        finally:
            await self.release()

    def snapshot(self) -> LimiterSnapshot:
        remaining = self._reservoir_remaining()
        with self._state_lock:
            return LimiterSnapshot(
                name=self.name,
                in_flight=self._in_flight,
                queued=self._queued,
                reservoir_remaining=remaining,
                max_concurrent=self.config.max_concurrent,
            )


class EndpointLimiter(BaseEndpointLimiter):
    """In-process limiter shared by every thread and event loop holding it.

    Dispatch timestamps are kept for one reservoir interval, so no window of
    that length ever holds more than ``reservoir`` dispatches.
    """

    def __init__(
        self,
        name: str,
        config: LimiterConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        super().__init__(name, config, clock=clock, sleep_fn=sleep_fn)
        self._dispatches: deque[float] = deque()
        self._last_dispatch: float | None = None

    def _evict(self, now: float) -> None:
        horizon = now - self.config.reservoir_interval_seconds
        while self._dispatches and self._dispatches[0] <= horizon:
            self._dispatches.popleft()

    def _delay_until_dispatch(self, now: float) -> float:
        delay = 0.0
        if self._last_dispatch is not None:
            delay = max(delay, self._last_dispatch + self.config.min_interval_seconds - now)
        if len(self._dispatches) >= self.config.reservoir:
            delay = max(delay, self._dispatches[0] + self.config.reservoir_interval_seconds - now)
        return delay

    async def _claim(self) -> float:
        with self._state_lock:
            now = self._clock()
            self._evict(now)
            if self._in_flight >= self.config.max_concurrent:
                return _CAPACITY_POLL_SECONDS
            delay = self._delay_until_dispatch(now)
            if delay > 0:
                return delay
            self._dispatches.append(now)
            self._last_dispatch = now
            self._in_flight += 1
            return 0.0

    async def _unclaim(self) -> None:
        with self._state_lock:
            self._in_flight = max(0, self._in_flight - 1)

    def _reservoir_remaining(self) -> int:
        with self._state_lock:
            self._evict(self._clock())
            return max(0, self.config.reservoir - len(self._dispatches))


# KEYS: window, leases, last dispatch. ARGV: interval, reservoir, max concurrent,
# min interval, lease seconds, token. Returns {claimed, delay, reservoir remaining};
# a delay of -1 means every concurrency slot is leased.
_CLAIM_SCRIPT = """
local clock = redis.call('TIME')
local now = tonumber(clock[1]) + tonumber(clock[2]) / 1000000
local interval = tonumber(ARGV[1])
local reservoir = tonumber(ARGV[2])
local max_concurrent = tonumber(ARGV[3])
local min_interval = tonumber(ARGV[4])
local lease_seconds = tonumber(ARGV[5])
redis.call('ZREMRANGEBYSCORE', KEYS[1], '-inf', now - interval)
redis.call('ZREMRANGEBYSCORE', KEYS[2], '-inf', now)
local dispatched = redis.call('ZCARD', KEYS[1])
if redis.call('ZCARD', KEYS[2]) >= max_concurrent then
  return {0, '-1', reservoir - dispatched}
end
local delay = 0
local last = redis.call('GET', KEYS[3])
if last then
  delay = math.max(delay, tonumber(last) + min_interval - now)
end
if dispatched >= reservoir then
  local oldest = redis.call('ZRANGE', KEYS[1], 0, 0, 'WITHSCORES')
  delay = math.max(delay, tonumber(oldest[2]) + interval - now)
end
if delay > 0 then
  return {0, tostring(delay), reservoir - dispatched}
end
redis.call('ZADD', KEYS[1], now, ARGV[6])
redis.call('ZADD', KEYS[2], now + lease_seconds, ARGV[6])
redis.call('SET', KEYS[3], tostring(now), 'PX', math.ceil(math.max(interval, min_interval) * 1000))
redis.call('PEXPIRE', KEYS[1], math.ceil(interval * 1000))
redis.call('PEXPIRE', KEYS[2], math.ceil(lease_seconds * 1000))
return {1, '0', reservoir - dispatched - 1}
"""


class RedisEndpointLimiter(BaseEndpointLimiter):
    """Limiter whose window, spacing and leases live in Redis.

    Every process that builds a limiter with the same name shares one budget.
    A lease expires after ``lease_seconds`` so a crashed worker cannot keep a
    concurrency slot. ``snapshot().reservoir_remaining`` is the value seen on
    the last claim attempt from this process.
    """

    def __init__(
        self,
        name: str,
        config: LimiterConfig,
        *,
        lease_seconds: float,
        client_factory: Callable[[], aioredis.Redis] = get_loop_redis_client,
        key_prefix: str = "gridrank:limiter",
        clock: Callable[[], float] = time.monotonic,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if lease_seconds <= 0:
            raise ValueError("lease_seconds must be positive")
        super().__init__(name, config, clock=clock, sleep_fn=sleep_fn)
        self.lease_seconds = lease_seconds
        self._client_factory = client_factory
        # Hash tag keeps the three keys in one cluster slot.
        base = f"{key_prefix}:{{{name}}}"
        self.keys = (f"{base}:window", f"{base}:leases", f"{base}:last")
        self._tokens: list[str] = []
        self._last_remaining = config.reservoir

    async def _claim(self) -> float:
        token = uuid.uuid4().hex
        try:
            claimed, delay, remaining = await self._client_factory().eval(
                _CLAIM_SCRIPT,
                len(self.keys),
                *self.keys,
                self.config.reservoir_interval_seconds,
                self.config.reservoir,
                self.config.max_concurrent,
                self.config.min_interval_seconds,
                self.lease_seconds,
                token,
            )
        except RedisError as exc:
            raise ProviderDependencyError("Rate limiter backend unavailable.") from exc
        if isinstance(delay, bytes):
            delay = delay.decode("utf-8")
        with self._state_lock:
            self._last_remaining = max(0, int(remaining))
            if int(claimed) == 1:
                self._tokens.append(token)
                self._in_flight += 1
                return 0.0
        wait = float(delay)
        return wait if wait > 0 else _CAPACITY_POLL_SECONDS

    async def _unclaim(self) -> None:
        with self._state_lock:
            token = self._tokens.pop() if self._tokens else None
            self._in_flight = max(0, self._in_flight - 1)
        if token is None:
            return
        try:
            await self._client_factory().zrem(self.keys[1], token)
        except RedisError:
            logger.warning("Could not release limiter lease; it expires on its own", extra={"limiter": self.name})

    def _reservoir_remaining(self) -> int:
        with self._state_lock:
            return self._last_remaining


def limiter_configs_from_settings(settings: Settings) -> dict[EndpointClass, LimiterConfig]:
    configs = {
        EndpointClass.GENERAL: LimiterConfig(
            max_concurrent=settings.general_limiter_max_concurrent,
            min_interval_seconds=settings.general_limiter_min_interval_seconds,
            reservoir=settings.general_limiter_reservoir,
            reservoir_interval_seconds=settings.general_limiter_reservoir_interval_seconds,
        ),
        EndpointClass.MAPS: LimiterConfig(
            max_concurrent=settings.maps_limiter_max_concurrent,
            min_interval_seconds=settings.maps_limiter_min_interval_seconds,
            reservoir=settings.maps_limiter_reservoir,
            reservoir_interval_seconds=settings.maps_limiter_reservoir_interval_seconds,
        ),
        EndpointClass.TASKS_READY: LimiterConfig(
            max_concurrent=settings.tasks_ready_limiter_max_concurrent,
            min_interval_seconds=settings.tasks_ready_limiter_min_interval_seconds,
            reservoir=settings.tasks_ready_limiter_reservoir,
            reservoir_interval_seconds=settings.tasks_ready_limiter_reservoir_interval_seconds,
        ),
        EndpointClass.GOOGLE_ADS: LimiterConfig(
            max_concurrent=settings.google_ads_limiter_max_concurrent,
            min_interval_seconds=settings.google_ads_limiter_min_interval_seconds,
            reservoir=settings.google_ads_limiter_reservoir,
            reservoir_interval_seconds=settings.google_ads_limiter_reservoir_interval_seconds,
        ),
    }
    return configs


def build_limiters(
    settings: Settings,
    *,
    clock: Callable[[], float] = time.monotonic,
    sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> dict[EndpointClass, BaseEndpointLimiter]:
    backend = settings.limiter_backend.strip().lower()
    if backend not in LIMITER_BACKENDS:
        raise ValueError(f"Unsupported limiter backend: {settings.limiter_backend}")
    lease_seconds = max(1.0, settings.provider_timeout_seconds * 2)

    def make(name: str, config: LimiterConfig) -> BaseEndpointLimiter:
        if backend == "redis":
            return RedisEndpointLimiter(name, config, lease_seconds=lease_seconds, clock=clock, sleep_fn=sleep_fn)
        return EndpointLimiter(name, config, clock=clock, sleep_fn=sleep_fn)

    configs = limiter_configs_from_settings(settings)
    limiters: dict[EndpointClass, BaseEndpointLimiter] = {}
    for endpoint_class, config in configs.items():
        if endpoint_class == EndpointClass.MAPS and settings.maps_limiter_shares_general:
            continue
        limiters[endpoint_class] = make(endpoint_class.value, config)
    if settings.maps_limiter_shares_general:
        limiters[EndpointClass.MAPS] = limiters[EndpointClass.GENERAL]
    return limiters
