from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol, TypeVar

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from gridrank.core.config import Settings
from gridrank.core.metrics import cache_requests_total
from gridrank.db.redis_client import get_loop_redis_client, redis_enabled
from gridrank.observability.events import emit_cache_error
from gridrank.providers.cache_keys import CacheTTL

logger = logging.getLogger("gridrank.cache")

T = TypeVar("T")

_CACHE_ERRORS = (RedisError, OSError, ValueError, TypeError)


class CacheBackend(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...


class InMemoryCacheBackend:
    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[float, str]] = {}

    async def get(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._entries[key] = (self._clock() + ttl_seconds, value)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


class RedisCacheBackend:
    def __init__(self, client_factory: Callable[[], aioredis.Redis] = get_loop_redis_client) -> None:
        self._client_factory = client_factory

    async def get(self, key: str) -> str | None:
        raw = await self._client_factory().get(key)
        if raw is None:
            return None
        if isinstance(raw, bytes):
            return raw.decode("utf-8")
        return str(raw)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._client_factory().setex(key, ttl_seconds, value)

    async def delete(self, key: str) -> None:
        await self._client_factory().delete(key)


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    errors: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return round(self.hits / total, 4)


class ResponseCache:
    """TTL memoization of provider responses keyed by logical query.

    Concurrent misses on one key are not coalesced; each caller computes and
    the last write wins. Backend failures count as misses.
    """

    def __init__(
        self,
        backend: CacheBackend,
        *,
        enabled: bool = True,
        default_ttl: int = CacheTTL.SERP,
    ) -> None:
        self.backend = backend
        self.enabled = enabled
        self.default_ttl = int(default_ttl)
        self._stats = CacheStats()

    def _record_error(self, operation: str, key: str, exc: Exception) -> None:
        self._stats.errors += 1
        cache_requests_total.labels(result="error").inc()
        emit_cache_error(operation=operation, key=key, error=str(exc))

    async def _lookup(self, key: str) -> tuple[bool, Any]:
        try:
            raw = await self.backend.get(key)
            if raw is None:
                found, value = False, None
            else:
                found, value = True, json.loads(raw)
        except _CACHE_ERRORS as exc:
            self._record_error("get", key, exc)
            found, value = False, None
        if found:
            self._stats.hits += 1
            cache_requests_total.labels(result="hit").inc()
        else:
            self._stats.misses += 1
            cache_requests_total.labels(result="miss").inc()
        return found, value

    async def get(self, key: str) -> Any | None:
        if not self.enabled:
            return None
        _, value = await self._lookup(key)
        return value

    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        if not self.enabled:
            return False
        ttl_seconds = int(ttl if ttl is not None else self.default_ttl)
        try:
            await self.backend.set(key, json.dumps(value, default=str), ttl_seconds)
        except _CACHE_ERRORS as exc:
            self._record_error("set", key, exc)
            return False
        return True

    async def delete(self, key: str) -> bool:
        try:
            await self.backend.delete(key)
        except _CACHE_ERRORS as exc:
            self._record_error("delete", key, exc)
            return False
        return True

    async def get_or_fetch(
        self,
        key: str,
        compute_fn: Callable[[], Awaitable[T]],
        *,
        ttl: int | None = None,
        skip_cache: bool = False,
    ) -> T:
        if not self.enabled or skip_cache:
            return await compute_fn()
        found, value = await self._lookup(key)
        if found:
            return value
        value = await compute_fn()
        await self.set(key, value, ttl)
        return value

    def stats(self) -> CacheStats:
        return CacheStats(hits=self._stats.hits, misses=self._stats.misses, errors=self._stats.errors)

    def reset_stats(self) -> None:
        self._stats = CacheStats()


def build_response_cache(settings: Settings, *, backend: CacheBackend | None = None) -> ResponseCache:
    if backend is None:
        if settings.cache_backend.strip().lower() == "memory":
            backend = InMemoryCacheBackend()
        else:
            if redis_enabled():
                backend = RedisCacheBackend()
            else:
                logger.info("Redis disabled; using in-memory response cache")
                backend = InMemoryCacheBackend()
    return ResponseCache(backend, enabled=settings.cache_enabled, default_ttl=settings.cache_ttl_serp_seconds)
