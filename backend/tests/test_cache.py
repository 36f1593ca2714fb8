import asyncio

from redis.exceptions import ConnectionError as RedisConnectionError

from gridrank.core.config import get_settings
import gridrank.providers.cache as cache_module
from gridrank.providers.cache import InMemoryCacheBackend, RedisCacheBackend, ResponseCache, build_response_cache
from gridrank.providers.cache_keys import CacheTTL, serp_locations_key, serp_maps_key, serp_organic_key


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class BrokenBackend:
    async def get(self, key: str) -> str | None:
        raise RedisConnectionError("redis down")

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        raise RedisConnectionError("redis down")

    async def delete(self, key: str) -> None:
        raise RedisConnectionError("redis down")


def _counting_fetch(calls: dict, value):
    async def _fetch():
        calls["count"] += 1
        return value

    return _fetch


def test_get_or_fetch_computes_once_within_ttl() -> None:
    cache = ResponseCache(InMemoryCacheBackend())
    calls = {"count": 0}

    async def run():
        first = await cache.get_or_fetch("k", _counting_fetch(calls, [{"rank": 1}]), ttl=60)
        second = await cache.get_or_fetch("k", _counting_fetch(calls, [{"rank": 2}]), ttl=60)
        return first, second

    first, second = asyncio.run(run())
    assert calls["count"] == 1
    assert first == second == [{"rank": 1}]
    stats = cache.stats()
    assert (stats.hits, stats.misses, stats.errors) == (1, 1, 0)
    assert stats.hit_rate == 0.5


def test_entries_expire_after_ttl() -> None:
    clock = FakeClock()
    cache = ResponseCache(InMemoryCacheBackend(clock=clock))
    calls = {"count": 0}

    async def run() -> None:
        await cache.get_or_fetch("k", _counting_fetch(calls, "a"), ttl=10)
        clock.now = 9.0
        await cache.get_or_fetch("k", _counting_fetch(calls, "b"), ttl=10)
        clock.now = 10.0
        await cache.get_or_fetch("k", _counting_fetch(calls, "c"), ttl=10)

    asyncio.run(run())
    assert calls["count"] == 2


def test_skip_cache_always_computes_and_leaves_cache_untouched() -> None:
    backend = InMemoryCacheBackend()
    cache = ResponseCache(backend)
    calls = {"count": 0}

    async def run() -> None:
        await cache.get_or_fetch("k", _counting_fetch(calls, 1), skip_cache=True)
        await cache.get_or_fetch("k", _counting_fetch(calls, 1), skip_cache=True)

    asyncio.run(run())
    assert calls["count"] == 2
    assert len(backend) == 0


def test_disabled_cache_is_a_pass_through() -> None:
    cache = ResponseCache(InMemoryCacheBackend(), enabled=False)
    calls = {"count": 0}

    async def run() -> None:
        assert await cache.set("k", 1) is False
        assert await cache.get("k") is None
        await cache.get_or_fetch("k", _counting_fetch(calls, 1))
        await cache.get_or_fetch("k", _counting_fetch(calls, 1))

    asyncio.run(run())
    assert calls["count"] == 2


def test_backend_failures_degrade_to_misses() -> None:
    cache = ResponseCache(BrokenBackend())
    calls = {"count": 0}

    async def run():
        value = await cache.get_or_fetch("k", _counting_fetch(calls, {"ok": True}))
        deleted = await cache.delete("k")
        return value, deleted

    value, deleted = asyncio.run(run())
    assert value == {"ok": True}
    assert deleted is False
    assert calls["count"] == 1
    stats = cache.stats()
    assert stats.misses == 1
    assert stats.errors == 3


def test_corrupt_entry_is_treated_as_miss() -> None:
    backend = InMemoryCacheBackend()
    cache = ResponseCache(backend)
    calls = {"count": 0}

    async def run():
        await backend.set("k", "{not json", 60)
        return await cache.get_or_fetch("k", _counting_fetch(calls, [1, 2]))

    assert asyncio.run(run()) == [1, 2]
    assert calls["count"] == 1
    assert cache.stats().errors == 1


def test_reset_stats_clears_counters() -> None:
    cache = ResponseCache(InMemoryCacheBackend())
    asyncio.run(cache.get("missing"))
    assert cache.stats().misses == 1
    cache.reset_stats()
    assert cache.stats().misses == 0


def test_maps_key_normalizes_keyword_and_separates_queries() -> None:
    coordinate = "40.0000000,-75.0000000,14"
    key = serp_maps_key("Dentist  Near Me", coordinate, 20)
    assert key == serp_maps_key("dentist near me", coordinate, 20)
    assert key.startswith("gridrank:serp:maps:")
    assert key.endswith(":20")
    assert key != serp_maps_key("dentist near me", "40.0000000,-75.0100000,14", 20)
    assert key != serp_maps_key("dentist near me", coordinate, 10)
    assert key != serp_organic_key("dentist near me", coordinate, 20)
    assert serp_locations_key("US") == "gridrank:serp:locations:us"
    assert serp_locations_key() == "gridrank:serp:locations:all"


def test_cache_ttl_tiers() -> None:
    assert CacheTTL.REALTIME == 300
    assert CacheTTL.SERP == 4 * 3600
    assert CacheTTL.STANDARD == 86400
    assert CacheTTL.REFERENCE == 7 * 86400


def test_build_response_cache_uses_memory_backend_in_test_mode() -> None:
    cache = build_response_cache(get_settings())
    assert isinstance(cache.backend, InMemoryCacheBackend)
    assert cache.default_ttl == CacheTTL.SERP


class FakeRedis:
    def __init__(self) -> None:
        self.values: dict[str, bytes] = {}

    async def get(self, key):
        return self.values.get(key)

    async def setex(self, key, ttl, value):
        self.values[key] = value.encode("utf-8")

    async def delete(self, key):
        self.values.pop(key, None)


def test_redis_backend_resolves_a_client_for_each_event_loop() -> None:
    clients: list[FakeRedis] = []

    def client_for_loop() -> FakeRedis:
        client = FakeRedis()
        clients.append(client)
        return client

    cache = ResponseCache(RedisCacheBackend(client_for_loop))

    assert asyncio.run(cache.set("k", {"rank": 2})) is True
    assert asyncio.run(cache.get("k")) is None
    assert len(clients) == 2
    assert clients[0].values == {"k": b'{"rank": 2}'}


def test_build_response_cache_uses_redis_backend_when_enabled(monkeypatch) -> None:
    monkeypatch.setattr(cache_module, "redis_enabled", lambda: True)
    cache = build_response_cache(get_settings().model_copy(update={"cache_backend": "redis"}))
    assert isinstance(cache.backend, RedisCacheBackend)
