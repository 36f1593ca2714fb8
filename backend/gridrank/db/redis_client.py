from __future__ import annotations

import asyncio
import weakref

import redis
import redis.asyncio as aioredis
from redis.exceptions import RedisError

from gridrank.core.config import get_settings

SOCKET_TIMEOUT_SECONDS = 5.0

_loop_clients: weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, aioredis.Redis] = weakref.WeakKeyDictionary()


def _redis_url() -> str | None:
    settings = get_settings()
    if settings.app_env.lower() == "test":
        return None
    return settings.redis_url


def redis_enabled() -> bool:
    return _redis_url() is not None


def get_redis_client() -> redis.Redis | None:
    """Synchronous client, pinged on creation so startup fails fast."""
    url = _redis_url()
    if url is None:
        return None
    client = redis.Redis.from_url(url, socket_timeout=SOCKET_TIMEOUT_SECONDS)
    try:
        client.ping()
    except RedisError as exc:
        raise RuntimeError(f"Redis unavailable at {url}") from exc
    return client


def get_loop_redis_client() -> aioredis.Redis:
    """Async client bound to the running event loop.

    Connections of an asyncio client cannot move between loops, so each loop
    gets its own client. Close it with ``close_loop_redis_client`` before the
    loop ends.
    """
    url = _redis_url()
    if url is None:
        raise RuntimeError("Redis is disabled in this environment.")
    loop = asyncio.get_running_loop()
    client = _loop_clients.get(loop)
    if client is None:
        client = aioredis.Redis.from_url(url, socket_timeout=SOCKET_TIMEOUT_SECONDS)
        _loop_clients[loop] = client
    return client


async def close_loop_redis_client() -> None:
    client = _loop_clients.pop(asyncio.get_running_loop(), None)
    if client is not None:
        await client.aclose()
