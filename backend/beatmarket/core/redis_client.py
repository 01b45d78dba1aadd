"""
BeatMarket Async Redis Client Module

Short-lived caches for catalog search pages and authenticated user profiles.
Redis is optional: a missing or failing server turns every read into a miss
and every write into a no-op, and requests keep being served from MongoDB.

Usage:
    ```python
    from beatmarket.core.redis_client import init_redis, get_redis_client

    await init_redis()

    cache = get_redis_client()
    if cache:
        await cache.set_json("search:all", results, ttl=30)
    ```
"""

import asyncio
import json
import logging

from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import redis.asyncio as redis

from redis.exceptions import RedisError

from beatmarket.config import Settings, get_settings


logger = logging.getLogger(__name__)

T = TypeVar("T")

CONNECT_ATTEMPTS = 3


class CacheKeys:
    """Key prefixes, one per cached resource."""

    SEARCH = "search"
    USER = "user"


class _RedisClientContainer:
    client: "RedisClient | None" = None


_container = _RedisClientContainer()


def _redacted(url: str) -> str:
    """Drop credentials from a redis:// URL before it reaches the logs."""
    scheme, _, rest = url.partition("://")
    if "@" not in rest:
        return url
    return f"{scheme}://***@{rest.rsplit('@', 1)[-1]}"


class RedisClient:
    """JSON cache on top of ``redis.asyncio``. Every method swallows ``RedisError``."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self._redis: redis.Redis | None = None

    @property
    def default_ttl(self) -> int:
        return self.settings.redis_cache_ttl_seconds

    async def connect(self) -> bool:
        """Open the pool and PING it, backing off 1s then 2s between attempts."""
        target = _redacted(self.settings.redis_url)

        for attempt in range(1, CONNECT_ATTEMPTS + 1):
            candidate = redis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5.0,
                socket_timeout=5.0,
            )
            try:
                await candidate.ping()
            except RedisError as error:
                logger.warning(
                    "Redis at %s unreachable (attempt %d/%d): %s",
                    target,
                    attempt,
                    CONNECT_ATTEMPTS,
                    error,
                )
                await candidate.aclose()
                if attempt < CONNECT_ATTEMPTS:
                    await asyncio.sleep(2 ** (attempt - 1))
                continue

            self._redis = candidate
            logger.info("Connected to Redis at %s", target)
            return True

        return False

    async def close(self) -> None:
        if self._redis is None:
            return
        try:
            await self._redis.aclose()
        except RedisError:
            logger.exception("Error closing Redis connection")
        finally:
            self._redis = None

    async def _guarded(
        self, operation: str, key: str, call: Callable[[redis.Redis], Awaitable[T]], fallback: T
    ) -> T:
        if self._redis is None:
            return fallback
        try:
            return await call(self._redis)
        except RedisError:
            logger.exception("Redis %s failed for '%s'", operation, key)
            return fallback

    async def is_connected(self) -> bool:
        async def _ping(conn: redis.Redis) -> bool:
            return bool(await conn.ping())

        return await self._guarded("ping", "-", _ping, False)

    async def get_json(self, key: str) -> Any | None:
        """Cached value for ``key``; None on a miss, a decode failure or an outage."""
        raw = await self._guarded("get", key, lambda conn: conn.get(key), None)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarding undecodable cache entry '%s'", key)
            return None

    async def set_json(self, key: str, value: Any, ttl: int | None = None) -> bool:
        try:
            payload = json.dumps(value, default=str)
        except (TypeError, ValueError):
            logger.exception("Value for '%s' is not JSON serializable", key)
            return False

        expires = ttl if ttl and ttl > 0 else self.default_ttl
        stored = await self._guarded(
            "set", key, lambda conn: conn.set(key, payload, ex=expires), False
        )
        return bool(stored)

    async def delete_pattern(self, pattern: str) -> int:
        """Delete keys matching a glob, walking the keyspace with SCAN."""

        async def _sweep(conn: redis.Redis) -> int:
            removed = 0
            async for key in conn.scan_iter(match=pattern, count=500):
                removed += await conn.delete(key)
            return removed

        return await self._guarded("delete_pattern", pattern, _sweep, 0)


async def init_redis(settings: Settings | None = None) -> RedisClient:
    """
    Connect the process-wide cache client.

    Raises:
        RuntimeError: If no attempt reached the server.
    """
    if _container.client is not None:
        return _container.client

    client = RedisClient(settings)
    if not await client.connect():
        raise RuntimeError("Failed to connect to Redis after multiple attempts")

    _container.client = client
    return client


async def close_redis() -> None:
    client, _container.client = _container.client, None
    if client is not None:
        await client.close()


def get_redis_client() -> RedisClient | None:
    """Return the cache client, or None when Redis was never connected."""
    return _container.client
