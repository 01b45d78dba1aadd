"""
Cache helpers over the optional Redis client.

Each helper degrades to a miss (or a no-op) when Redis is not initialized, so
callers never branch on cache availability.

Key Format: "{prefix}:{md5_hash_of_args}"
"""

import hashlib
import json
import logging

from typing import Any

from beatmarket.core.redis_client import get_redis_client


logger = logging.getLogger(__name__)


def generate_cache_key(prefix: str, *args: Any, **kwargs: Any) -> str:
    """
    Generate a deterministic cache key from a prefix and arguments.

    Keyword arguments are sorted so the same call always yields the same key.

    Example:
        >>> generate_cache_key("search", bpm_min=90, bpm_max=None)
        'search:...'
    """
    parts: list[str] = []

    for arg in args:
        if isinstance(arg, (str, int, float, bool, type(None))):
            parts.append(str(arg))
        else:
            parts.append(json.dumps(arg, sort_keys=True, default=str))

    for key in sorted(kwargs):
        value = kwargs[key]
        if isinstance(value, (str, int, float, bool, type(None))):
            parts.append(f"{key}={value}")
        else:
            parts.append(f"{key}={json.dumps(value, sort_keys=True, default=str)}")

    args_hash = hashlib.md5(":".join(parts).encode("utf-8")).hexdigest()
    return f"{prefix}:{args_hash}" if prefix else args_hash


async def get_cached_value(key: str) -> Any | None:
    """Return the cached JSON value for ``key``, or None on miss or when Redis is down."""
    client = get_redis_client()
    if client is None:
        return None

    value = await client.get_json(key)
    logger.debug("Cache %s for key '%s'", "hit" if value is not None else "miss", key)
    return value


async def set_cached_value(key: str, value: Any, ttl_seconds: int = 300) -> bool:
    """Store a JSON-serializable value under ``key`` with a TTL."""
    client = get_redis_client()
    if client is None:
        return False

    return await client.set_json(key, value, ttl=ttl_seconds)


async def clear_cache_pattern(pattern: str) -> int:
    """
    Delete every cache key matching a glob-style pattern.

    Example:
        ```python
        deleted_count = await clear_cache_pattern("search:*")
        ```
    """
    client = get_redis_client()
    if client is None:
        return 0

    deleted_count = await client.delete_pattern(pattern)
    if deleted_count:
        logger.info("Cleared %d cache entries matching pattern '%s'", deleted_count, pattern)
    return deleted_count
