"""
Redis-backed JSON cache with explicit TTLs.
"""

import json
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from redis.asyncio import Redis

logger = structlog.get_logger()


class CacheService:
    """Thin JSON layer over an async Redis client."""

    def __init__(self, redis: Redis):
        """
        Args:
            redis: redis.asyncio client created with decode_responses=True
        """
        self.redis = redis

    async def get_json(self, key: str) -> Any | None:
        raw = await self.redis.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Discarding unreadable cache entry", key=key)
            await self.redis.delete(key)
            return None

    async def set_json(self, key: str, value: Any, ttl: int | None = None) -> None:
        payload = json.dumps(value, default=str)
        if ttl is not None and ttl > 0:
            await self.redis.set(key, payload, ex=int(ttl))
        else:
            await self.redis.set(key, payload)

    async def set_json_if_absent(self, key: str, value: Any, ttl: int) -> bool:
        """Atomic single-key write; returns False if the key already existed."""
        created = await self.redis.set(key, json.dumps(value, default=str), ex=int(ttl), nx=True)
        return bool(created)

    async def expire(self, key: str, ttl: int) -> None:
        await self.redis.expire(key, int(ttl))

    async def ttl(self, key: str) -> int:
        return await self.redis.ttl(key)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self.redis.delete(*keys)

    async def keys(self, pattern: str) -> list[str]:
        return [key async for key in self.redis.scan_iter(match=pattern)]

    async def invalidate_pattern(self, pattern: str) -> int:
        """
        Delete every key matching a glob pattern.

        Returns:
            Number of keys removed
        """
        matched = await self.keys(pattern)
        removed = await self.delete(*matched)
        if removed:
            logger.debug("Invalidated cache keys", pattern=pattern, count=removed)
        return removed

    async def get_or_set(
        self, key: str, ttl: int, loader: Callable[[], Awaitable[Any]]
    ) -> Any:
        """Return the cached value for key, loading and caching it on a miss."""
        cached = await self.get_json(key)
        if cached is not None:
            return cached
        value = await loader()
        if value is not None:
            await self.set_json(key, value, ttl)
        return value
