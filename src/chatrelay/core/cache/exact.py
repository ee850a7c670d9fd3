"""
Key-value cache layer using Redis.

Backs both the exact-match cache (key: SHA-256 of the conversation prefix)
and the resource cache (key: external resource identifier). Values are the
raw response text; every entry carries its own TTL.
"""

from __future__ import annotations

from datetime import timedelta

import redis.asyncio as aioredis
import structlog

logger = structlog.stdlib.get_logger()

EXACT_CACHE_NAMESPACE = "exact:cache:"
RESOURCE_CACHE_NAMESPACE = "resource:cache:"


class KeyValueCache:
    """Redis-backed string cache under a fixed key namespace."""

    def __init__(self, redis_client: aioredis.Redis, namespace: str, key_prefix: str = "") -> None:
        self._redis = redis_client
        self._prefix = f"{key_prefix}{namespace}"
        self.name = namespace.split(":", 1)[0]

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get(self, key: str) -> str | None:
        """Return the stored text or None; unreachable Redis reads as a miss."""
        try:
            data = await self._redis.get(self._key(key))
        except aioredis.RedisError as e:
            await logger.awarning("cache.kv.redis_unavailable", cache=self.name, error=str(e))
            return None

        if data is None:
            return None
        await logger.adebug("cache.kv.hit", cache=self.name, key=key[:12])
        return data.decode("utf-8") if isinstance(data, bytes) else data

    async def set(self, key: str, value: str, ttl: timedelta) -> bool:
        """Store text with an absolute expiry. Returns False if the write was dropped."""
        try:
            await self._redis.set(self._key(key), value, ex=ttl)
        except aioredis.RedisError as e:
            await logger.awarning("cache.kv.redis_unavailable", cache=self.name, error=str(e))
            return False
        await logger.adebug(
            "cache.kv.stored", cache=self.name, key=key[:12], ttl_seconds=int(ttl.total_seconds())
        )
        return True

    async def delete(self, key: str) -> None:
        try:
            await self._redis.delete(self._key(key))
        except aioredis.RedisError:
            await logger.awarning("cache.kv.redis_unavailable", cache=self.name)

    async def clear(self) -> int:
        """Delete every key in this namespace. Returns count deleted."""
        count = 0
        try:
            async for key in self._redis.scan_iter(match=f"{self._prefix}*", count=100):
                await self._redis.delete(key)
                count += 1
        except aioredis.RedisError as e:
            await logger.awarning("cache.kv.clear_failed", cache=self.name, error=str(e))
        return count

    async def count(self) -> int:
        count = 0
        try:
            async for _ in self._redis.scan_iter(match=f"{self._prefix}*", count=100):
                count += 1
        except aioredis.RedisError:
            return 0
        return count
