"""Redis store backend for shared, durable engine state."""

import pickle
from typing import Any, Dict, List, Optional

import redis.asyncio as aioredis

from .base import CacheBackend


class RedisStoreBackend(CacheBackend):
    """Redis-based backend.

    Values are pickled; keys are namespaced under ``key_prefix`` so several
    engines can share a Redis database.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        key_prefix: str = "dedup:",
        name: str = "redis",
    ):
        super().__init__(name)
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.redis: Optional[aioredis.Redis] = None
        self._connected = False

    async def _ensure_connected(self) -> bool:
        """Ensure Redis connection is established."""
        if self._connected and self.redis:
            return True

        try:
            self.redis = aioredis.from_url(self.redis_url, decode_responses=False)
            await self.redis.ping()
            self._connected = True
            return True
        except (aioredis.RedisError, OSError):
            self._connected = False
            self._record_error()
            return False

    def _make_key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    async def get(self, key: str) -> Optional[Any]:
        try:
            if not await self._ensure_connected():
                self._record_miss()
                return None
            data_bytes = await self.redis.get(self._make_key(key))
            if data_bytes is None:
                self._record_miss()
                return None
            self._record_hit()
            return pickle.loads(data_bytes)  # nosec B301
        except (aioredis.RedisError, OSError, pickle.UnpicklingError):
            self._connected = False
            self._record_error()
            return None

    async def set(self, key: str, value: Any, ttl: float = 0) -> bool:
        try:
            if not await self._ensure_connected():
                return False
            data_bytes = pickle.dumps(value)
            if ttl > 0:
                await self.redis.set(self._make_key(key), data_bytes, px=max(1, int(ttl * 1000)))
            else:
                await self.redis.set(self._make_key(key), data_bytes)
            return True
        except (aioredis.RedisError, OSError, pickle.PicklingError):
            self._connected = False
            self._record_error()
            return False

    async def delete(self, key: str) -> bool:
        try:
            if not await self._ensure_connected():
                return False
            return await self.redis.delete(self._make_key(key)) > 0
        except (aioredis.RedisError, OSError):
            self._connected = False
            self._record_error()
            return False

    async def keys(self, prefix: str = "") -> List[str]:
        try:
            if not await self._ensure_connected():
                return []
            found = []
            strip = len(self.key_prefix)
            async for raw in self.redis.scan_iter(match=f"{self._make_key(prefix)}*", count=500):
                key = raw.decode() if isinstance(raw, bytes) else raw
                found.append(key[strip:])
            return found
        except (aioredis.RedisError, OSError):
            self._connected = False
            self._record_error()
            return []

    async def clear(self) -> bool:
        try:
            if not await self._ensure_connected():
                return False
            batch = []
            async for raw in self.redis.scan_iter(match=f"{self.key_prefix}*", count=500):
                batch.append(raw)
                if len(batch) >= 500:
                    await self.redis.delete(*batch)
                    batch = []
            if batch:
                await self.redis.delete(*batch)
            return True
        except (aioredis.RedisError, OSError):
            self._connected = False
            self._record_error()
            return False

    async def exists(self, key: str) -> bool:
        try:
            if not await self._ensure_connected():
                return False
            return await self.redis.exists(self._make_key(key)) > 0
        except (aioredis.RedisError, OSError):
            self._connected = False
            self._record_error()
            return False

    async def ttl(self, key: str) -> Optional[float]:
        try:
            if not await self._ensure_connected():
                return None
            millis = await self.redis.pttl(self._make_key(key))
        except (aioredis.RedisError, OSError):
            self._connected = False
            self._record_error()
            return None
        # -1: no expiry, -2: missing
        if millis == -1:
            return 0
        if millis < 0:
            return None
        return millis / 1000 if millis > 0 else None

    async def cleanup_expired(self) -> int:
        """Redis expires keys itself."""
        return 0

    def get_stats(self) -> Dict[str, Any]:
        return {
            "backend": self.name,
            "redis_url": self.redis_url,
            "connected": self._connected,
            "key_prefix": self.key_prefix,
            "hits": self.hits,
            "misses": self.misses,
            "errors": self.errors,
            "hit_rate_percent": self.get_hit_rate(),
        }

    async def close(self) -> None:
        if self.redis:
            try:
                await self.redis.aclose()
            finally:
                self.redis = None
                self._connected = False
