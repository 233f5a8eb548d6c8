"""Namespaced record store with backend selection and fallback."""

from collections import OrderedDict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from dedup_engine.errors import PersistenceFailure
from dedup_engine.utils.logger import log_debug, log_error, log_info, log_warning

from .base import CacheBackend, StoreEntry
from .memory_store import MemoryStoreBackend
from .redis_store import RedisStoreBackend

DUPLICATE_NS = "duplicate"
MATCHING_RULE_NS = "matching_rule"
STRATEGY_NS = "dedup_strategy"
WORKFLOW_NS = "workflow"
BATCH_JOB_NS = "batch_job"
BACKUP_NS = "backup"
PROCESSED_NS = "processed_record"
METRICS_KEY = "duplicate_detection:metrics"

DEFAULT_LOCAL_CACHE_SIZE = 10000


def make_key(namespace: str, *parts: str) -> str:
    """``make_key("duplicate", "dup_1")`` -> ``"duplicate:dup_1"``."""
    return ":".join([namespace, *[str(p) for p in parts]])


class StoreBackendType(Enum):
    REDIS = "redis"
    MEMORY = "memory"


class RecordStore:
    """The engine's system of record.

    All reads go through an in-process cache that is filled on miss and
    invalidated on every write and delete. Cached entries carry the
    backend's expiry and are dropped once it passes; values whose lifetime
    the backend cannot report are not cached. The cache is LRU-bounded by
    ``local_cache_size`` (``0`` disables it). Writes that the backend
    rejects raise ``PersistenceFailure``.

    Args:
        config: Engine ``Config``; used for backend selection.
        backend: Explicit backend, bypassing selection (tests, embedding).
        local_cache_size: Overrides ``Config.store_local_cache_size``.
    """

    def __init__(
        self,
        config=None,
        backend: Optional[CacheBackend] = None,
        local_cache_size: Optional[int] = None,
    ):
        self.config = config
        self.backend: Optional[CacheBackend] = backend
        if local_cache_size is None:
            local_cache_size = getattr(config, "store_local_cache_size", DEFAULT_LOCAL_CACHE_SIZE)
        self.local_cache_size = local_cache_size
        self._cache: "OrderedDict[str, StoreEntry]" = OrderedDict()
        self._initialized = backend is not None

    async def initialize(self) -> bool:
        """Select the active backend; redis falls back to memory."""
        if self._initialized:
            return True

        backend_type = getattr(self.config, "store_backend", "memory").lower()
        log_info("Initializing record store", backend_type=backend_type)

        if backend_type == StoreBackendType.REDIS.value:
            redis_backend = RedisStoreBackend(
                redis_url=self.config.redis_url,
                key_prefix=self.config.store_key_prefix,
            )
            if await redis_backend._ensure_connected():
                self.backend = redis_backend
            else:
                log_warning("Redis connection failed, using memory store", redis_url=self.config.redis_url)
                await redis_backend.close()

        if self.backend is None:
            max_size = getattr(self.config, "store_max_memory_entries", 0)
            self.backend = MemoryStoreBackend(max_size=max_size)

        self._initialized = True
        log_info("Record store initialized", active_backend=self.backend.name)
        return True

    def _require_backend(self) -> CacheBackend:
        if self.backend is None:
            raise PersistenceFailure("Record store is not initialized")
        return self.backend

    async def put(self, key: str, value: Any, ttl: float = 0) -> None:
        backend = self._require_backend()
        self._cache.pop(key, None)
        try:
            ok = await backend.set(key, value, ttl)
        except Exception as exc:
            log_error("Store write raised", key=key, error=str(exc))
            raise PersistenceFailure(f"Failed to persist {key}: {exc}", key=key) from exc
        if not ok:
            log_error("Store write failed", key=key, backend=backend.name)
            raise PersistenceFailure(f"Failed to persist {key}", key=key)
        self._remember(key, value, ttl)

    async def get(self, key: str) -> Optional[Any]:
        entry = self._cache.get(key)
        if entry is not None:
            if not entry.is_expired():
                self._cache.move_to_end(key)
                entry.touch()
                return entry.data
            del self._cache[key]
        backend = self._require_backend()
        value = await backend.get(key)
        if value is not None and self.local_cache_size > 0:
            remaining = await backend.ttl(key)
            if remaining is not None:
                self._remember(key, value, remaining)
        return value

    def _remember(self, key: str, value: Any, ttl: float) -> None:
        if self.local_cache_size <= 0:
            return
        self._cache.pop(key, None)
        self._cache[key] = StoreEntry(key=key, data=value, timestamp=datetime.now(), ttl_seconds=ttl)
        while len(self._cache) > self.local_cache_size:
            self._cache.popitem(last=False)

    async def delete(self, key: str) -> bool:
        self._cache.pop(key, None)
        return await self._require_backend().delete(key)

    async def keys(self, namespace: str) -> List[str]:
        return await self._require_backend().keys(f"{namespace}:")

    async def load_namespace(self, namespace: str) -> List[Any]:
        """Every live value stored under ``namespace``."""
        values = []
        for key in await self.keys(namespace):
            value = await self.get(key)
            if value is not None:
                values.append(value)
        log_debug("Loaded namespace", namespace=namespace, count=len(values))
        return values

    def invalidate(self, key: Optional[str] = None) -> None:
        """Drop one cached key, or the whole local cache."""
        if key is None:
            self._cache.clear()
        else:
            self._cache.pop(key, None)

    def get_stats(self) -> Dict[str, Any]:
        stats = self.backend.get_stats() if self.backend else {"backend": None}
        stats["local_cache_size"] = len(self._cache)
        return stats

    async def close(self) -> None:
        self._cache.clear()
        if self.backend is not None:
            await self.backend.close()
