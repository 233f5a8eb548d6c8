"""In-process store backend with optional LRU bound."""

import asyncio
from collections import OrderedDict
from datetime import datetime
from typing import Any, Dict, List, Optional

from .base import CacheBackend, StoreEntry


class MemoryStoreBackend(CacheBackend):
    """Dictionary-backed store.

    ``max_size`` of ``0`` disables eviction, which is what the engine wants
    when memory is the system of record; a positive bound turns the backend
    into an LRU cache.
    """

    def __init__(self, max_size: int = 0, name: str = "memory"):
        super().__init__(name)
        self.max_size = max_size
        self.entries: "OrderedDict[str, StoreEntry]" = OrderedDict()
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            entry = self.entries.get(key)
            if entry is None:
                self._record_miss()
                return None
            if entry.is_expired():
                del self.entries[key]
                self._record_miss()
                return None
            self.entries.move_to_end(key)
            entry.touch()
            self._record_hit()
            return entry.data

    async def set(self, key: str, value: Any, ttl: float = 0) -> bool:
        async with self._lock:
            self.entries.pop(key, None)
            self.entries[key] = StoreEntry(
                key=key, data=value, timestamp=datetime.now(), ttl_seconds=ttl
            )
            if self.max_size > 0:
                while len(self.entries) > self.max_size:
                    self.entries.popitem(last=False)
            return True

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self.entries.pop(key, None) is not None

    async def keys(self, prefix: str = "") -> List[str]:
        async with self._lock:
            expired = [k for k, e in self.entries.items() if e.is_expired()]
            for key in expired:
                del self.entries[key]
            return [k for k in self.entries if k.startswith(prefix)]

    async def clear(self) -> bool:
        async with self._lock:
            self.entries.clear()
            return True

    async def exists(self, key: str) -> bool:
        async with self._lock:
            entry = self.entries.get(key)
            if entry is None:
                return False
            if entry.is_expired():
                del self.entries[key]
                return False
            return True

    async def ttl(self, key: str) -> Optional[float]:
        async with self._lock:
            entry = self.entries.get(key)
            return entry.remaining_ttl() if entry is not None else None

    async def cleanup_expired(self) -> int:
        async with self._lock:
            expired = [k for k, e in self.entries.items() if e.is_expired()]
            for key in expired:
                del self.entries[key]
            return len(expired)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "backend": self.name,
            "size": len(self.entries),
            "max_size": self.max_size,
            "hits": self.hits,
            "misses": self.misses,
            "errors": self.errors,
            "hit_rate_percent": self.get_hit_rate(),
        }

    async def close(self) -> None:
        async with self._lock:
            self.entries.clear()
