"""Abstract base classes for key/value store backends."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional


@dataclass
class StoreEntry:
    """A stored value with its expiry metadata."""

    key: str
    data: Any
    timestamp: datetime
    ttl_seconds: float = 0
    access_count: int = 0

    def is_expired(self) -> bool:
        if self.ttl_seconds <= 0:  # Never expires if TTL is 0 or negative
            return False
        return datetime.now() - self.timestamp > timedelta(seconds=self.ttl_seconds)

    def remaining_ttl(self) -> Optional[float]:
        """Seconds left, ``0`` for no expiry, ``None`` once expired."""
        if self.ttl_seconds <= 0:
            return 0
        left = self.ttl_seconds - (datetime.now() - self.timestamp).total_seconds()
        return left if left > 0 else None

    def touch(self) -> None:
        self.access_count += 1


class CacheBackend(ABC):
    """Abstract base class for store backends.

    Backends never raise on I/O problems: ``set``/``delete`` return ``False``
    and ``get`` returns ``None``, and the failure is counted in ``errors``.
    The ``RecordStore`` turns failed writes into ``PersistenceFailure``.
    """

    def __init__(self, name: str):
        self.name = name
        self.hits = 0
        self.misses = 0
        self.errors = 0

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Get value by key."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: float = 0) -> bool:
        """Set value with TTL in seconds; ``0`` means no expiry."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete key."""

    @abstractmethod
    async def keys(self, prefix: str = "") -> List[str]:
        """List live keys starting with ``prefix``."""

    @abstractmethod
    async def clear(self) -> bool:
        """Remove every entry."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check if key exists."""

    async def ttl(self, key: str) -> Optional[float]:
        """Remaining lifetime of ``key``: seconds, ``0`` for no expiry, ``None`` if unknown."""
        return None

    @abstractmethod
    async def cleanup_expired(self) -> int:
        """Remove expired entries and return count removed."""

    @abstractmethod
    def get_stats(self) -> Dict[str, Any]:
        """Backend statistics."""

    @abstractmethod
    async def close(self) -> None:
        """Release connections and resources."""

    def _record_hit(self) -> None:
        self.hits += 1

    def _record_miss(self) -> None:
        self.misses += 1

    def _record_error(self) -> None:
        self.errors += 1

    def get_hit_rate(self) -> float:
        total = self.hits + self.misses
        return (self.hits / total * 100) if total > 0 else 0.0
