"""Key/value persistence for engine state.

- Memory: in-process dictionary, the default and the fallback
- Redis: shared state for multi-instance deployments

``RecordStore`` picks the backend and owns key namespacing.
"""

from .base import CacheBackend, StoreEntry
from .manager import (
    BACKUP_NS,
    BATCH_JOB_NS,
    DUPLICATE_NS,
    MATCHING_RULE_NS,
    METRICS_KEY,
    PROCESSED_NS,
    STRATEGY_NS,
    WORKFLOW_NS,
    RecordStore,
    make_key,
)
from .memory_store import MemoryStoreBackend
from .redis_store import RedisStoreBackend

__all__ = [
    "CacheBackend",
    "StoreEntry",
    "RecordStore",
    "MemoryStoreBackend",
    "RedisStoreBackend",
    "make_key",
    "DUPLICATE_NS",
    "MATCHING_RULE_NS",
    "STRATEGY_NS",
    "WORKFLOW_NS",
    "BATCH_JOB_NS",
    "BACKUP_NS",
    "METRICS_KEY",
    "PROCESSED_NS",
]
