"""Unit tests for store backends and the record store."""

import asyncio
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from dedup_engine.config import Config
from dedup_engine.errors import PersistenceFailure
from dedup_engine.store import (
    DUPLICATE_NS,
    MemoryStoreBackend,
    RecordStore,
    RedisStoreBackend,
    make_key,
)
from dedup_engine.store.base import StoreEntry


class TestMemoryStoreBackend:
    """Test memory store backend."""

    @pytest_asyncio.fixture
    async def memory_store(self):
        """Create memory store backend for testing."""
        backend = MemoryStoreBackend(name="test_memory")
        yield backend
        await backend.close()

    @pytest.mark.asyncio
    async def test_basic_operations(self, memory_store):
        """Test basic store operations."""
        assert await memory_store.set("key1", {"value": 1})
        assert await memory_store.get("key1") == {"value": 1}
        assert await memory_store.exists("key1")
        assert not await memory_store.exists("nonexistent")

        assert await memory_store.delete("key1")
        assert not await memory_store.delete("key1")
        assert await memory_store.get("key1") is None

    @pytest.mark.asyncio
    async def test_ttl_expiration(self, memory_store):
        """Test TTL expiration."""
        await memory_store.set("expiring_key", "value", ttl=0.1)
        await memory_store.set("forever_key", "value", ttl=0)
        assert await memory_store.exists("expiring_key")

        await asyncio.sleep(0.2)

        assert await memory_store.get("expiring_key") is None
        assert await memory_store.get("forever_key") == "value"

    @pytest.mark.asyncio
    async def test_unbounded_by_default(self, memory_store):
        """Records are never evicted without a size bound."""
        for i in range(500):
            await memory_store.set(f"key{i}", i)
        assert await memory_store.get("key0") == 0
        assert memory_store.get_stats()["size"] == 500

    @pytest.mark.asyncio
    async def test_lru_eviction(self):
        """Test LRU eviction when a bound is set."""
        backend = MemoryStoreBackend(max_size=3)
        for i in range(3):
            await backend.set(f"key{i}", i)
        await backend.get("key0")
        await backend.set("key3", 3)

        assert await backend.exists("key0")
        assert not await backend.exists("key1")

    @pytest.mark.asyncio
    async def test_keys_by_prefix(self, memory_store):
        """Test namespace listing skips expired keys."""
        await memory_store.set("duplicate:a", 1)
        await memory_store.set("duplicate:b", 2, ttl=0.05)
        await memory_store.set("workflow:a", 3)
        await asyncio.sleep(0.1)

        assert await memory_store.keys("duplicate:") == ["duplicate:a"]
        assert len(await memory_store.keys()) == 2

    @pytest.mark.asyncio
    async def test_cleanup_and_stats(self, memory_store):
        """Test cleanup of expired entries and statistics."""
        await memory_store.set("a", 1, ttl=0.05)
        await memory_store.set("b", 2)
        await asyncio.sleep(0.1)
        assert await memory_store.cleanup_expired() == 1

        await memory_store.get("b")
        await memory_store.get("missing")
        stats = memory_store.get_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate_percent"] == 50.0

    def test_entry_without_ttl_never_expires(self):
        from datetime import datetime, timedelta

        entry = StoreEntry(key="k", data=1, timestamp=datetime.now() - timedelta(days=365))
        assert not entry.is_expired()
        assert entry.remaining_ttl() == 0

    @pytest.mark.asyncio
    async def test_remaining_ttl(self, memory_store):
        await memory_store.set("short", 1, ttl=60)
        await memory_store.set("forever", 2)

        assert 59 < await memory_store.ttl("short") <= 60
        assert await memory_store.ttl("forever") == 0
        assert await memory_store.ttl("missing") is None


class TestRedisStoreBackend:
    """Test Redis store backend (requires a running Redis server)."""

    @pytest_asyncio.fixture
    async def redis_store(self):
        backend = RedisStoreBackend(redis_url="redis://localhost:6379/15", key_prefix="test-dedup:", name="test_redis")
        if not await backend._ensure_connected():
            await backend.close()
            pytest.skip("Redis server not available")
        yield backend
        await backend.clear()
        await backend.close()

    @pytest.mark.asyncio
    async def test_basic_operations(self, redis_store):
        """Test set, get, exists and delete round trip."""
        data = {"nested": {"data": [1, 2, 3]}, "unicode": "üñîçödé"}
        assert await redis_store.set("test_key", data, ttl=3600)
        assert await redis_store.get("test_key") == data
        assert await redis_store.exists("test_key")
        assert await redis_store.delete("test_key")
        assert not await redis_store.exists("test_key")

    @pytest.mark.asyncio
    async def test_keys_are_unprefixed(self, redis_store):
        await redis_store.set("duplicate:a", 1)
        await redis_store.set("workflow:a", 2)
        assert await redis_store.keys("duplicate:") == ["duplicate:a"]

    @pytest.mark.asyncio
    async def test_remaining_ttl(self, redis_store):
        await redis_store.set("short", 1, ttl=60)
        await redis_store.set("forever", 2)

        assert 0 < await redis_store.ttl("short") <= 60
        assert await redis_store.ttl("forever") == 0
        assert await redis_store.ttl("missing") is None

    @pytest.mark.asyncio
    async def test_connection_failure(self):
        """Test Redis backend behavior when connection fails."""
        backend = RedisStoreBackend(redis_url="redis://127.0.0.1:1", name="test_redis_fail")
        assert await backend.set("test_key", "test_value") is False
        assert await backend.get("test_key") is None
        assert await backend.keys() == []
        assert backend.get_stats()["errors"] >= 1
        await backend.close()


class TestRecordStore:
    """Test the namespaced record store."""

    def test_make_key(self):
        assert make_key(DUPLICATE_NS, "dup_1") == "duplicate:dup_1"
        assert make_key("backup", "dup_1", 1700) == "backup:dup_1:1700"

    @pytest.mark.asyncio
    async def test_read_through_cache(self, store):
        await store.put("duplicate:a", {"v": 1})
        assert await store.get("duplicate:a") == {"v": 1}

        await store.backend.set("duplicate:a", {"v": 2})
        assert await store.get("duplicate:a") == {"v": 1}
        store.invalidate("duplicate:a")
        assert await store.get("duplicate:a") == {"v": 2}

    @pytest.mark.asyncio
    async def test_cached_value_expires_with_backend(self, store):
        await store.put("processed_record:a", {"x": 1}, ttl=0.1)
        assert await store.get("processed_record:a") == {"x": 1}

        await asyncio.sleep(0.2)

        assert await store.backend.get("processed_record:a") is None
        assert await store.get("processed_record:a") is None

    @pytest.mark.asyncio
    async def test_read_through_keeps_remaining_ttl(self, store):
        await store.backend.set("backup:a", "snapshot", ttl=0.1)
        assert await store.get("backup:a") == "snapshot"

        await asyncio.sleep(0.2)

        assert await store.get("backup:a") is None

    @pytest.mark.asyncio
    async def test_unknown_ttl_not_cached(self):
        backend = MemoryStoreBackend()
        backend.ttl = AsyncMock(return_value=None)
        record_store = RecordStore(backend=backend)
        await backend.set("duplicate:a", 1)

        assert await record_store.get("duplicate:a") == 1
        assert record_store.get_stats()["local_cache_size"] == 0

    @pytest.mark.asyncio
    async def test_local_cache_bounded(self):
        record_store = RecordStore(backend=MemoryStoreBackend(), local_cache_size=2)
        for key in ("duplicate:a", "duplicate:b", "duplicate:c"):
            await record_store.put(key, key)

        assert record_store.get_stats()["local_cache_size"] == 2
        assert await record_store.get("duplicate:a") == "duplicate:a"

    @pytest.mark.asyncio
    async def test_local_cache_disabled(self):
        record_store = RecordStore(backend=MemoryStoreBackend(), local_cache_size=0)
        await record_store.put("duplicate:a", 1)
        await record_store.backend.set("duplicate:a", 2)
        assert await record_store.get("duplicate:a") == 2
        assert record_store.get_stats()["local_cache_size"] == 0

    @pytest.mark.asyncio
    async def test_load_namespace(self, store):
        await store.put("duplicate:a", 1)
        await store.put("duplicate:b", 2)
        await store.put("workflow:a", 3)
        assert sorted(await store.load_namespace(DUPLICATE_NS)) == [1, 2]

        assert await store.delete("duplicate:a")
        assert await store.load_namespace(DUPLICATE_NS) == [2]

    @pytest.mark.asyncio
    async def test_failed_write_raises(self):
        backend = MemoryStoreBackend()
        backend.set = AsyncMock(return_value=False)
        record_store = RecordStore(backend=backend)

        with pytest.raises(PersistenceFailure):
            await record_store.put("duplicate:a", 1)
        assert await record_store.get("duplicate:a") is None

    @pytest.mark.asyncio
    async def test_uninitialized(self):
        with pytest.raises(PersistenceFailure):
            await RecordStore(Config(_env_file=None)).put("k", 1)

    @pytest.mark.asyncio
    async def test_redis_falls_back_to_memory(self):
        config = Config(_env_file=None, store_backend="redis", redis_url="redis://127.0.0.1:1")
        record_store = RecordStore(config)
        assert await record_store.initialize()
        assert record_store.backend.name == "memory"
        await record_store.put("duplicate:a", 1)
        assert await record_store.get("duplicate:a") == 1
        await record_store.close()
