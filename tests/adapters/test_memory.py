"""Tests for memory adapter."""

from cachestack import AsyncMemoryAdapter, AsyncStorageAdapter
from conftest import FakeClock, make_entry


class TestAsyncMemoryAdapter:
    """Tests for async AsyncMemoryAdapter."""

    def test_implements_protocol(self, async_adapter: AsyncMemoryAdapter) -> None:
        assert isinstance(async_adapter, AsyncStorageAdapter)

    async def test_get_nonexistent_returns_none(
        self, async_adapter: AsyncMemoryAdapter
    ) -> None:
        """Test that getting a nonexistent key returns None."""
        assert await async_adapter.get("nonexistent") is None

    async def test_set_and_get(self, async_adapter: AsyncMemoryAdapter) -> None:
        """Test setting and getting a value."""
        entry = make_entry(b'{"id":"123"}', checksum="abc", refreshed_at=1_000_000)
        await async_adapter.set("key1", entry)
        result = await async_adapter.get("key1")
        assert result == entry

    async def test_delete(self, async_adapter: AsyncMemoryAdapter) -> None:
        """Test deleting a value."""
        await async_adapter.set("key1", make_entry())
        assert await async_adapter.delete("key1") is True
        assert await async_adapter.delete("key1") is False
        assert await async_adapter.get("key1") is None

    async def test_clear(self, async_adapter: AsyncMemoryAdapter) -> None:
        """Test clearing all entries."""
        await async_adapter.set("key1", make_entry())
        await async_adapter.set("key2", make_entry())
        await async_adapter.clear()
        assert await async_adapter.get("key1") is None
        assert await async_adapter.get("key2") is None

    async def test_entry_expiry(
        self, async_adapter: AsyncMemoryAdapter, clock: FakeClock
    ) -> None:
        """Entries read as missing once expires_at has passed."""
        await async_adapter.set("key1", make_entry(expires_at=clock.now + 100))
        assert await async_adapter.has("key1")
        clock.advance(100)
        assert not await async_adapter.has("key1")
        assert await async_adapter.get("key1") is None

    async def test_ttl_overrides_entry_expiry(
        self, async_adapter: AsyncMemoryAdapter, clock: FakeClock
    ) -> None:
        await async_adapter.set("key1", make_entry(expires_at=clock.now + 100), ttl=10)
        clock.advance(5_000)
        assert await async_adapter.get("key1") is not None
        await async_adapter.set("key2", make_entry(expires_at=clock.now + 100), ttl=0)
        clock.advance(60_000)
        assert await async_adapter.get("key2") is not None

    async def test_keys_with_pattern(self, async_adapter: AsyncMemoryAdapter) -> None:
        await async_adapter.set("user:1", make_entry())
        await async_adapter.set("user:2", make_entry())
        await async_adapter.set("post:1", make_entry())
        assert await async_adapter.keys("user:*") == ["user:1", "user:2"]
        assert len(await async_adapter.keys()) == 3

    async def test_batch_operations(self, async_adapter: AsyncMemoryAdapter) -> None:
        await async_adapter.set_many({"a": make_entry(b"1"), "b": make_entry(b"2")})
        result = await async_adapter.get_many(["a", "b", "c"])
        assert result["a"] is not None and result["a"].value == b"1"
        assert result["b"] is not None and result["b"].value == b"2"
        assert result["c"] is None

    async def test_metadata_and_stats(self, async_adapter: AsyncMemoryAdapter) -> None:
        await async_adapter.set("key1", make_entry(b"abcd", compute_time=12.5))
        await async_adapter.get("key1")
        await async_adapter.get("missing")
        meta = await async_adapter.get_metadata("key1")
        assert meta is not None
        assert meta["size"] == 4
        assert meta["compute_time"] == 12.5
        assert "value" not in meta
        assert await async_adapter.get_metadata("missing") is None

        stats = await async_adapter.get_stats()
        assert stats["items"] == 1
        assert stats["size"] == 4
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["sets"] == 1

    async def test_health_check(self, async_adapter: AsyncMemoryAdapter) -> None:
        health = await async_adapter.health_check()
        assert health.healthy
        assert health.status == "healthy"
        await async_adapter.disconnect()

    async def test_lru_eviction(self) -> None:
        """Test LRU eviction when max_items is set."""
        adapter = AsyncMemoryAdapter(max_items=2)
        entry = make_entry(expires_at=None)

        await adapter.set("key1", entry)
        await adapter.set("key2", entry)
        await adapter.get("key1")  # key2 is now least recently used
        await adapter.set("key3", entry)

        assert await adapter.get("key2") is None
        assert await adapter.get("key1") is not None
        assert await adapter.get("key3") is not None
        assert (await adapter.get_stats())["evictions"] == 1
