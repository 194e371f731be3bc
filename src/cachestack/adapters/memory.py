"""In-memory storage adapter (async only)."""

import asyncio
import dataclasses
from collections import OrderedDict
from typing import Any

from cachestack.adapters.base import IterativeBatchMixin, entry_metadata
from cachestack.duration import now_ms
from cachestack.keys import matches_pattern
from cachestack.types import CacheEntry, Clock, HealthStatus


class AsyncMemoryAdapter(IterativeBatchMixin):
    """Async in-memory storage adapter with optional LRU eviction."""

    def __init__(self, max_items: int | None = None, *, clock: Clock = now_ms) -> None:
        self._cache: OrderedDict[str, CacheEntry] = OrderedDict()
        self._max_items = max_items
        self._clock = clock
        self._lock = asyncio.Lock()
        self._hits = 0
        self._misses = 0
        self._sets = 0
        self._deletes = 0
        self._evictions = 0

    def _live(self, key: str) -> CacheEntry | None:
        entry = self._cache.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._cache[key]
            return None
        return entry

    async def get(self, key: str) -> CacheEntry | None:
        """Get a cache entry by key."""
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                self._misses += 1
                return None
            self._cache.move_to_end(key)  # LRU touch
            self._hits += 1
            return entry

    async def set(self, key: str, entry: CacheEntry, *, ttl: float | None = None) -> None:
        """Store a cache entry."""
        if ttl is not None:
            expires_at = self._clock() + int(ttl * 1000) if ttl > 0 else None
            entry = dataclasses.replace(entry, expires_at=expires_at)
        async with self._lock:
            self._cache[key] = entry
            self._cache.move_to_end(key)
            self._sets += 1
            if self._max_items and len(self._cache) > self._max_items:
                self._cache.popitem(last=False)
                self._evictions += 1

    async def delete(self, key: str) -> bool:
        """Delete a cache entry."""
        async with self._lock:
            removed = self._cache.pop(key, None) is not None
            if removed:
                self._deletes += 1
            return removed

    async def has(self, key: str) -> bool:
        async with self._lock:
            return self._live(key) is not None

    async def clear(self) -> None:
        """Clear all cached entries."""
        async with self._lock:
            self._cache.clear()

    async def keys(self, pattern: str | None = None) -> list[str]:
        async with self._lock:
            return [
                key
                for key in list(self._cache)
                if self._live(key) is not None and matches_pattern(key, pattern)
            ]

    async def get_stats(self) -> dict[str, Any]:
        async with self._lock:
            return {
                "items": len(self._cache),
                "max_items": self._max_items,
                "size": sum(e.size for e in self._cache.values()),
                "hits": self._hits,
                "misses": self._misses,
                "sets": self._sets,
                "deletes": self._deletes,
                "evictions": self._evictions,
            }

    async def get_metadata(self, key: str) -> dict[str, Any] | None:
        async with self._lock:
            entry = self._live(key)
            return entry_metadata(entry) if entry is not None else None

    async def health_check(self) -> HealthStatus:
        return HealthStatus(
            status="healthy",
            healthy=True,
            timestamp=self._clock(),
            details={"items": len(self._cache)},
        )

    async def disconnect(self) -> None:
        """Disconnect from the storage backend (no-op for memory)."""
        pass
