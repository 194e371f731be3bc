"""Base adapter protocol for storage backends."""

from collections.abc import Iterable, Mapping
from typing import Any, Protocol, runtime_checkable

from cachestack.types import CacheEntry, HealthStatus


@runtime_checkable
class AsyncStorageAdapter(Protocol):
    """Async storage adapter interface.

    Adapters store opaque CacheEntry objects. ``ttl`` is in seconds and, when
    given, takes precedence over ``entry.expires_at``.
    """

    async def get(self, key: str) -> CacheEntry | None:
        """Get a cache entry by key. Expired entries read as missing."""
        ...

    async def set(self, key: str, entry: CacheEntry, *, ttl: float | None = None) -> None:
        """Store a cache entry."""
        ...

    async def delete(self, key: str) -> bool:
        """Delete a cache entry. Returns True if something was removed."""
        ...

    async def has(self, key: str) -> bool:
        """Check for a live entry."""
        ...

    async def clear(self) -> None:
        """Clear all cached entries."""
        ...

    async def keys(self, pattern: str | None = None) -> list[str]:
        """List live keys, optionally filtered by a glob pattern."""
        ...

    async def get_many(self, keys: Iterable[str]) -> dict[str, CacheEntry | None]:
        """Get several entries at once."""
        ...

    async def set_many(
        self, entries: Mapping[str, CacheEntry], *, ttl: float | None = None
    ) -> None:
        """Store several entries at once."""
        ...

    async def get_stats(self) -> dict[str, Any]:
        """Adapter-level counters."""
        ...

    async def get_metadata(self, key: str) -> dict[str, Any] | None:
        """Entry bookkeeping without the value body."""
        ...

    async def health_check(self) -> HealthStatus:
        """Probe the backend."""
        ...

    async def disconnect(self) -> None:
        """Disconnect from the storage backend."""
        ...


class IterativeBatchMixin:
    """Batch operations for adapters without native multi-key support."""

    async def get_many(self, keys: Iterable[str]) -> dict[str, CacheEntry | None]:
        return {key: await self.get(key) for key in keys}  # type: ignore[attr-defined]

    async def set_many(
        self, entries: Mapping[str, CacheEntry], *, ttl: float | None = None
    ) -> None:
        for key, entry in entries.items():
            await self.set(key, entry, ttl=ttl)  # type: ignore[attr-defined]


def entry_metadata(entry: CacheEntry) -> dict[str, Any]:
    """Describe an entry without its value body."""
    return {
        "created_at": entry.created_at,
        "expires_at": entry.expires_at,
        "size": entry.size,
        "compressed": entry.compressed,
        "algorithm": entry.algorithm,
        "checksum": entry.checksum,
        "original_size": entry.original_size,
        "refreshed_at": entry.refreshed_at,
        "compute_time": entry.compute_time,
    }
