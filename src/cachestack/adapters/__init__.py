"""Storage adapters for cachestack (async only)."""

from contextlib import suppress

from cachestack.adapters.base import AsyncStorageAdapter, IterativeBatchMixin
from cachestack.adapters.memory import AsyncMemoryAdapter

# Optional adapters - only available when dependencies are installed
with suppress(ImportError):
    from cachestack.adapters.redis import AsyncRedisAdapter

__all__ = [
    "AsyncMemoryAdapter",
    "AsyncRedisAdapter",
    "AsyncStorageAdapter",
    "IterativeBatchMixin",
]
