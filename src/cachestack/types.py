"""Core types for cachestack."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Generic, Literal, TypeVar

T = TypeVar("T")

# Duration type alias
Duration = str | int | float  # "30s", "5m", "250ms" or seconds

# Millisecond clock
Clock = Callable[[], int]

ComputeFn = Callable[[], Awaitable[T]]

ProviderStatus = Literal["healthy", "degraded", "failing"]


@dataclass(frozen=True, slots=True)
class CacheEntry:
    """A serialized value as handed to a storage adapter."""

    value: bytes
    created_at: int  # Unix timestamp ms
    expires_at: int | None  # None = no expiry
    size: int
    compressed: bool = False
    algorithm: str | None = None
    checksum: str | None = None
    original_size: int | None = None
    refreshed_at: int | None = None
    compute_time: float | None = None  # ms

    def is_expired(self, now: int) -> bool:
        return self.expires_at is not None and now >= self.expires_at


@dataclass(slots=True)
class EntryMetadata:
    """Bookkeeping for a cache key, owned by the metadata index."""

    key: str
    tags: set[str] = field(default_factory=set)
    created_at: int = 0
    updated_at: int = 0
    last_accessed: int = 0
    access_count: int = 0
    size: int | None = None
    ttl: float | None = None  # seconds
    expires_at: int | None = None
    compute_time: float | None = None
    refreshed_at: int | None = None


@dataclass(frozen=True, slots=True)
class CacheOptions:
    """Per-call options for writes and get-or-compute."""

    ttl: float | None = None  # seconds; None = config default, 0 = no expiry
    tags: tuple[str, ...] = ()
    refresh_threshold: float | None = None
    background_refresh: bool | None = None
    compression: bool | None = None
    compression_threshold: int | None = None


@dataclass(frozen=True, slots=True)
class ComputeResult(Generic[T]):
    """Outcome of get-or-compute."""

    value: T
    compute_time: float  # ms
    stale: bool


@dataclass(frozen=True, slots=True)
class ProviderHealth:
    """Health classification of a registered provider."""

    status: ProviderStatus
    error_count: int
    last_error: BaseException | None = None


@dataclass(slots=True)
class ProviderStats:
    """Rolling read counters for a provider, merged with adapter stats."""

    hits: int = 0
    misses: int = 0
    adapter: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class HealthStatus:
    """Result of an adapter health check."""

    status: str
    healthy: bool
    timestamp: int
    details: dict[str, Any] = field(default_factory=dict)
