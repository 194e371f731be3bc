"""Cache manager façade.

Wires providers, metadata, serialization, compute and the resilience guards
together behind one async API. Every instance owns its own state.

Usage:
    cache = create_cache(AsyncMemoryAdapter(), default_ttl="5m")
    async with cache:
        await cache.set("user:1", {"name": "Ada"}, tags=["users"])
        user = await cache.get("user:1")
        report = await cache.get_or_compute("report", build_report, ttl="1h")
        await cache.invalidate_by_tag("users")
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Mapping
from contextlib import asynccontextmanager
from typing import Any, TypeVar

from cachestack.adapters.base import AsyncStorageAdapter
from cachestack.circuit_breaker import CircuitBreaker
from cachestack.compute import ComputeEngine, Sleep
from cachestack.config import CacheConfig
from cachestack.duration import now_ms, parse_duration
from cachestack.errors import (
    CacheError,
    CacheTimeoutError,
    CircuitOpenError,
    InvalidArgumentError,
    ProviderError,
    RateLimitExceededError,
)
from cachestack.events import (
    CacheEvent,
    CacheEventType,
    ClearEvent,
    DeleteEvent,
    ErrorEvent,
    EventBus,
    GetEvent,
    InvalidateEvent,
    SetEvent,
    StatsEvent,
)
from cachestack.log import get_logger
from cachestack.metadata import MetadataIndex
from cachestack.providers import ProviderOrchestrator
from cachestack.rate_limiter import RateLimiter
from cachestack.serialization import EntryCodec, Serializer
from cachestack.stats import CacheStatistics
from cachestack.types import CacheEntry, CacheOptions, Clock, Duration, HealthStatus
from cachestack.validation import validate_key, validate_keys, validate_options

logger = get_logger(__name__)

T = TypeVar("T")

# Admission-control errors are never degraded to a default value
_GUARD_ERRORS = (RateLimitExceededError, CircuitOpenError, CacheTimeoutError)


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000


class CacheManager:
    """Public cache API.

    Reads (``get``, ``has``, ``delete``) degrade to ``None``/``False`` on
    unexpected internal errors. Writes (``set``, ``get_or_compute``,
    ``clear``) re-raise. Invalid keys or options always raise before any
    I/O, as do rate-limit and circuit-breaker rejections.
    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        *,
        events: EventBus | None = None,
        clock: Clock = now_ms,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.config = config or CacheConfig()
        self.events = events or EventBus()
        self._clock = clock
        self.metadata = MetadataIndex(clock=clock)
        self.providers = ProviderOrchestrator(
            events=self.events,
            error_threshold=self.config.provider_error_threshold,
            clock=clock,
        )
        self._codec = EntryCodec(
            Serializer(
                compression=self.config.compression,
                compression_threshold=self.config.compression_threshold,
                compression_algorithm=self.config.compression_algorithm,
                compression_max_ratio=self.config.compression_max_ratio,
                checksum=self.config.checksum,
            ),
            clock=clock,
        )
        self.compute = ComputeEngine(
            self.providers,
            self.metadata,
            self._codec,
            config=self.config,
            events=self.events,
            clock=clock,
            sleep=sleep,
        )
        self.rate_limiter = RateLimiter(self.config.rate_limits, clock=clock)
        self.stats = CacheStatistics(clock=clock)
        self._breakers: dict[str, CircuitBreaker] = {}
        self._stats_task: asyncio.Task[None] | None = None
        self.events.subscribe(CacheEventType.COMPUTE_SUCCESS, self._on_compute)

    # -- lifecycle ------------------------------------------------------

    async def __aenter__(self) -> CacheManager:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def start(self) -> None:
        """Start periodic tasks: rate-limit sweep and stats updates."""
        self.rate_limiter.start()
        interval = self.config.stats_interval_s
        if interval > 0 and (self._stats_task is None or self._stats_task.done()):
            self._stats_task = asyncio.create_task(self._stats_loop(interval))
        logger.info("cache_started", **self.config.summary())

    async def close(self) -> None:
        """Stop background work and disconnect every provider."""
        task, self._stats_task = self._stats_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self.rate_limiter.close()
        await self.compute.close()
        await self.providers.disconnect()
        logger.info("cache_closed")

    async def _stats_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.stats.sample()
            self.events.emit(StatsEvent(stats=self.stats.snapshot()))

    # -- providers ------------------------------------------------------

    def register_provider(
        self, name: str, adapter: AsyncStorageAdapter, priority: int = 0
    ) -> None:
        self.providers.register_provider(name, adapter, priority)

    def unregister_provider(self, name: str) -> bool:
        return self.providers.unregister_provider(name)

    # -- guards ---------------------------------------------------------

    def _breaker(self, operation: str) -> CircuitBreaker | None:
        if self.config.circuit_breaker is None:
            return None
        breaker = self._breakers.get(operation)
        if breaker is None:
            breaker = CircuitBreaker(
                self.config.circuit_breaker, name=operation, clock=self._clock
            )
            self._breakers[operation] = breaker
        return breaker

    @asynccontextmanager
    async def _guard(self, operation: str) -> AsyncIterator[None]:
        """Rate limiter, then circuit breaker, then the wrapped work.

        Only provider failures count against the breaker.
        """
        await self.rate_limiter.check_limit(operation)
        breaker = self._breaker(operation)
        if breaker is not None:
            breaker.check()
        try:
            yield
        except ProviderError:
            if breaker is not None:
                breaker.record_failure()
            raise
        except BaseException:
            if breaker is not None:
                breaker.release()
            raise
        if breaker is not None:
            breaker.record_success()

    def _report_error(
        self, operation: str, error: BaseException, key: str | None = None
    ) -> None:
        self.stats.record_error()
        logger.warning(
            "cache_operation_failed",
            operation=operation,
            key=key,
            error=repr(error),
        )
        self.events.emit(ErrorEvent(operation=operation, error=error, key=key))

    def _on_compute(self, event: CacheEvent) -> None:
        compute_time = getattr(event, "compute_time", None)
        if compute_time is not None:
            self.stats.record_timing("compute", compute_time)

    # -- options --------------------------------------------------------

    def _options(
        self,
        *,
        ttl: Duration | None = None,
        tags: Iterable[str] = (),
        refresh_threshold: float | None = None,
        background_refresh: bool | None = None,
        compression: bool | None = None,
    ) -> CacheOptions:
        if ttl is not None:
            try:
                ttl = parse_duration(ttl)
            except (TypeError, ValueError) as e:
                raise InvalidArgumentError(str(e), operation="validate") from e
        if isinstance(tags, str):
            raise InvalidArgumentError(
                "Tags must be a collection of strings, got a single string",
                operation="validate",
            )
        options = CacheOptions(
            ttl=ttl,
            tags=tuple(tags),
            refresh_threshold=refresh_threshold,
            background_refresh=background_refresh,
            compression=compression,
        )
        validate_options(options)
        return options

    def _key(self, key: Any) -> str:
        return validate_key(key, max_length=self.config.max_key_length)

    # -- reads ----------------------------------------------------------

    async def get(self, key: str) -> Any | None:
        """Return the cached value or None."""
        key = self._key(key)
        started = time.perf_counter()
        self.events.emit(GetEvent(type=CacheEventType.GET, key=key))
        try:
            async with self._guard("get"):
                entry = await self.providers.get(key)
            value = self._codec.decode(entry) if entry is not None else None
        except _GUARD_ERRORS:
            raise
        except Exception as e:
            self._report_error("get", e, key)
            return None

        duration = _elapsed_ms(started)
        if entry is None:
            self.stats.record_miss(duration)
            self.events.emit(
                GetEvent(type=CacheEventType.GET_MISS, key=key, duration=duration)
            )
            logger.debug("cache_miss", key=key)
            return None
        self.metadata.record_access(key)
        self.stats.record_hit(duration)
        self.events.emit(GetEvent(type=CacheEventType.GET_HIT, key=key, duration=duration))
        logger.debug("cache_hit", key=key)
        return value

    async def has(self, key: str) -> bool:
        key = self._key(key)
        try:
            async with self._guard("has"):
                return await self.providers.has(key)
        except _GUARD_ERRORS:
            raise
        except Exception as e:
            self._report_error("has", e, key)
            return False

    async def get_many(self, keys: Iterable[str]) -> dict[str, Any | None]:
        """Values for several keys; missing or unreadable keys map to None."""
        keys = validate_keys(keys, max_length=self.config.max_key_length)
        try:
            async with self._guard("get_many"):
                entries = await self.providers.get_many(keys)
        except _GUARD_ERRORS:
            raise
        except Exception as e:
            self._report_error("get_many", e)
            return {key: None for key in keys}

        result: dict[str, Any | None] = {}
        for key in keys:
            entry = entries.get(key)
            if entry is None:
                self.stats.record_miss()
                result[key] = None
                continue
            try:
                result[key] = self._codec.decode(entry)
            except CacheError as e:
                self._report_error("get_many", e, key)
                result[key] = None
                continue
            self.metadata.record_access(key)
            self.stats.record_hit()
        return result

    async def keys(self, pattern: str | None = None) -> list[str]:
        async with self._guard("keys"):
            return await self.providers.keys(pattern)

    # -- writes ---------------------------------------------------------

    async def set(
        self,
        key: str,
        value: Any,
        *,
        ttl: Duration | None = None,
        tags: Iterable[str] = (),
        compression: bool | None = None,
    ) -> None:
        """Store ``value`` in every provider. ``ttl=0`` means no expiry."""
        key = self._key(key)
        options = self._options(ttl=ttl, tags=tags, compression=compression)
        started = time.perf_counter()
        try:
            async with self._guard("set"):
                entry = await self.compute.store(key, value, options)
        except Exception as e:
            self._report_error("set", e, key)
            raise
        self.stats.record_set(entry.size, _elapsed_ms(started))
        self.events.emit(
            SetEvent(
                key=key,
                ttl=self.compute.resolve_ttl(options),
                size=entry.size,
                tags=options.tags,
            )
        )

    async def set_many(
        self,
        entries: Mapping[str, Any],
        *,
        ttl: Duration | None = None,
        tags: Iterable[str] = (),
    ) -> None:
        validate_keys(entries, max_length=self.config.max_key_length)
        options = self._options(ttl=ttl, tags=tags)
        ttl_s = self.compute.resolve_ttl(options)
        try:
            async with self._guard("set_many"):
                encoded: dict[str, CacheEntry] = {
                    key: self._codec.encode(value, ttl=ttl_s)
                    for key, value in entries.items()
                }
                await self.providers.set_many(encoded)
        except Exception as e:
            self._report_error("set_many", e)
            raise
        for key, entry in encoded.items():
            self.metadata.set(
                key,
                tags=options.tags,
                size=entry.size,
                ttl=ttl_s,
                refreshed_at=entry.refreshed_at,
            )
            self.stats.record_set(entry.size)
            self.events.emit(SetEvent(key=key, ttl=ttl_s, size=entry.size, tags=options.tags))

    async def get_or_compute(
        self,
        key: str,
        fn: Callable[[], Awaitable[T]],
        *,
        ttl: Duration | None = None,
        tags: Iterable[str] = (),
        refresh_threshold: float | None = None,
        background_refresh: bool | None = None,
    ) -> T:
        """Return the cached value, computing and caching it on a miss."""
        key = self._key(key)
        options = self._options(
            ttl=ttl,
            tags=tags,
            refresh_threshold=refresh_threshold,
            background_refresh=background_refresh,
        )
        started = time.perf_counter()
        try:
            async with self._guard("get_or_compute"):
                result = await self.compute.get_or_compute(key, fn, options)
        except Exception as e:
            self._report_error("get_or_compute", e, key)
            raise
        self.stats.record_timing("get_or_compute", _elapsed_ms(started))
        return result.value

    async def delete(self, key: str) -> bool:
        key = self._key(key)
        started = time.perf_counter()
        try:
            async with self._guard("delete"):
                self.compute.cancel_background_refresh(key)
                deleted = await self.providers.delete(key)
        except _GUARD_ERRORS:
            raise
        except Exception as e:
            self._report_error("delete", e, key)
            return False
        self.metadata.delete(key)
        self.stats.record_delete(_elapsed_ms(started))
        self.events.emit(DeleteEvent(key=key, deleted=deleted))
        return deleted

    async def clear(self) -> None:
        removed = len(self.metadata)
        try:
            async with self._guard("clear"):
                self.compute.cancel_all_refreshes()
                await self.providers.clear()
        except Exception as e:
            self._report_error("clear", e)
            raise
        self.metadata.clear()
        self.events.emit(ClearEvent(entries_removed=removed))
        logger.info("cache_cleared", entries_removed=removed)

    # -- invalidation ---------------------------------------------------

    async def _invalidate(self, keys: list[str], **scope: str) -> int:
        removed = 0
        async with self._guard("invalidate"):
            for key in keys:
                self.compute.cancel_background_refresh(key)
                try:
                    if await self.providers.delete(key):
                        removed += 1
                except ProviderError as e:
                    self._report_error("invalidate", e, key)
                self.metadata.delete(key)
        self.events.emit(InvalidateEvent(keys=tuple(keys), **scope))
        logger.info("cache_invalidated", keys=len(keys), removed=removed, **scope)
        return removed

    async def invalidate_by_tag(self, tag: str) -> int:
        """Delete every key carrying ``tag``. Returns how many were removed."""
        if not isinstance(tag, str) or not tag:
            raise InvalidArgumentError("Tag must be a non-empty string", operation="validate")
        return await self._invalidate(self.metadata.find_by_tag(tag), tag=tag)

    async def invalidate_by_prefix(self, prefix: str) -> int:
        """Delete every tracked key starting with ``prefix``."""
        if not isinstance(prefix, str) or not prefix:
            raise InvalidArgumentError(
                "Prefix must be a non-empty string", operation="validate"
            )
        return await self._invalidate(self.metadata.find_by_prefix(prefix), prefix=prefix)

    async def purge_expired(self) -> int:
        """Evict keys whose metadata says they have expired."""
        return await self._invalidate(self.metadata.find_expired())

    # -- introspection --------------------------------------------------

    async def get_stats(self) -> dict[str, Any]:
        providers = await self.providers.get_stats()
        return {
            "manager": self.stats.snapshot(),
            "providers": {name: dataclasses.asdict(s) for name, s in providers.items()},
            "health": {
                name: {"status": h.status, "error_count": h.error_count}
                for name, h in self.providers.get_provider_health().items()
            },
            "compute": self.compute.get_compute_status(),
            "metadata": {"keys": len(self.metadata)},
            "rate_limits": {
                op: self.rate_limiter.get_stats(op) for op in self.config.rate_limits
            },
            "circuit_breakers": {op: b.get_stats() for op, b in self._breakers.items()},
        }

    async def health_check(self) -> HealthStatus:
        checks = await self.providers.health_check()
        healthy = sum(1 for h in checks.values() if h.healthy)
        if checks and healthy == len(checks):
            status = "healthy"
        elif healthy:
            status = "degraded"
        else:
            status = "unhealthy"
        return HealthStatus(
            status=status,
            healthy=healthy > 0,
            timestamp=self._clock(),
            details={
                "providers": {name: h.status for name, h in checks.items()},
                "config": self.config.summary(),
            },
        )


def _provider_name(adapter: AsyncStorageAdapter) -> str:
    name = type(adapter).__name__.lower()
    name = name.removeprefix("async").removesuffix("adapter")
    return name or "provider"


def create_cache(
    *adapters: AsyncStorageAdapter,
    events: EventBus | None = None,
    clock: Clock = now_ms,
    **config: Any,
) -> CacheManager:
    """Create a cache manager with ``adapters`` registered in the given order.

    Args:
        adapters: Storage adapters, fastest first
        events: Event bus to publish to (default: a new one)
        clock: Millisecond clock
        **config: CacheConfig fields, e.g. ``default_ttl="5m"``

    Returns:
        CacheManager with providers at priorities 0, 1, 2, ...
    """
    manager = CacheManager(CacheConfig(**config), events=events, clock=clock)
    for priority, adapter in enumerate(adapters):
        name = _provider_name(adapter)
        if manager.providers.get_provider(name) is not None:
            name = f"{name}{priority}"
        manager.register_provider(name, adapter, priority)
    return manager


__all__ = ["CacheManager", "create_cache"]
