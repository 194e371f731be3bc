"""Get-or-compute with stale-while-revalidate, dedup and retry.

One in-flight task per key covers both the cache lookup and the compute, so
concurrent callers for the same key observe a single invocation of the
compute function. Callers await the shared task through ``asyncio.shield``:
a cancelled caller stops waiting without cancelling the work.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
import weakref
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from tenacity import AsyncRetrying, RetryCallState, stop_after_attempt, wait_exponential

from cachestack.config import CacheConfig
from cachestack.duration import now_ms
from cachestack.errors import DeserializationError, ProviderError
from cachestack.events import (
    CacheEventType,
    ComputeEvent,
    ErrorEvent,
    EventBus,
    RefreshEvent,
)
from cachestack.log import get_logger
from cachestack.metadata import MetadataIndex
from cachestack.providers import ProviderOrchestrator
from cachestack.serialization import EntryCodec
from cachestack.types import CacheEntry, CacheOptions, Clock, ComputeResult

logger = get_logger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]

_DEFAULT_OPTIONS = CacheOptions()


class ComputeEngine:
    """Computes missing values, refreshes stale ones and writes them back."""

    def __init__(
        self,
        providers: ProviderOrchestrator,
        metadata: MetadataIndex,
        codec: EntryCodec,
        *,
        config: CacheConfig | None = None,
        events: EventBus | None = None,
        clock: Clock = now_ms,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._providers = providers
        self._metadata = metadata
        self._codec = codec
        self._config = config or CacheConfig()
        self._events = events or EventBus()
        self._clock = clock
        self._sleep = sleep
        self._in_flight: dict[str, asyncio.Task[ComputeResult[Any]]] = {}
        self._refresh_tasks: dict[str, asyncio.Task[ComputeResult[Any]]] = {}
        self._refresh_after: dict[str, int] = {}
        self._refresh_set: weakref.WeakSet[asyncio.Task[Any]] = weakref.WeakSet()

    # -- public API -----------------------------------------------------

    async def get_or_compute(
        self,
        key: str,
        fn: Callable[[], Awaitable[T]],
        options: CacheOptions | None = None,
    ) -> ComputeResult[T]:
        """Return the cached value for ``key`` or compute and cache it.

        A cached value past its refresh threshold is returned with
        ``stale=True`` and, when background refresh is enabled, recomputed
        without blocking the caller.
        """
        task = self._in_flight.get(key)
        if task is not None:
            try:
                return await asyncio.shield(task)
            except asyncio.CancelledError:
                # A cancelled refresh means the key was deleted meanwhile
                if not task.cancelled() or task not in self._refresh_set:
                    raise
            except Exception:
                if task not in self._refresh_set:
                    raise
                # Failed refresh: the previous value is still cached

        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.create_task(self._lookup_or_compute(key, fn, options))
            self._track(key, task)
        return await asyncio.shield(task)

    async def store(
        self,
        key: str,
        value: Any,
        options: CacheOptions | None = None,
        *,
        compute_time: float | None = None,
    ) -> CacheEntry:
        """Encode ``value``, write it to every provider and update metadata."""
        opts = options or _DEFAULT_OPTIONS
        ttl = self.resolve_ttl(opts)
        entry = self._codec.encode(
            value,
            ttl=ttl,
            compute_time=compute_time,
            compression=opts.compression,
            compression_threshold=opts.compression_threshold,
        )
        await self._providers.set(key, entry)
        self._metadata.set(
            key,
            tags=opts.tags,
            size=entry.size,
            ttl=ttl,
            compute_time=compute_time,
            refreshed_at=entry.refreshed_at,
        )
        return entry

    def schedule_refresh(
        self,
        key: str,
        fn: Callable[[], Awaitable[Any]],
        options: CacheOptions | None = None,
    ) -> bool:
        """Start a background refresh unless one ran within the cool-down."""
        now = self._clock()
        self._prune_cooldowns(now)
        running = self._refresh_tasks.get(key)
        if running is not None and not running.done():
            return False
        if key in self._refresh_after:
            return False

        self._refresh_after[key] = now + self._config.refresh_cooldown_ms
        task = asyncio.create_task(self._refresh(key, fn, options))
        self._refresh_tasks[key] = task
        self._refresh_set.add(task)
        task.add_done_callback(lambda t: self._forget(self._refresh_tasks, key, t))
        # Later callers wait for the fresh value
        self._track(key, task)
        logger.debug("refresh_scheduled", key=key)
        return True

    def cancel_background_refresh(self, key: str) -> bool:
        """Stop a running refresh of ``key`` and drop its cool-down record.

        A cancelled refresh never writes its value back, so a deleted key
        stays deleted. Returns True if there was anything to cancel.
        """
        task = self._refresh_tasks.pop(key, None)
        running = False
        if task is not None and not task.done():
            running = True
            task.cancel()
            if self._in_flight.get(key) is task:
                del self._in_flight[key]
            logger.debug("refresh_cancelled", key=key)
        return self._refresh_after.pop(key, None) is not None or running

    def cancel_all_refreshes(self) -> None:
        for key in list(self._refresh_tasks):
            self.cancel_background_refresh(key)
        self._refresh_after.clear()

    def get_compute_status(self) -> dict[str, int]:
        self._prune_cooldowns(self._clock())
        return {
            "active_computes": sum(
                1 for t in self._in_flight.values() if t not in self._refresh_set
            ),
            "active_refreshes": sum(1 for t in self._refresh_tasks.values() if not t.done()),
            "scheduled_refreshes": len(self._refresh_after),
        }

    async def wait_for_background(self) -> None:
        """Wait for running refreshes to settle."""
        tasks = [t for t in self._refresh_tasks.values() if not t.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def close(self) -> None:
        tasks = [*self._in_flight.values(), *self._refresh_tasks.values()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        self._refresh_after.clear()

    def is_stale(self, refreshed_at: int | None, options: CacheOptions | None = None) -> bool:
        """True when ``now - refreshed_at > ttl * threshold * 1000``."""
        if refreshed_at is None:
            return True
        opts = options or _DEFAULT_OPTIONS
        ttl = opts.ttl or self._config.default_ttl_s
        threshold = opts.refresh_threshold or self._config.refresh_threshold
        return self._clock() - refreshed_at > ttl * threshold * 1000

    def resolve_ttl(self, options: CacheOptions | None) -> float:
        if options is None or options.ttl is None:
            return self._config.default_ttl_s
        return options.ttl

    # -- internals ------------------------------------------------------

    def _prune_cooldowns(self, now: int) -> None:
        expired = [key for key, until in self._refresh_after.items() if until <= now]
        for key in expired:
            del self._refresh_after[key]

    def _track(self, key: str, task: asyncio.Task[Any]) -> None:
        self._in_flight[key] = task
        task.add_done_callback(lambda t: self._forget(self._in_flight, key, t))

    @staticmethod
    def _forget(
        registry: dict[str, asyncio.Task[Any]], key: str, task: asyncio.Task[Any]
    ) -> None:
        if registry.get(key) is task:
            del registry[key]
        # Mark the outcome as observed even if every caller went away
        if not task.cancelled():
            task.exception()

    async def _lookup_or_compute(
        self,
        key: str,
        fn: Callable[[], Awaitable[T]],
        options: CacheOptions | None,
    ) -> ComputeResult[T]:
        try:
            entry = await self._providers.get(key)
        except ProviderError as e:
            logger.warning("compute_lookup_failed", key=key, error=repr(e))
            entry = None

        if entry is not None:
            try:
                value = self._codec.decode(entry)
            except DeserializationError as e:
                logger.warning("cached_value_unreadable", key=key, error=repr(e))
                self._events.emit(ErrorEvent(operation="get_or_compute", error=e, key=key))
            else:
                return self._serve_cached(key, value, entry, fn, options)

        return await self._compute_and_store(key, fn, options)

    def _serve_cached(
        self,
        key: str,
        value: T,
        entry: CacheEntry,
        fn: Callable[[], Awaitable[T]],
        options: CacheOptions | None,
    ) -> ComputeResult[T]:
        meta = self._metadata.get(key)
        self._metadata.record_access(key)
        refreshed_at = entry.refreshed_at
        compute_time = entry.compute_time
        if meta is not None:
            if meta.refreshed_at is not None:
                refreshed_at = meta.refreshed_at
            if meta.compute_time is not None:
                compute_time = meta.compute_time

        stale = self.is_stale(refreshed_at, options)
        background = (
            options.background_refresh
            if options is not None and options.background_refresh is not None
            else self._config.background_refresh
        )
        if stale and background:
            self.schedule_refresh(key, fn, options)
        return ComputeResult(value=value, compute_time=compute_time or 0.0, stale=stale)

    async def _compute_and_store(
        self,
        key: str,
        fn: Callable[[], Awaitable[T]],
        options: CacheOptions | None,
    ) -> ComputeResult[T]:
        self._events.emit(ComputeEvent(type=CacheEventType.COMPUTE_START, key=key))
        started = time.perf_counter()
        try:
            value = await self._run_with_retry(key, fn)
            compute_time = (time.perf_counter() - started) * 1000
            await self.store(key, value, options, compute_time=compute_time)
        except Exception as e:
            logger.warning("compute_failed", key=key, error=repr(e))
            self._events.emit(
                ComputeEvent(type=CacheEventType.COMPUTE_ERROR, key=key, error=e)
            )
            raise
        self._events.emit(
            ComputeEvent(
                type=CacheEventType.COMPUTE_SUCCESS, key=key, compute_time=compute_time
            )
        )
        return ComputeResult(value=value, compute_time=compute_time, stale=False)

    async def _run_with_retry(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        def log_retry(state: RetryCallState) -> None:
            logger.warning(
                "compute_retry",
                key=key,
                attempt=state.attempt_number,
                error=repr(state.outcome.exception()) if state.outcome else None,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._config.max_retries),
            wait=wait_exponential(multiplier=self._config.retry_delay_s, exp_base=2),
            sleep=self._sleep,
            before_sleep=log_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                value = await fn()
        return value

    async def _refresh(
        self,
        key: str,
        fn: Callable[[], Awaitable[T]],
        options: CacheOptions | None,
    ) -> ComputeResult[T]:
        self._events.emit(RefreshEvent(type=CacheEventType.REFRESH_START, key=key))
        try:
            result = await self._compute_and_store(key, fn, options)
        except Exception as e:
            logger.error("background_refresh_failed", key=key, error=repr(e))
            self._events.emit(
                RefreshEvent(type=CacheEventType.REFRESH_ERROR, key=key, error=e)
            )
            raise
        self._events.emit(
            RefreshEvent(
                type=CacheEventType.REFRESH_SUCCESS,
                key=key,
                compute_time=result.compute_time,
            )
        )
        return result


__all__ = ["ComputeEngine"]
