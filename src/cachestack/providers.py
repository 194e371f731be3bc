"""Multi-provider orchestration.

Reads go through providers in ascending priority order and stop at the first
hit. Writes fan out to every provider concurrently, each failure isolated.
A provider that keeps failing is demoted to the back of the order.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, TypeVar

from cachestack.adapters.base import AsyncStorageAdapter
from cachestack.duration import now_ms
from cachestack.errors import InvalidArgumentError, ProviderError
from cachestack.events import ErrorEvent, EventBus, ProviderEvent
from cachestack.log import get_logger
from cachestack.types import (
    CacheEntry,
    Clock,
    HealthStatus,
    ProviderHealth,
    ProviderStats,
)

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_ERROR_THRESHOLD = 5


@dataclass(slots=True)
class ProviderRegistration:
    name: str
    adapter: AsyncStorageAdapter
    priority: int
    error_count: int = 0
    last_error: BaseException | None = None
    stats: ProviderStats = field(default_factory=ProviderStats)


class ProviderOrchestrator:
    """Holds ranked storage adapters and fans operations out across them."""

    def __init__(
        self,
        *,
        events: EventBus | None = None,
        error_threshold: int = DEFAULT_ERROR_THRESHOLD,
        clock: Clock = now_ms,
    ) -> None:
        self._events = events or EventBus()
        self._error_threshold = error_threshold
        self._clock = clock
        self._providers: dict[str, ProviderRegistration] = {}
        self._ordered: list[ProviderRegistration] = []

    # -- registration ---------------------------------------------------

    def register_provider(
        self, name: str, adapter: AsyncStorageAdapter, priority: int = 0
    ) -> None:
        """Register (or replace) a provider. Lower priority is tried first."""
        if not name:
            raise InvalidArgumentError("Provider name is required", operation="register")
        if not isinstance(adapter, AsyncStorageAdapter):
            raise InvalidArgumentError(
                f"Provider {name!r} does not implement AsyncStorageAdapter",
                operation="register",
                provider=name,
            )
        # Replacing keeps the original registration slot for tie ordering
        self._providers[name] = ProviderRegistration(
            name=name, adapter=adapter, priority=priority
        )
        self._reorder()
        logger.info("provider_registered", provider=name, priority=priority)
        self._events.emit(ProviderEvent(provider=name, priority=priority))

    def unregister_provider(self, name: str) -> bool:
        removed = self._providers.pop(name, None) is not None
        if removed:
            self._reorder()
            logger.info("provider_unregistered", provider=name)
        return removed

    def get_provider(self, name: str) -> AsyncStorageAdapter | None:
        registration = self._providers.get(name)
        return registration.adapter if registration else None

    @property
    def providers(self) -> list[str]:
        """Provider names in current iteration order."""
        return [p.name for p in self._ordered]

    def priority_of(self, name: str) -> int | None:
        registration = self._providers.get(name)
        return registration.priority if registration else None

    def _reorder(self) -> None:
        self._ordered = sorted(self._providers.values(), key=lambda p: p.priority)

    # -- error bookkeeping ----------------------------------------------

    def _record_error(
        self,
        provider: ProviderRegistration,
        error: BaseException,
        operation: str,
        key: str | None = None,
    ) -> None:
        provider.error_count += 1
        provider.last_error = error
        logger.warning(
            "provider_error",
            provider=provider.name,
            operation=operation,
            key=key,
            error_count=provider.error_count,
            error=repr(error),
        )
        self._events.emit(
            ErrorEvent(operation=operation, error=error, key=key, provider=provider.name)
        )
        if provider.error_count > self._error_threshold:
            provider.priority = max(p.priority for p in self._providers.values()) + 1
            self._reorder()
            logger.warning(
                "provider_demoted", provider=provider.name, priority=provider.priority
            )

    def reset_error_counts(self) -> None:
        """Clear error counters. Demoted priorities are left as they are."""
        for provider in self._providers.values():
            provider.error_count = 0
            provider.last_error = None

    def get_provider_health(self) -> dict[str, ProviderHealth]:
        health: dict[str, ProviderHealth] = {}
        for provider in self._providers.values():
            count = provider.error_count
            if count == 0:
                status = "healthy"
            elif count <= self._error_threshold:
                status = "degraded"
            else:
                status = "failing"
            health[provider.name] = ProviderHealth(
                status=status, error_count=count, last_error=provider.last_error
            )
        return health

    # -- reads ----------------------------------------------------------

    async def get(self, key: str) -> CacheEntry | None:
        """Return the entry from the first provider that has it."""
        failures = 0
        for provider in list(self._ordered):
            try:
                entry = await provider.adapter.get(key)
            except Exception as e:
                failures += 1
                self._record_error(provider, e, "get", key)
                continue
            if entry is not None:
                provider.stats.hits += 1
                logger.debug("provider_hit", provider=provider.name, key=key)
                return entry
            provider.stats.misses += 1
        if failures and failures == len(self._ordered):
            raise ProviderError(
                "All providers failed", operation="get", key=key
            )
        return None

    async def has(self, key: str) -> bool:
        for provider in list(self._ordered):
            try:
                if await provider.adapter.has(key):
                    return True
            except Exception as e:
                self._record_error(provider, e, "has", key)
        return False

    async def get_many(self, keys: Iterable[str]) -> dict[str, CacheEntry | None]:
        """Read-through per key: each provider is asked only for keys still missing."""
        result: dict[str, CacheEntry | None] = {key: None for key in keys}
        missing = list(result)
        for provider in list(self._ordered):
            if not missing:
                break
            try:
                found = await provider.adapter.get_many(missing)
            except Exception as e:
                self._record_error(provider, e, "get_many")
                continue
            still_missing = []
            for key in missing:
                entry = found.get(key)
                if entry is None:
                    provider.stats.misses += 1
                    still_missing.append(key)
                else:
                    provider.stats.hits += 1
                    result[key] = entry
            missing = still_missing
        return result

    async def keys(self, pattern: str | None = None) -> list[str]:
        """Union of keys across providers, first-seen order."""
        seen: dict[str, None] = {}
        for provider in list(self._ordered):
            try:
                for key in await provider.adapter.keys(pattern):
                    seen.setdefault(key, None)
            except Exception as e:
                self._record_error(provider, e, "keys")
        return list(seen)

    # -- writes ---------------------------------------------------------

    async def _fan_out(
        self,
        operation: str,
        call: Callable[[AsyncStorageAdapter], Awaitable[T]],
        key: str | None = None,
    ) -> list[tuple[ProviderRegistration, T | BaseException]]:
        targets = list(self._ordered)
        results = await asyncio.gather(
            *(call(p.adapter) for p in targets), return_exceptions=True
        )
        outcomes = list(zip(targets, results))
        for provider, outcome in outcomes:
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                self._record_error(provider, outcome, operation, key)
        return outcomes

    def _require_providers(self, operation: str, key: str | None = None) -> None:
        if not self._ordered:
            raise ProviderError(
                "No providers registered", operation=operation, key=key
            )

    @staticmethod
    def _raise_if_all_failed(
        outcomes: list[tuple[ProviderRegistration, Any]],
        operation: str,
        key: str | None = None,
    ) -> None:
        errors = [o for _, o in outcomes if isinstance(o, BaseException)]
        if outcomes and len(errors) == len(outcomes):
            raise ProviderError(
                f"All providers failed to {operation}",
                operation=operation,
                key=key,
                details={"errors": [repr(e) for e in errors]},
            ) from errors[-1]

    async def set(self, key: str, entry: CacheEntry, *, ttl: float | None = None) -> None:
        """Write to every provider. Succeeds if at least one provider did."""
        self._require_providers("set", key)
        outcomes = await self._fan_out("set", lambda a: a.set(key, entry, ttl=ttl), key)
        self._raise_if_all_failed(outcomes, "set", key)
        logger.debug("provider_set", key=key, providers=len(outcomes))

    async def set_many(
        self, entries: Mapping[str, CacheEntry], *, ttl: float | None = None
    ) -> None:
        self._require_providers("set_many")
        outcomes = await self._fan_out("set_many", lambda a: a.set_many(entries, ttl=ttl))
        self._raise_if_all_failed(outcomes, "set_many")

    async def delete(self, key: str) -> bool:
        """Delete everywhere. True if any provider removed the key."""
        outcomes = await self._fan_out("delete", lambda a: a.delete(key), key)
        self._raise_if_all_failed(outcomes, "delete", key)
        return any(o is True for _, o in outcomes)

    async def clear(self) -> None:
        self._require_providers("clear")
        outcomes = await self._fan_out("clear", lambda a: a.clear())
        self._raise_if_all_failed(outcomes, "clear")

    # -- introspection --------------------------------------------------

    async def get_stats(self) -> dict[str, ProviderStats]:
        """Per-provider stats: adapter counters merged with read counters."""
        stats: dict[str, ProviderStats] = {}
        for provider in list(self._ordered):
            try:
                adapter_stats = await provider.adapter.get_stats()
            except Exception as e:
                self._record_error(provider, e, "get_stats")
                adapter_stats = {}
            stats[provider.name] = ProviderStats(
                hits=provider.stats.hits,
                misses=provider.stats.misses,
                adapter=dict(adapter_stats),
            )
        return stats

    async def health_check(self) -> dict[str, HealthStatus]:
        health: dict[str, HealthStatus] = {}
        for provider in list(self._ordered):
            try:
                health[provider.name] = await provider.adapter.health_check()
            except Exception as e:
                self._record_error(provider, e, "health_check")
                health[provider.name] = HealthStatus(
                    status="unhealthy",
                    healthy=False,
                    timestamp=self._clock(),
                    details={"error": repr(e)},
                )
        return health

    async def disconnect(self) -> None:
        for provider in list(self._ordered):
            try:
                await provider.adapter.disconnect()
            except Exception as e:
                logger.warning(
                    "provider_disconnect_failed", provider=provider.name, error=repr(e)
                )


__all__ = ["DEFAULT_ERROR_THRESHOLD", "ProviderOrchestrator", "ProviderRegistration"]
