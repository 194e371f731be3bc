"""Shared pytest fixtures."""

from typing import Any

import pytest

from cachestack import AsyncMemoryAdapter, CacheEntry, CacheManager, create_cache


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += int(ms)


class FlakyAdapter(AsyncMemoryAdapter):
    """Memory adapter that raises on every call while ``failing`` is set."""

    def __init__(self, *args: Any, failing: bool = False, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.failing = failing
        self.calls: list[str] = []

    def _maybe_fail(self, operation: str) -> None:
        self.calls.append(operation)
        if self.failing:
            raise ConnectionError(f"backend down during {operation}")

    async def get(self, key: str) -> CacheEntry | None:
        self._maybe_fail("get")
        return await super().get(key)

    async def set(self, key: str, entry: CacheEntry, *, ttl: float | None = None) -> None:
        self._maybe_fail("set")
        await super().set(key, entry, ttl=ttl)

    async def delete(self, key: str) -> bool:
        self._maybe_fail("delete")
        return await super().delete(key)

    async def has(self, key: str) -> bool:
        self._maybe_fail("has")
        return await super().has(key)

    async def clear(self) -> None:
        self._maybe_fail("clear")
        await super().clear()

    async def get_many(self, keys: Any) -> dict[str, CacheEntry | None]:
        self._maybe_fail("get_many")
        return await super().get_many(keys)


def make_entry(value: bytes = b'"v"', **kwargs: Any) -> CacheEntry:
    kwargs.setdefault("created_at", 1_000_000)
    kwargs.setdefault("expires_at", None)
    return CacheEntry(value=value, size=len(value), **kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def async_adapter(clock: FakeClock) -> AsyncMemoryAdapter:
    """Create a fresh AsyncMemoryAdapter for each test."""
    return AsyncMemoryAdapter(clock=clock)


@pytest.fixture
def flaky_adapter(clock: FakeClock) -> FlakyAdapter:
    return FlakyAdapter(clock=clock)


@pytest.fixture
def cache(clock: FakeClock) -> CacheManager:
    """A manager backed by one memory adapter, on the fake clock."""
    return create_cache(
        AsyncMemoryAdapter(clock=clock),
        clock=clock,
        default_ttl="1h",
        retry_delay=0,
    )
