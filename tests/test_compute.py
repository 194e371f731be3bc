"""Tests for get-or-compute, dedup, retry and stale-while-revalidate."""

import asyncio
from typing import Any

import pytest

from cachestack import (
    AsyncMemoryAdapter,
    CacheConfig,
    CacheEventType,
    CacheOptions,
    ComputeEngine,
    EntryCodec,
    EventBus,
    MetadataIndex,
    ProviderOrchestrator,
    Serializer,
)
from conftest import FakeClock, make_entry


class Harness:
    """A compute engine wired to one memory adapter and a fake clock."""

    def __init__(self, clock: FakeClock, **config: Any) -> None:
        config.setdefault("retry_delay", "1s")
        self.clock = clock
        self.delays: list[float] = []
        self.events = EventBus()
        self.seen: list[Any] = []
        self.events.subscribe("*", self.seen.append)
        self.adapter = AsyncMemoryAdapter(clock=clock)
        self.providers = ProviderOrchestrator(events=self.events, clock=clock)
        self.providers.register_provider("memory", self.adapter)
        self.metadata = MetadataIndex(clock=clock)
        self.engine = ComputeEngine(
            self.providers,
            self.metadata,
            EntryCodec(Serializer(), clock=clock),
            config=CacheConfig(**config),
            events=self.events,
            clock=clock,
            sleep=self.sleep,
        )

    async def sleep(self, delay: float) -> None:
        self.delays.append(delay)

    def types(self) -> list[CacheEventType]:
        return [e.type for e in self.seen]


class Counter:
    """Async compute function that counts its calls."""

    def __init__(self, *values: Any) -> None:
        self.calls = 0
        self._values = values or ("value",)

    async def __call__(self) -> Any:
        self.calls += 1
        return self._values[min(self.calls, len(self._values)) - 1]


class TestGetOrCompute:
    """Tests for the basic compute path."""

    async def test_miss_computes_and_stores(self, clock: FakeClock) -> None:
        h = Harness(clock)
        fn = Counter({"id": 1})
        result = await h.engine.get_or_compute("k", fn, CacheOptions(ttl=60, tags=("t",)))
        assert result.value == {"id": 1}
        assert result.stale is False
        assert fn.calls == 1
        assert await h.adapter.get("k") is not None
        meta = h.metadata.get("k")
        assert meta is not None
        assert meta.tags == {"t"}
        assert meta.refreshed_at == clock.now
        assert meta.compute_time is not None
        assert CacheEventType.COMPUTE_START in h.types()
        assert CacheEventType.COMPUTE_SUCCESS in h.types()

    async def test_hit_skips_compute(self, clock: FakeClock) -> None:
        h = Harness(clock)
        fn = Counter("a", "b")
        await h.engine.get_or_compute("k", fn)
        result = await h.engine.get_or_compute("k", fn)
        assert result.value == "a"
        assert fn.calls == 1

    async def test_corrupt_entry_is_recomputed(self, clock: FakeClock) -> None:
        h = Harness(clock)
        await h.adapter.set("k", make_entry(b"{not json", created_at=clock.now))
        fn = Counter("fresh")
        result = await h.engine.get_or_compute("k", fn)
        assert result.value == "fresh"
        assert fn.calls == 1
        assert CacheEventType.ERROR in h.types()

    async def test_lookup_failure_counts_as_miss(self, clock: FakeClock) -> None:
        class ReadBroken(AsyncMemoryAdapter):
            async def get(self, key):  # type: ignore[no-untyped-def]
                raise ConnectionError("read path down")

        h = Harness(clock)
        h.providers.unregister_provider("memory")
        broken = ReadBroken(clock=clock)
        h.providers.register_provider("broken", broken)
        fn = Counter("v")
        result = await h.engine.get_or_compute("k", fn)
        assert result.value == "v"
        assert await broken.has("k")


class TestDeduplication:
    """Concurrent callers share one computation."""

    async def test_concurrent_callers_share_one_call(self, clock: FakeClock) -> None:
        h = Harness(clock)
        gate = asyncio.Event()
        calls = 0

        async def fn() -> str:
            nonlocal calls
            calls += 1
            await gate.wait()
            return "shared"

        callers = [asyncio.create_task(h.engine.get_or_compute("k", fn)) for _ in range(10)]
        await asyncio.sleep(0)
        assert h.engine.get_compute_status()["active_computes"] == 1
        gate.set()
        results = await asyncio.gather(*callers)
        assert calls == 1
        assert {r.value for r in results} == {"shared"}
        assert h.engine.get_compute_status()["active_computes"] == 0

    async def test_shared_failure_reaches_every_caller(self, clock: FakeClock) -> None:
        h = Harness(clock, max_retries=1)
        gate = asyncio.Event()
        calls = 0

        async def fn() -> str:
            nonlocal calls
            calls += 1
            await gate.wait()
            raise RuntimeError("upstream down")

        callers = [asyncio.create_task(h.engine.get_or_compute("k", fn)) for _ in range(5)]
        await asyncio.sleep(0)
        gate.set()
        results = await asyncio.gather(*callers, return_exceptions=True)
        assert calls == 1
        assert all(isinstance(r, RuntimeError) for r in results)
        assert CacheEventType.COMPUTE_ERROR in h.types()

    async def test_cancelled_caller_does_not_cancel_work(self, clock: FakeClock) -> None:
        h = Harness(clock)
        gate = asyncio.Event()

        async def fn() -> str:
            await gate.wait()
            return "done"

        first = asyncio.create_task(h.engine.get_or_compute("k", fn))
        second = asyncio.create_task(h.engine.get_or_compute("k", fn))
        await asyncio.sleep(0)
        first.cancel()
        gate.set()
        assert (await second).value == "done"
        with pytest.raises(asyncio.CancelledError):
            await first

    async def test_different_keys_compute_independently(self, clock: FakeClock) -> None:
        h = Harness(clock)
        fn = Counter("v")
        await asyncio.gather(
            h.engine.get_or_compute("a", fn), h.engine.get_or_compute("b", fn)
        )
        assert fn.calls == 2


class TestRetry:
    """Compute retries with exponential backoff."""

    async def test_retries_then_succeeds(self, clock: FakeClock) -> None:
        h = Harness(clock, max_retries=3, retry_delay="1s")
        calls = 0

        async def fn() -> str:
            nonlocal calls
            calls += 1
            if calls < 3:
                raise ConnectionError("flaky")
            return "ok"

        result = await h.engine.get_or_compute("k", fn)
        assert result.value == "ok"
        assert calls == 3
        assert h.delays == [1.0, 2.0]

    async def test_exhausted_retries_raise_last_error(self, clock: FakeClock) -> None:
        h = Harness(clock, max_retries=2, retry_delay="1s")
        calls = 0

        async def fn() -> str:
            nonlocal calls
            calls += 1
            raise ValueError(f"attempt {calls}")

        with pytest.raises(ValueError, match="attempt 2"):
            await h.engine.get_or_compute("k", fn)
        assert h.delays == [1.0]
        assert await h.adapter.get("k") is None


class TestStaleness:
    """Stale detection and background refresh."""

    async def test_is_stale_boundary(self, clock: FakeClock) -> None:
        h = Harness(clock, default_ttl="100s", refresh_threshold=0.5)
        refreshed_at = clock.now
        clock.advance(50_000)
        assert not h.engine.is_stale(refreshed_at)
        clock.advance(1)
        assert h.engine.is_stale(refreshed_at)
        assert h.engine.is_stale(None)

    async def test_per_call_threshold(self, clock: FakeClock) -> None:
        h = Harness(clock, default_ttl="100s", refresh_threshold=0.9)
        refreshed_at = clock.now
        clock.advance(30_000)
        assert h.engine.is_stale(refreshed_at, CacheOptions(refresh_threshold=0.25))
        assert not h.engine.is_stale(refreshed_at)

    async def test_stale_value_served_then_refreshed(self, clock: FakeClock) -> None:
        h = Harness(clock, refresh_threshold=0.5, background_refresh=True)
        fn = Counter("v1", "v2")
        options = CacheOptions(ttl=10)
        await h.engine.get_or_compute("k", fn, options)

        clock.advance(6_000)
        stale = await h.engine.get_or_compute("k", fn, options)
        assert stale.value == "v1"
        assert stale.stale is True

        await h.engine.wait_for_background()
        fresh = await h.engine.get_or_compute("k", fn, options)
        assert fresh.value == "v2"
        assert fresh.stale is False
        assert CacheEventType.REFRESH_SUCCESS in h.types()

    async def test_stale_without_background_refresh(self, clock: FakeClock) -> None:
        h = Harness(clock, refresh_threshold=0.5)
        fn = Counter("v1", "v2")
        await h.engine.get_or_compute("k", fn, CacheOptions(ttl=10))
        clock.advance(6_000)
        result = await h.engine.get_or_compute("k", fn, CacheOptions(ttl=10))
        assert result.stale is True
        await h.engine.wait_for_background()
        assert fn.calls == 1

    async def test_one_refresh_per_cooldown(self, clock: FakeClock) -> None:
        h = Harness(
            clock, refresh_threshold=0.5, background_refresh=True, refresh_cooldown="60s"
        )
        fn = Counter("v1", "v2", "v3")
        options = CacheOptions(ttl=10)
        await h.engine.get_or_compute("k", fn, options)

        clock.advance(6_000)
        await h.engine.get_or_compute("k", fn, options)
        await h.engine.get_or_compute("k", fn, options)
        await h.engine.wait_for_background()
        assert fn.calls == 2

        clock.advance(6_000)
        result = await h.engine.get_or_compute("k", fn, options)
        await h.engine.wait_for_background()
        assert result.stale is True
        assert fn.calls == 2
        assert h.engine.get_compute_status()["scheduled_refreshes"] == 1

        assert h.engine.cancel_background_refresh("k") is True
        await h.engine.get_or_compute("k", fn, options)
        await h.engine.wait_for_background()
        assert fn.calls == 3

    async def test_cooldown_records_drain(self, clock: FakeClock) -> None:
        h = Harness(
            clock, refresh_threshold=0.5, background_refresh=True, refresh_cooldown="60s"
        )
        fn = Counter("v1", "v2")
        for key in ("a", "b"):
            await h.engine.get_or_compute(key, fn, CacheOptions(ttl=10))
        clock.advance(6_000)
        for key in ("a", "b"):
            await h.engine.get_or_compute(key, fn, CacheOptions(ttl=10))
        await h.engine.wait_for_background()
        assert h.engine.get_compute_status()["scheduled_refreshes"] == 2

        clock.advance(60_000)
        assert h.engine.get_compute_status()["scheduled_refreshes"] == 0
        assert h.engine.cancel_background_refresh("a") is False
        assert h.engine.cancel_background_refresh("b") is False

    async def test_cancelled_refresh_never_writes_back(self, clock: FakeClock) -> None:
        h = Harness(clock, refresh_threshold=0.5, background_refresh=True)
        gate = asyncio.Event()
        fn = Counter("v1", "v2")

        async def gated() -> Any:
            if fn.calls:
                await gate.wait()
            return await fn()

        await h.engine.get_or_compute("k", gated, CacheOptions(ttl=10))
        clock.advance(6_000)
        await h.engine.get_or_compute("k", gated, CacheOptions(ttl=10))
        await asyncio.sleep(0)

        assert h.engine.cancel_background_refresh("k") is True
        await h.adapter.delete("k")
        gate.set()
        for _ in range(5):
            await asyncio.sleep(0)

        assert fn.calls == 1
        assert await h.adapter.get("k") is None
        assert h.engine.get_compute_status()["active_refreshes"] == 0
        assert CacheEventType.REFRESH_SUCCESS not in h.types()

    async def test_failed_refresh_keeps_stale_value(self, clock: FakeClock) -> None:
        h = Harness(
            clock, refresh_threshold=0.5, background_refresh=True, max_retries=1
        )
        gate = asyncio.Event()
        calls = 0

        async def fn() -> str:
            nonlocal calls
            calls += 1
            if calls == 1:
                return "v1"
            await gate.wait()
            raise RuntimeError("refresh failed")

        options = CacheOptions(ttl=10)
        await h.engine.get_or_compute("k", fn, options)
        clock.advance(6_000)

        first = await h.engine.get_or_compute("k", fn, options)
        assert first.value == "v1"
        joiner = asyncio.create_task(h.engine.get_or_compute("k", fn, options))
        await asyncio.sleep(0)
        gate.set()
        joined = await joiner
        assert joined.value == "v1"
        assert joined.stale is True

        await h.engine.wait_for_background()
        assert calls == 2
        assert CacheEventType.REFRESH_ERROR in h.types()
        again = await h.engine.get_or_compute("k", fn, options)
        assert again.value == "v1"

    async def test_close_cancels_background_work(self, clock: FakeClock) -> None:
        h = Harness(clock, refresh_threshold=0.5, background_refresh=True)
        gate = asyncio.Event()
        calls = 0

        async def fn() -> str:
            nonlocal calls
            calls += 1
            if calls > 1:
                await gate.wait()
            return f"v{calls}"

        await h.engine.get_or_compute("k", fn, CacheOptions(ttl=10))
        clock.advance(6_000)
        await h.engine.get_or_compute("k", fn, CacheOptions(ttl=10))
        await asyncio.sleep(0)
        assert h.engine.get_compute_status()["active_refreshes"] == 1
        await h.engine.close()
        assert h.engine.get_compute_status()["active_refreshes"] == 0
