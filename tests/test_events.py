"""Tests for the event bus and statistics."""

from typing import Any

import pytest

from cachestack import CacheEventType, EventBus
from cachestack.events import ClearEvent, DeleteEvent, GetEvent, SetEvent
from cachestack.stats import CacheStatistics, OperationTiming
from conftest import FakeClock


class TestEventBus:
    """Tests for EventBus."""

    def test_typed_subscription(self) -> None:
        bus = EventBus()
        seen: list[Any] = []
        bus.subscribe(CacheEventType.SET, seen.append)
        bus.emit(SetEvent(key="a"))
        bus.emit(DeleteEvent(key="a", deleted=True))
        assert [e.key for e in seen] == ["a"]

    def test_string_event_names(self) -> None:
        bus = EventBus()
        seen: list[Any] = []
        bus.subscribe("get:hit", seen.append)  # type: ignore[arg-type]
        bus.emit(GetEvent(type=CacheEventType.GET_HIT, key="a"))
        bus.emit(GetEvent(type=CacheEventType.GET_MISS, key="b"))
        assert [e.key for e in seen] == ["a"]

    def test_unknown_event_name_rejected(self) -> None:
        with pytest.raises(ValueError):
            EventBus().subscribe("nope", print)  # type: ignore[arg-type]

    def test_wildcard_receives_everything(self) -> None:
        bus = EventBus()
        seen: list[Any] = []
        bus.subscribe("*", seen.append)
        bus.emit(SetEvent(key="a"))
        bus.emit(ClearEvent(entries_removed=3))
        assert [e.type for e in seen] == [CacheEventType.SET, CacheEventType.CLEAR]

    def test_unsubscribe(self) -> None:
        bus = EventBus()
        seen: list[Any] = []
        unsubscribe = bus.subscribe(CacheEventType.SET, seen.append)
        assert bus.listener_count(CacheEventType.SET) == 1
        unsubscribe()
        unsubscribe()
        bus.emit(SetEvent(key="a"))
        assert seen == []
        assert bus.listener_count() == 0

    def test_failing_handler_is_isolated(self) -> None:
        bus = EventBus()
        seen: list[Any] = []

        def broken(event: Any) -> None:
            raise RuntimeError("handler bug")

        bus.subscribe(CacheEventType.SET, broken)
        bus.subscribe(CacheEventType.SET, seen.append)
        bus.emit(SetEvent(key="a"))
        assert len(seen) == 1

    def test_clear(self) -> None:
        bus = EventBus()
        bus.subscribe("*", print)
        bus.clear()
        assert bus.listener_count("*") == 0


class TestCacheStatistics:
    """Tests for CacheStatistics."""

    def test_counters_and_hit_rate(self, clock: FakeClock) -> None:
        stats = CacheStatistics(clock=clock)
        assert stats.hit_rate == 0.0
        stats.record_hit(2.0)
        stats.record_hit(4.0)
        stats.record_miss(6.0)
        stats.record_set(size=100, duration=1.0)
        stats.record_delete()
        stats.record_error()
        snapshot = stats.snapshot()
        assert snapshot["hits"] == 2
        assert snapshot["misses"] == 1
        assert snapshot["sets"] == 1
        assert snapshot["deletes"] == 1
        assert snapshot["errors"] == 1
        assert snapshot["bytes_written"] == 100
        assert snapshot["hit_rate"] == pytest.approx(2 / 3)
        assert snapshot["operations"]["get"]["count"] == 3
        assert snapshot["operations"]["get"]["avg"] == pytest.approx(4.0)
        assert snapshot["operations"]["get"]["min"] == 2.0
        assert snapshot["operations"]["get"]["max"] == 6.0

    def test_timer(self, clock: FakeClock) -> None:
        stats = CacheStatistics(clock=clock)
        with stats.timer("warmup"):
            pass
        assert stats.snapshot()["operations"]["warmup"]["count"] == 1

    def test_trend_and_reset(self, clock: FakeClock) -> None:
        stats = CacheStatistics(clock=clock)
        stats.record_hit()
        stats.sample()
        clock.advance(1_000)
        stats.record_miss()
        stats.sample()
        assert stats.snapshot()["trend"] == [(clock.now - 1_000, 1.0), (clock.now, 0.5)]
        stats.reset()
        assert stats.snapshot()["trend"] == []
        assert stats.hits == 0

    def test_operation_timing_defaults(self) -> None:
        timing = OperationTiming()
        assert timing.avg == 0.0
        assert timing.as_dict()["min"] == 0.0
