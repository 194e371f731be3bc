"""Typed diagnostic events.

Events are observational only. A failing handler is logged and skipped;
it never changes the outcome of a cache operation.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Literal, Union

from cachestack.duration import now_ms
from cachestack.log import get_logger

logger = get_logger(__name__)


class CacheEventType(str, Enum):
    GET = "get"
    GET_HIT = "get:hit"
    GET_MISS = "get:miss"
    SET = "set"
    DELETE = "delete"
    CLEAR = "clear"
    ERROR = "error"
    INVALIDATE = "invalidate"
    COMPUTE_START = "compute:start"
    COMPUTE_SUCCESS = "compute:success"
    COMPUTE_ERROR = "compute:error"
    REFRESH_START = "refresh:start"
    REFRESH_SUCCESS = "refresh:success"
    REFRESH_ERROR = "refresh:error"
    STATS_UPDATE = "stats:update"
    PROVIDER_INITIALIZED = "provider:initialized"


@dataclass(frozen=True, slots=True)
class GetEvent:
    """``get``, ``get:hit`` or ``get:miss``."""

    type: CacheEventType
    key: str
    provider: str | None = None
    duration: float | None = None  # ms
    timestamp: int = field(default_factory=now_ms)


@dataclass(frozen=True, slots=True)
class SetEvent:
    type: ClassVar[CacheEventType] = CacheEventType.SET

    key: str
    ttl: float | None = None
    size: int | None = None
    tags: tuple[str, ...] = ()
    timestamp: int = field(default_factory=now_ms)


@dataclass(frozen=True, slots=True)
class DeleteEvent:
    type: ClassVar[CacheEventType] = CacheEventType.DELETE

    key: str
    deleted: bool
    timestamp: int = field(default_factory=now_ms)


@dataclass(frozen=True, slots=True)
class ClearEvent:
    type: ClassVar[CacheEventType] = CacheEventType.CLEAR

    entries_removed: int | None = None
    timestamp: int = field(default_factory=now_ms)


@dataclass(frozen=True, slots=True)
class ErrorEvent:
    type: ClassVar[CacheEventType] = CacheEventType.ERROR

    operation: str
    error: BaseException
    key: str | None = None
    provider: str | None = None
    timestamp: int = field(default_factory=now_ms)


@dataclass(frozen=True, slots=True)
class InvalidateEvent:
    type: ClassVar[CacheEventType] = CacheEventType.INVALIDATE

    keys: tuple[str, ...]
    tag: str | None = None
    prefix: str | None = None
    timestamp: int = field(default_factory=now_ms)


@dataclass(frozen=True, slots=True)
class ComputeEvent:
    """``compute:start``, ``compute:success`` or ``compute:error``."""

    type: CacheEventType
    key: str
    compute_time: float | None = None  # ms
    error: BaseException | None = None
    timestamp: int = field(default_factory=now_ms)


@dataclass(frozen=True, slots=True)
class RefreshEvent:
    """``refresh:start``, ``refresh:success`` or ``refresh:error``."""

    type: CacheEventType
    key: str
    compute_time: float | None = None  # ms
    error: BaseException | None = None
    timestamp: int = field(default_factory=now_ms)


@dataclass(frozen=True, slots=True)
class StatsEvent:
    type: ClassVar[CacheEventType] = CacheEventType.STATS_UPDATE

    stats: dict[str, Any]
    timestamp: int = field(default_factory=now_ms)


@dataclass(frozen=True, slots=True)
class ProviderEvent:
    type: ClassVar[CacheEventType] = CacheEventType.PROVIDER_INITIALIZED

    provider: str
    priority: int
    timestamp: int = field(default_factory=now_ms)


CacheEvent = Union[
    GetEvent,
    SetEvent,
    DeleteEvent,
    ClearEvent,
    ErrorEvent,
    InvalidateEvent,
    ComputeEvent,
    RefreshEvent,
    StatsEvent,
    ProviderEvent,
]

EventHandler = Callable[[CacheEvent], Any]

WILDCARD = "*"


class EventBus:
    """Per-instance publish/subscribe for cache events.

    Subscribe to a single ``CacheEventType`` or to ``"*"`` for everything.
    Handlers run synchronously in subscription order.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = {}

    def subscribe(
        self,
        event_type: CacheEventType | Literal["*"],
        handler: EventHandler,
    ) -> Callable[[], None]:
        """Register ``handler`` and return a function that unsubscribes it."""
        name = event_type.value if isinstance(event_type, CacheEventType) else event_type
        if name != WILDCARD:
            name = CacheEventType(name).value
        self._handlers.setdefault(name, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(name, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def emit(self, event: CacheEvent) -> None:
        handlers = [
            *self._handlers.get(event.type.value, ()),
            *self._handlers.get(WILDCARD, ()),
        ]
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "event_handler_failed",
                    event_type=event.type.value,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                )

    def listener_count(self, event_type: CacheEventType | Literal["*"] | None = None) -> int:
        if event_type is None:
            return sum(len(h) for h in self._handlers.values())
        name = event_type.value if isinstance(event_type, CacheEventType) else event_type
        return len(self._handlers.get(name, ()))

    def clear(self) -> None:
        """Remove all handlers."""
        self._handlers.clear()


__all__ = [
    "CacheEvent",
    "CacheEventType",
    "ClearEvent",
    "ComputeEvent",
    "DeleteEvent",
    "ErrorEvent",
    "EventBus",
    "EventHandler",
    "GetEvent",
    "InvalidateEvent",
    "ProviderEvent",
    "RefreshEvent",
    "SetEvent",
    "StatsEvent",
]
