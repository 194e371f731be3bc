"""In-process circuit breaker.

State transitions:
    CLOSED    -> OPEN       after ``failure_threshold`` consecutive failures
    OPEN      -> HALF_OPEN  once ``reset_timeout`` has elapsed (checked lazily)
    HALF_OPEN -> CLOSED     after ``half_open_limit`` successful probes
    HALF_OPEN -> OPEN       on any probe failure
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, TypeVar

from cachestack.config import CircuitBreakerConfig
from cachestack.duration import now_ms
from cachestack.errors import CircuitOpenError
from cachestack.log import get_logger
from cachestack.types import Clock

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Fails fast while a dependency is unhealthy."""

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        *,
        name: str = "default",
        clock: Clock = now_ms,
    ) -> None:
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._half_open_calls = 0
        self._opened_at: int | None = None
        self._last_failure: int | None = None
        self._last_success: int | None = None

    @property
    def state(self) -> CircuitState:
        if (
            self._state is CircuitState.OPEN
            and self._opened_at is not None
            and self._clock() - self._opened_at >= self.config.reset_timeout_ms
        ):
            self._transition(CircuitState.HALF_OPEN)
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def is_open(self) -> bool:
        return self.state is CircuitState.OPEN

    def check(self) -> None:
        """Raise CircuitOpenError if a call may not proceed right now.

        In the half-open state this also claims one probe slot.
        """
        if not self.config.enabled:
            return
        state = self.state
        if state is CircuitState.OPEN:
            raise CircuitOpenError(
                f"Circuit '{self.name}' is open",
                operation=self.name,
                details={"failure_count": self._failure_count},
            )
        if state is CircuitState.HALF_OPEN:
            if self._half_open_calls >= self.config.half_open_limit:
                raise CircuitOpenError(
                    f"Circuit '{self.name}' is half-open and probing",
                    operation=self.name,
                )
            self._half_open_calls += 1

    def record_success(self) -> None:
        self._last_success = self._clock()
        if self._state is CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.config.half_open_limit:
                self._transition(CircuitState.CLOSED)
        else:
            self._failure_count = 0

    def release(self) -> None:
        """Give back a half-open probe slot without judging the outcome."""
        if self._state is CircuitState.HALF_OPEN and self._half_open_calls:
            self._half_open_calls -= 1

    def record_failure(self) -> None:
        self._failure_count += 1
        self._last_failure = self._clock()
        if self._state is CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN)
        elif (
            self._state is CircuitState.CLOSED
            and self._failure_count >= self.config.failure_threshold
        ):
            self._transition(CircuitState.OPEN)

    async def execute(
        self,
        fn: Callable[[], Awaitable[T]],
        fallback: Callable[[], Awaitable[T]] | None = None,
    ) -> T:
        """Run ``fn`` under the breaker, using ``fallback`` when rejected or failed."""
        if not self.config.enabled:
            return await fn()
        try:
            self.check()
        except CircuitOpenError:
            if fallback is not None:
                return await fallback()
            raise

        try:
            result = await fn()
        except Exception:
            self.record_failure()
            if fallback is not None:
                return await fallback()
            raise
        self.record_success()
        return result

    def reset(self) -> None:
        self._transition(CircuitState.CLOSED)
        self._last_failure = None

    def get_stats(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self._failure_count,
            "success_count": self._success_count,
            "opened_at": self._opened_at,
            "last_failure": self._last_failure,
            "last_success": self._last_success,
        }

    def _transition(self, state: CircuitState) -> None:
        previous = self._state
        self._state = state
        self._success_count = 0
        self._half_open_calls = 0
        if state is CircuitState.OPEN:
            self._opened_at = self._clock()
        elif state is CircuitState.CLOSED:
            self._failure_count = 0
            self._opened_at = None
        if previous is not state:
            log = logger.warning if state is CircuitState.OPEN else logger.info
            log(
                "circuit_state_changed",
                circuit=self.name,
                previous=previous.value,
                state=state.value,
                failure_count=self._failure_count,
            )


__all__ = ["CircuitBreaker", "CircuitState"]
