"""Sliding-window rate limiter with reject, burst and fair-queue policies."""

from __future__ import annotations

import asyncio
import contextlib
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from cachestack.config import RateLimitConfig
from cachestack.duration import now_ms
from cachestack.errors import CacheTimeoutError, RateLimitExceededError
from cachestack.log import get_logger
from cachestack.types import Clock

logger = get_logger(__name__)

SWEEP_INTERVAL = 60.0


@dataclass(slots=True)
class _Sample:
    timestamp: int
    count: int


class RateLimiter:
    """Admission control per operation name.

    Operations without a config are unlimited. When a request would exceed
    ``max_requests`` within the trailing window:

    - reject mode raises RateLimitExceededError
    - burstable mode allows up to twice the limit, then rejects
    - fair mode waits in a FIFO queue until capacity frees, raising
      CacheTimeoutError after ``queue_timeout`` and RateLimitExceededError
      if the queue is already full
    """

    def __init__(
        self,
        limits: Mapping[str, RateLimitConfig] | None = None,
        *,
        clock: Clock = now_ms,
    ) -> None:
        self._limits: dict[str, RateLimitConfig] = dict(limits or {})
        self._clock = clock
        self._usage: dict[str, deque[_Sample]] = {}
        self._queues: dict[str, deque[object]] = {}
        self._sweep_task: asyncio.Task[None] | None = None

    def configure(self, operation: str, config: RateLimitConfig | None) -> None:
        if config is None:
            self._limits.pop(operation, None)
        else:
            self._limits[operation] = config

    async def check_limit(self, operation: str, count: int = 1) -> None:
        """Admit ``count`` units of ``operation`` or raise."""
        config = self._limits.get(operation)
        if config is None:
            return

        usage = self._window_usage(operation, config)
        waiting = bool(self._queues.get(operation))
        if config.fairness and (waiting or usage + count > config.max_requests):
            await self._wait_in_queue(operation, config, count)
        elif usage + count > config.max_requests:
            limit = config.max_requests * 2 if config.burstable else config.max_requests
            if usage + count > limit:
                logger.warning(
                    "rate_limit_exceeded",
                    operation=operation,
                    usage=usage,
                    limit=limit,
                )
                raise RateLimitExceededError(
                    f"{'Burst limit' if config.burstable else 'Rate limit'} "
                    f"exceeded for operation: {operation}",
                    operation=operation,
                    details={"usage": usage, "limit": limit},
                )

        self._usage.setdefault(operation, deque()).append(
            _Sample(timestamp=self._clock(), count=count)
        )

    async def _wait_in_queue(
        self, operation: str, config: RateLimitConfig, count: int
    ) -> None:
        queue = self._queues.setdefault(operation, deque())
        if len(queue) >= config.queue_size:
            logger.warning("rate_limit_queue_full", operation=operation, queued=len(queue))
            raise RateLimitExceededError(
                f"Queue full for operation: {operation}", operation=operation
            )

        ticket = object()
        queue.append(ticket)
        try:
            await asyncio.wait_for(
                self._wait_for_slot(operation, config, count, ticket),
                timeout=config.queue_timeout_s,
            )
        except asyncio.TimeoutError:
            logger.warning("rate_limit_queue_timeout", operation=operation)
            raise CacheTimeoutError(
                f"Queue timeout for operation: {operation}", operation=operation
            ) from None
        finally:
            queue.remove(ticket)

    async def _wait_for_slot(
        self, operation: str, config: RateLimitConfig, count: int, ticket: object
    ) -> None:
        queue = self._queues[operation]
        while True:
            if (
                queue[0] is ticket
                and self._window_usage(operation, config) + count <= config.max_requests
            ):
                return
            await asyncio.sleep(self._retry_after(operation, config) / 1000)

    def _retry_after(self, operation: str, config: RateLimitConfig) -> int:
        samples = self._usage.get(operation)
        if not samples:
            return 1
        return max(1, samples[0].timestamp + config.window_ms - self._clock() + 1)

    def _window_usage(self, operation: str, config: RateLimitConfig) -> int:
        samples = self._usage.get(operation)
        if not samples:
            return 0
        window_start = self._clock() - config.window_ms
        while samples and samples[0].timestamp < window_start:
            samples.popleft()
        return sum(s.count for s in samples)

    def get_stats(self, operation: str) -> dict[str, Any] | None:
        config = self._limits.get(operation)
        if config is None:
            return None
        usage = self._window_usage(operation, config)
        samples = self._usage.get(operation)
        return {
            "operation": operation,
            "current_usage": usage,
            "limit": config.max_requests,
            "remaining": max(0, config.max_requests - usage),
            "reset_time": (
                samples[0].timestamp + config.window_ms if samples else self._clock()
            ),
            "queue_size": len(self._queues.get(operation, ())),
            "burst_capacity": (
                config.max_requests * 2 if config.burstable else config.max_requests
            ),
        }

    def sweep(self) -> int:
        """Drop samples outside every window. Returns how many were removed."""
        removed = 0
        for operation, config in self._limits.items():
            samples = self._usage.get(operation)
            if samples is None:
                continue
            before = len(samples)
            self._window_usage(operation, config)
            removed += before - len(samples)
        # Samples for operations that lost their config are dead weight
        for operation in [op for op in self._usage if op not in self._limits]:
            removed += len(self._usage.pop(operation))
        return removed

    def reset(self, operation: str | None = None) -> None:
        if operation is None:
            self._usage.clear()
        else:
            self._usage.pop(operation, None)

    def start(self) -> None:
        """Start the periodic sweep. Requires a running event loop."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(SWEEP_INTERVAL)
            removed = self.sweep()
            if removed:
                logger.debug("rate_limit_swept", removed=removed)

    async def close(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task


__all__ = ["SWEEP_INTERVAL", "RateLimiter"]
