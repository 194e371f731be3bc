"""Configuration for the cache manager and its resilience guards."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from cachestack.compression import ALGORITHMS
from cachestack.duration import parse_duration
from cachestack.errors import InvalidArgumentError
from cachestack.types import Duration


def _duration(name: str, value: Duration) -> float:
    try:
        return parse_duration(value)
    except (TypeError, ValueError) as e:
        raise InvalidArgumentError(f"{name}: {e}", operation="configure") from e


@dataclass(frozen=True, slots=True)
class RateLimitConfig:
    """Sliding-window limit for one operation.

    ``window`` and ``queue_timeout`` accept durations ("1s", "500ms") or seconds.
    """

    max_requests: int
    window: Duration = "1s"
    burstable: bool = False
    fairness: bool = False
    queue_size: int = 1000
    queue_timeout: Duration = "5s"

    def __post_init__(self) -> None:
        if self.max_requests < 1:
            raise InvalidArgumentError("max_requests must be at least 1")
        if self.queue_size < 0:
            raise InvalidArgumentError("queue_size must be non-negative")
        if self.window_ms <= 0:
            raise InvalidArgumentError("window must be positive")
        _duration("queue_timeout", self.queue_timeout)

    @property
    def window_ms(self) -> int:
        return int(_duration("window", self.window) * 1000)

    @property
    def queue_timeout_s(self) -> float:
        return _duration("queue_timeout", self.queue_timeout)


@dataclass(frozen=True, slots=True)
class CircuitBreakerConfig:
    """Consecutive-failure circuit breaker settings."""

    failure_threshold: int = 5
    reset_timeout: Duration = "60s"
    half_open_limit: int = 1
    enabled: bool = True

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise InvalidArgumentError("failure_threshold must be at least 1")
        if self.half_open_limit < 1:
            raise InvalidArgumentError("half_open_limit must be at least 1")
        _duration("reset_timeout", self.reset_timeout)

    @property
    def reset_timeout_ms(self) -> int:
        return int(_duration("reset_timeout", self.reset_timeout) * 1000)


@dataclass(frozen=True, slots=True)
class CacheConfig:
    """Engine-level defaults; per-call CacheOptions override them."""

    default_ttl: Duration = "1h"
    refresh_threshold: float = 0.75
    background_refresh: bool = False
    max_retries: int = 3
    retry_delay: Duration = "1s"
    refresh_cooldown: Duration = "60s"
    compression: bool = False
    compression_threshold: int = 1024
    compression_algorithm: str | None = None
    compression_max_ratio: float = 0.8
    checksum: bool = False
    max_key_length: int = 1024
    provider_error_threshold: int = 5
    rate_limits: dict[str, RateLimitConfig] = field(default_factory=dict)
    circuit_breaker: CircuitBreakerConfig | None = None
    stats_interval: Duration = 0

    def __post_init__(self) -> None:
        for name in ("default_ttl", "retry_delay", "refresh_cooldown", "stats_interval"):
            _duration(name, getattr(self, name))
        if not 0 < self.refresh_threshold <= 1:
            raise InvalidArgumentError("refresh_threshold must be in (0, 1]")
        if self.max_retries < 1:
            raise InvalidArgumentError("max_retries must be at least 1")
        if self.compression_threshold < 0:
            raise InvalidArgumentError("compression_threshold must be non-negative")
        if not 0 < self.compression_max_ratio <= 1:
            raise InvalidArgumentError("compression_max_ratio must be in (0, 1]")
        if (
            self.compression_algorithm is not None
            and self.compression_algorithm not in ALGORITHMS
        ):
            raise InvalidArgumentError(
                f"Unknown compression algorithm: {self.compression_algorithm!r}"
            )
        if self.max_key_length < 1:
            raise InvalidArgumentError("max_key_length must be at least 1")
        if self.provider_error_threshold < 0:
            raise InvalidArgumentError("provider_error_threshold must be non-negative")

    @property
    def default_ttl_s(self) -> float:
        return _duration("default_ttl", self.default_ttl)

    @property
    def retry_delay_s(self) -> float:
        return _duration("retry_delay", self.retry_delay)

    @property
    def refresh_cooldown_ms(self) -> int:
        return int(_duration("refresh_cooldown", self.refresh_cooldown) * 1000)

    @property
    def stats_interval_s(self) -> float:
        return _duration("stats_interval", self.stats_interval)

    def summary(self) -> dict[str, Any]:
        """Short description used in logs and health output."""
        return {
            "default_ttl": self.default_ttl_s,
            "refresh_threshold": self.refresh_threshold,
            "background_refresh": self.background_refresh,
            "compression": self.compression,
            "checksum": self.checksum,
            "rate_limited": sorted(self.rate_limits),
            "circuit_breaker": self.circuit_breaker is not None,
        }
