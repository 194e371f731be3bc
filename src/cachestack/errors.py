"""Error taxonomy for cache operations."""

from __future__ import annotations

from enum import Enum
from typing import Any


class CacheErrorCode(str, Enum):
    """Machine-readable error codes."""

    UNKNOWN = "UNKNOWN"
    INVALID_KEY = "INVALID_KEY"
    KEY_TOO_LONG = "KEY_TOO_LONG"
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    SERIALIZATION_ERROR = "SERIALIZATION_ERROR"
    DESERIALIZATION_ERROR = "DESERIALIZATION_ERROR"
    DATA_INTEGRITY_ERROR = "DATA_INTEGRITY_ERROR"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    TIMEOUT = "TIMEOUT"


_DEFAULT_MESSAGES: dict[CacheErrorCode, str] = {
    CacheErrorCode.UNKNOWN: "An unknown error occurred",
    CacheErrorCode.INVALID_KEY: "Invalid cache key",
    CacheErrorCode.KEY_TOO_LONG: "Cache key is too long",
    CacheErrorCode.INVALID_ARGUMENT: "Invalid argument for cache operation",
    CacheErrorCode.SERIALIZATION_ERROR: "Failed to serialize cache value",
    CacheErrorCode.DESERIALIZATION_ERROR: "Failed to deserialize cache value",
    CacheErrorCode.DATA_INTEGRITY_ERROR: "Cache value failed integrity check",
    CacheErrorCode.PROVIDER_ERROR: "Cache provider error",
    CacheErrorCode.CIRCUIT_OPEN: "Cache circuit breaker is open",
    CacheErrorCode.RATE_LIMIT_EXCEEDED: "Cache rate limit exceeded",
    CacheErrorCode.TIMEOUT: "Cache operation timed out",
}


class CacheError(Exception):
    """Base class for every error raised by cachestack.

    Attributes:
        code: Error code from the taxonomy
        message: Human-readable message
        operation: Operation that failed ("get", "set", ...)
        key: Cache key involved, if any
        provider: Provider name involved, if any
        details: Extra context for logging
    """

    default_code = CacheErrorCode.UNKNOWN

    def __init__(
        self,
        message: str | None = None,
        *,
        code: CacheErrorCode | None = None,
        operation: str | None = None,
        key: str | None = None,
        provider: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.code = code or self.default_code
        self.message = message or _DEFAULT_MESSAGES[self.code]
        self.operation = operation
        self.key = key
        self.provider = provider
        self.details = dict(details or {})
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a dict for logging and diagnostics."""
        return {
            "error_type": type(self).__name__,
            "code": self.code.value,
            "message": self.message,
            "operation": self.operation,
            "key": self.key,
            "provider": self.provider,
            "details": self.details,
        }


class InvalidKeyError(CacheError, ValueError):
    default_code = CacheErrorCode.INVALID_KEY


class InvalidArgumentError(CacheError, ValueError):
    default_code = CacheErrorCode.INVALID_ARGUMENT


class SerializationError(CacheError):
    default_code = CacheErrorCode.SERIALIZATION_ERROR


class DeserializationError(CacheError):
    default_code = CacheErrorCode.DESERIALIZATION_ERROR


class DataIntegrityError(DeserializationError):
    default_code = CacheErrorCode.DATA_INTEGRITY_ERROR


class ProviderError(CacheError):
    default_code = CacheErrorCode.PROVIDER_ERROR


class CircuitOpenError(CacheError):
    """Raised instead of attempting an operation while the circuit is open."""

    default_code = CacheErrorCode.CIRCUIT_OPEN


class RateLimitExceededError(CacheError):
    default_code = CacheErrorCode.RATE_LIMIT_EXCEEDED


class CacheTimeoutError(CacheError, TimeoutError):
    default_code = CacheErrorCode.TIMEOUT


def wrap_error(
    error: BaseException,
    *,
    operation: str | None = None,
    key: str | None = None,
    provider: str | None = None,
) -> CacheError:
    """Return ``error`` unchanged if it is a CacheError, else wrap it as UNKNOWN."""
    if isinstance(error, CacheError):
        return error
    wrapped = CacheError(
        f"{type(error).__name__}: {error}",
        operation=operation,
        key=key,
        provider=provider,
    )
    wrapped.__cause__ = error
    return wrapped


__all__ = [
    "CacheError",
    "CacheErrorCode",
    "CacheTimeoutError",
    "CircuitOpenError",
    "DataIntegrityError",
    "DeserializationError",
    "InvalidArgumentError",
    "InvalidKeyError",
    "ProviderError",
    "RateLimitExceededError",
    "SerializationError",
    "wrap_error",
]
