"""cachestack - Multi-backend async caching for Python."""

from contextlib import suppress

# Adapters (async only)
from cachestack.adapters import (
    AsyncMemoryAdapter,
    AsyncStorageAdapter,
    IterativeBatchMixin,
)

# Resilience
from cachestack.circuit_breaker import CircuitBreaker, CircuitState

# Engine components
from cachestack.compute import ComputeEngine

# Configuration
from cachestack.config import CacheConfig, CircuitBreakerConfig, RateLimitConfig
from cachestack.decorators import cached

# Duration parsing
from cachestack.duration import parse_duration

# Errors
from cachestack.errors import (
    CacheError,
    CacheErrorCode,
    CacheTimeoutError,
    CircuitOpenError,
    DataIntegrityError,
    DeserializationError,
    InvalidArgumentError,
    InvalidKeyError,
    ProviderError,
    RateLimitExceededError,
    SerializationError,
)

# Events
from cachestack.events import CacheEventType, EventBus
from cachestack.log import configure_logging, get_logger

# Façade
from cachestack.manager import CacheManager, create_cache
from cachestack.metadata import MetadataIndex
from cachestack.providers import ProviderOrchestrator
from cachestack.rate_limiter import RateLimiter
from cachestack.serialization import EntryCodec, Serializer

# Core types
from cachestack.types import (
    CacheEntry,
    CacheOptions,
    ComputeResult,
    Duration,
    EntryMetadata,
    HealthStatus,
    ProviderHealth,
)

# Optional adapter imports - only available when dependencies are installed
with suppress(ImportError):
    from cachestack.adapters import AsyncRedisAdapter

__version__ = "0.1.0"

__all__ = [
    "AsyncMemoryAdapter",
    "AsyncRedisAdapter",
    "AsyncStorageAdapter",
    "CacheConfig",
    "CacheEntry",
    "CacheError",
    "CacheErrorCode",
    "CacheEventType",
    "CacheManager",
    "CacheOptions",
    "CacheTimeoutError",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitOpenError",
    "CircuitState",
    "ComputeEngine",
    "ComputeResult",
    "DataIntegrityError",
    "DeserializationError",
    "Duration",
    "EntryCodec",
    "EntryMetadata",
    "EventBus",
    "HealthStatus",
    "InvalidArgumentError",
    "InvalidKeyError",
    "IterativeBatchMixin",
    "MetadataIndex",
    "ProviderError",
    "ProviderHealth",
    "ProviderOrchestrator",
    "RateLimitConfig",
    "RateLimitExceededError",
    "RateLimiter",
    "SerializationError",
    "Serializer",
    "cached",
    "configure_logging",
    "create_cache",
    "get_logger",
    "parse_duration",
]
