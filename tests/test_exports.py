"""Tests for package exports."""

import cachestack


def test_public_api_importable() -> None:
    """Test that the documented entry points are importable."""
    from cachestack import (
        AsyncMemoryAdapter,
        AsyncStorageAdapter,
        CacheManager,
        CircuitBreaker,
        EventBus,
        RateLimiter,
        cached,
        create_cache,
        parse_duration,
    )

    assert CacheManager is not None
    assert create_cache is not None
    assert cached is not None
    assert parse_duration is not None
    assert EventBus is not None
    assert CircuitBreaker is not None
    assert RateLimiter is not None
    assert isinstance(AsyncMemoryAdapter(), AsyncStorageAdapter)


def test_all_names_resolve() -> None:
    """Every name in __all__ exists, except optional adapters."""
    missing = [name for name in cachestack.__all__ if not hasattr(cachestack, name)]
    assert set(missing) <= {"AsyncRedisAdapter"}
