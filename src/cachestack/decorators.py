"""Function caching on top of ``CacheManager.get_or_compute``."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from functools import wraps
from typing import TYPE_CHECKING, Any, ParamSpec, TypeVar

from cachestack.keys import function_key
from cachestack.types import Duration

if TYPE_CHECKING:
    from cachestack.manager import CacheManager

P = ParamSpec("P")
R = TypeVar("R")


def cached(
    cache: CacheManager,
    *,
    ttl: Duration | None = None,
    tags: Iterable[str] = (),
    key: Callable[..., str] | None = None,
) -> Callable[[Callable[P, Awaitable[R]]], Callable[P, Awaitable[R]]]:
    """Decorator that caches an async function's result.

    Usage:
        @cached(cache, ttl="5m", tags=["users"])
        async def get_user(user_id: str) -> dict:
            return await fetch_user(user_id)

    The key defaults to ``fn:<qualname>:<hash of arguments>``. Pass ``key``
    to build it from the call arguments instead. Concurrent calls with the
    same arguments share one invocation.
    """
    tag_list = tuple(tags)

    def decorator(fn: Callable[P, Awaitable[R]]) -> Callable[P, Awaitable[R]]:
        def cache_key_for(*args: Any, **kwargs: Any) -> str:
            if key is not None:
                return key(*args, **kwargs)
            return function_key(fn.__qualname__, args, kwargs)

        @wraps(fn)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            return await cache.get_or_compute(
                cache_key_for(*args, **kwargs),
                lambda: fn(*args, **kwargs),
                ttl=ttl,
                tags=tag_list,
            )

        async def invalidate(*args: Any, **kwargs: Any) -> bool:
            """Drop the cached result for these arguments."""
            return await cache.delete(cache_key_for(*args, **kwargs))

        wrapper.cache_key = cache_key_for  # type: ignore[attr-defined]
        wrapper.invalidate = invalidate  # type: ignore[attr-defined]
        return wrapper

    return decorator


__all__ = ["cached"]
