"""Tests for the cached decorator."""

import asyncio

from cachestack import CacheManager, cached


class TestCachedDecorator:
    """Tests for @cached."""

    async def test_caches_by_arguments(self, cache: CacheManager) -> None:
        calls: list[str] = []

        @cached(cache, ttl="5m")
        async def get_user(user_id: str) -> dict[str, str]:
            calls.append(user_id)
            return {"id": user_id}

        assert await get_user("1") == {"id": "1"}
        assert await get_user("1") == {"id": "1"}
        assert await get_user("2") == {"id": "2"}
        assert calls == ["1", "2"]

    async def test_preserves_metadata(self, cache: CacheManager) -> None:
        @cached(cache)
        async def documented() -> int:
            """Docs."""
            return 1

        assert documented.__name__ == "documented"
        assert documented.__doc__ == "Docs."

    async def test_default_key(self, cache: CacheManager) -> None:
        @cached(cache)
        async def load(a: int, b: int = 0) -> int:
            return a + b

        key = load.cache_key(1, b=2)  # type: ignore[attr-defined]
        assert key.startswith("fn:")
        assert "load" in key
        assert key == load.cache_key(1, b=2)  # type: ignore[attr-defined]
        assert key != load.cache_key(2, b=1)  # type: ignore[attr-defined]

    async def test_custom_key_and_tags(self, cache: CacheManager) -> None:
        @cached(cache, key=lambda user_id: f"user:{user_id}", tags=["users"])
        async def get_user(user_id: str) -> str:
            return f"user {user_id}"

        await get_user("7")
        assert await cache.get("user:7") == "user 7"
        assert cache.metadata.find_by_tag("users") == ["user:7"]

    async def test_invalidate(self, cache: CacheManager) -> None:
        calls = 0

        @cached(cache)
        async def count() -> int:
            nonlocal calls
            calls += 1
            return calls

        assert await count() == 1
        assert await count() == 1
        assert await count.invalidate() is True  # type: ignore[attr-defined]
        assert await count() == 2

    async def test_concurrent_calls_share_invocation(self, cache: CacheManager) -> None:
        calls = 0

        @cached(cache)
        async def slow(x: int) -> int:
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return x * 2

        assert await asyncio.gather(slow(3), slow(3), slow(3)) == [6, 6, 6]
        assert calls == 1
