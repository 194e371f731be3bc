"""Redis storage adapter (async only)."""

from __future__ import annotations

import base64
import json
from collections.abc import Iterable, Mapping
from typing import Any

from redis.exceptions import RedisError

from cachestack.adapters.base import entry_metadata
from cachestack.duration import now_ms
from cachestack.types import CacheEntry, Clock, HealthStatus


def _serialize_entry(entry: CacheEntry) -> str:
    """Serialize a cache entry to JSON."""
    return json.dumps(
        {
            "value": base64.b64encode(entry.value).decode("ascii"),
            "created_at": entry.created_at,
            "expires_at": entry.expires_at,
            "size": entry.size,
            "compressed": entry.compressed,
            "algorithm": entry.algorithm,
            "checksum": entry.checksum,
            "original_size": entry.original_size,
            "refreshed_at": entry.refreshed_at,
            "compute_time": entry.compute_time,
        }
    )


def _deserialize_entry(data: bytes | str) -> CacheEntry:
    """Deserialize JSON to a cache entry."""
    if isinstance(data, bytes):
        data = data.decode("utf-8")
    obj = json.loads(data)
    return CacheEntry(
        value=base64.b64decode(obj["value"]),
        created_at=obj["created_at"],
        expires_at=obj["expires_at"],
        size=obj["size"],
        compressed=obj.get("compressed", False),
        algorithm=obj.get("algorithm"),
        checksum=obj.get("checksum"),
        original_size=obj.get("original_size"),
        refreshed_at=obj.get("refreshed_at"),
        compute_time=obj.get("compute_time"),
    )


class AsyncRedisAdapter:
    """Async Redis storage adapter."""

    def __init__(
        self,
        client: Any,  # redis.asyncio.Redis
        *,
        prefix: str = "cachestack",
        clock: Clock = now_ms,
    ) -> None:
        self._client = client
        self._prefix = prefix
        self._clock = clock
        self._hits = 0
        self._misses = 0

    def _cache_key(self, key: str) -> str:
        """Generate full Redis key for cache entries."""
        return f"{self._prefix}:cache:{key}"

    def _strip(self, redis_key: bytes | str) -> str:
        if isinstance(redis_key, bytes):
            redis_key = redis_key.decode("utf-8")
        return redis_key[len(self._prefix) + len(":cache:") :]

    def _expiry(self, entry: CacheEntry, ttl: float | None) -> dict[str, int]:
        if ttl is not None:
            return {"px": int(ttl * 1000)} if ttl > 0 else {}
        return {"pxat": entry.expires_at} if entry.expires_at is not None else {}

    async def _scan(self, pattern: str | None) -> list[bytes | str]:
        cursor: int = 0
        match = self._cache_key(pattern or "*")
        found: list[bytes | str] = []
        while True:
            cursor, keys = await self._client.scan(cursor, match=match, count=100)
            found.extend(keys)
            if cursor == 0:
                return found

    async def get(self, key: str) -> CacheEntry | None:
        """Get a cache entry by key."""
        data = await self._client.get(self._cache_key(key))
        if data is None:
            self._misses += 1
            return None
        self._hits += 1
        return _deserialize_entry(data)

    async def set(self, key: str, entry: CacheEntry, *, ttl: float | None = None) -> None:
        """Store a cache entry with automatic expiration."""
        await self._client.set(
            self._cache_key(key), _serialize_entry(entry), **self._expiry(entry, ttl)
        )

    async def delete(self, key: str) -> bool:
        """Delete a cache entry."""
        return bool(await self._client.delete(self._cache_key(key)))

    async def has(self, key: str) -> bool:
        return bool(await self._client.exists(self._cache_key(key)))

    async def clear(self) -> None:
        """Clear all cached entries under this prefix."""
        keys = await self._scan(None)
        # Delete in chunks to keep individual commands small
        for i in range(0, len(keys), 100):
            await self._client.delete(*keys[i : i + 100])

    async def keys(self, pattern: str | None = None) -> list[str]:
        return [self._strip(k) for k in await self._scan(pattern)]

    async def get_many(self, keys: Iterable[str]) -> dict[str, CacheEntry | None]:
        keys = list(keys)
        if not keys:
            return {}
        values = await self._client.mget([self._cache_key(k) for k in keys])
        result: dict[str, CacheEntry | None] = {}
        for key, data in zip(keys, values):
            if data is None:
                self._misses += 1
                result[key] = None
            else:
                self._hits += 1
                result[key] = _deserialize_entry(data)
        return result

    async def set_many(
        self, entries: Mapping[str, CacheEntry], *, ttl: float | None = None
    ) -> None:
        if not entries:
            return
        async with self._client.pipeline(transaction=False) as pipe:
            for key, entry in entries.items():
                pipe.set(
                    self._cache_key(key), _serialize_entry(entry), **self._expiry(entry, ttl)
                )
            await pipe.execute()

    async def get_stats(self) -> dict[str, Any]:
        return {
            "items": len(await self._scan(None)),
            "hits": self._hits,
            "misses": self._misses,
            "prefix": self._prefix,
        }

    async def get_metadata(self, key: str) -> dict[str, Any] | None:
        data = await self._client.get(self._cache_key(key))
        if data is None:
            return None
        return entry_metadata(_deserialize_entry(data))

    async def health_check(self) -> HealthStatus:
        try:
            await self._client.ping()
        except (RedisError, OSError) as e:
            return HealthStatus(
                status="unhealthy",
                healthy=False,
                timestamp=self._clock(),
                details={"error": str(e)},
            )
        return HealthStatus(status="healthy", healthy=True, timestamp=self._clock())

    async def disconnect(self) -> None:
        """Close the Redis connection."""
        await self._client.aclose()
