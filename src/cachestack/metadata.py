"""In-memory metadata side table: tags, access bookkeeping and expiry."""

from __future__ import annotations

import copy
from collections.abc import Iterable, Iterator

from cachestack.duration import now_ms
from cachestack.keys import matches_pattern
from cachestack.types import Clock, EntryMetadata


class MetadataIndex:
    """Tracks metadata per cache key.

    The index never holds values. ``created_at`` is fixed on first write,
    ``updated_at`` moves with every write and ``expires_at`` is
    ``updated_at + ttl * 1000`` for a positive ttl, matching the stored entry.
    A write to a key whose record has already expired starts a fresh record.

    Example:
        index = MetadataIndex()
        index.set("user:1", tags=["users"], ttl=60)
        index.find_by_tag("users")  # ["user:1"]
    """

    def __init__(self, *, clock: Clock = now_ms) -> None:
        self._clock = clock
        self._entries: dict[str, EntryMetadata] = {}

    def set(
        self,
        key: str,
        *,
        tags: Iterable[str] | None = None,
        size: int | None = None,
        ttl: float | None = None,
        compute_time: float | None = None,
        refreshed_at: int | None = None,
        replace_tags: bool = False,
    ) -> EntryMetadata:
        """Create or merge metadata for ``key`` and return a copy.

        Omitted fields keep their previous value. Tags are unioned unless
        ``replace_tags`` is set.
        """
        now = self._clock()
        meta = self._entries.get(key)
        if meta is None or (meta.expires_at is not None and meta.expires_at <= now):
            meta = EntryMetadata(key=key, created_at=now)
            self._entries[key] = meta

        if tags is not None:
            meta.tags = set(tags) if replace_tags else meta.tags | set(tags)
        if size is not None:
            meta.size = size
        if ttl is not None:
            meta.ttl = ttl
        if compute_time is not None:
            meta.compute_time = compute_time
        if refreshed_at is not None:
            meta.refreshed_at = refreshed_at
        meta.updated_at = now
        meta.last_accessed = now
        meta.expires_at = (
            now + int(meta.ttl * 1000)
            if meta.ttl is not None and meta.ttl > 0
            else None
        )
        return copy.deepcopy(meta)

    def get(self, key: str) -> EntryMetadata | None:
        meta = self._entries.get(key)
        return copy.deepcopy(meta) if meta is not None else None

    def get_all(self) -> dict[str, EntryMetadata]:
        return {key: copy.deepcopy(meta) for key, meta in self._entries.items()}

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def record_access(self, key: str) -> None:
        """Bump access count and time. No-op for unknown keys."""
        meta = self._entries.get(key)
        if meta is None:
            return
        meta.access_count += 1
        meta.last_accessed = self._clock()

    def find_by_tag(self, tag: str) -> list[str]:
        return [key for key, meta in self._entries.items() if tag in meta.tags]

    def find_by_prefix(self, prefix: str) -> list[str]:
        return [key for key in self._entries if key.startswith(prefix)]

    def find_by_pattern(self, pattern: str) -> list[str]:
        return [key for key in self._entries if matches_pattern(key, pattern)]

    def find_expired(self) -> list[str]:
        """Keys whose expiry has passed. Callers evict them from storage."""
        now = self._clock()
        return [
            key
            for key, meta in self._entries.items()
            if meta.expires_at is not None and meta.expires_at <= now
        ]

    def is_expired(self, key: str) -> bool:
        meta = self._entries.get(key)
        return (
            meta is not None
            and meta.expires_at is not None
            and meta.expires_at <= self._clock()
        )

    def keys(self) -> list[str]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._entries))


__all__ = ["MetadataIndex"]
