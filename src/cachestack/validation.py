"""Argument validation for cache operations.

Everything here raises before any I/O is attempted.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from typing import Any

from cachestack.errors import CacheErrorCode, InvalidArgumentError, InvalidKeyError
from cachestack.types import CacheOptions

MAX_KEY_LENGTH = 1024


def validate_key(key: Any, *, max_length: int = MAX_KEY_LENGTH) -> str:
    """Validate a cache key and return it."""
    if not isinstance(key, str):
        raise InvalidKeyError(
            f"Cache key must be a string, got {type(key).__name__}",
            operation="validate",
        )
    if not key:
        raise InvalidKeyError("Cache key cannot be empty", operation="validate")
    if len(key) > max_length:
        raise InvalidKeyError(
            f"Cache key exceeds maximum length of {max_length} characters",
            code=CacheErrorCode.KEY_TOO_LONG,
            operation="validate",
            key=key[:64],
        )
    return key


def validate_keys(keys: Iterable[Any], *, max_length: int = MAX_KEY_LENGTH) -> list[str]:
    if isinstance(keys, str):
        raise InvalidArgumentError(
            "Expected a collection of keys, got a single string",
            operation="validate",
        )
    return [validate_key(k, max_length=max_length) for k in keys]


def validate_ttl(ttl: Any) -> None:
    if ttl is None:
        return
    if isinstance(ttl, bool) or not isinstance(ttl, (int, float)):
        raise InvalidArgumentError(
            f"TTL must be a non-negative number, got {ttl!r}", operation="validate"
        )
    if ttl < 0 or math.isnan(ttl):
        raise InvalidArgumentError(
            f"TTL must be a non-negative number, got {ttl!r}", operation="validate"
        )


def validate_tags(tags: Any) -> None:
    if isinstance(tags, str):
        raise InvalidArgumentError(
            "Tags must be a collection of strings, got a single string",
            operation="validate",
        )
    for tag in tags:
        if not isinstance(tag, str) or not tag:
            raise InvalidArgumentError(
                f"Tags must be non-empty strings, got {tag!r}", operation="validate"
            )


def validate_options(options: CacheOptions | None) -> None:
    """Validate per-call cache options."""
    if options is None:
        return
    if not isinstance(options, CacheOptions):
        raise InvalidArgumentError(
            f"Cache options must be CacheOptions, got {type(options).__name__}",
            operation="validate",
        )
    validate_ttl(options.ttl)
    validate_tags(options.tags)
    if options.refresh_threshold is not None and not (
        0 < options.refresh_threshold <= 1
    ):
        raise InvalidArgumentError(
            "refresh_threshold must be in (0, 1]", operation="validate"
        )
    if options.compression_threshold is not None and options.compression_threshold < 0:
        raise InvalidArgumentError(
            "compression_threshold must be non-negative", operation="validate"
        )
