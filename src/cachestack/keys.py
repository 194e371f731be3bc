"""Cache key helpers."""

import fnmatch
import hashlib
import json
import re
from functools import lru_cache
from typing import Any

_INVALID_CHARS = re.compile(r"[^a-zA-Z0-9_:.\-]")
_MULTIPLE_COLONS = re.compile(r":{2,}")


def normalize_key(key: str) -> str:
    """Replace unsupported characters and collapse repeated separators."""
    key = _INVALID_CHARS.sub("_", key)
    return _MULTIPLE_COLONS.sub(":", key).strip(":")


def generate_key(namespace: str, *parts: Any) -> str:
    """Build a namespaced key: generate_key("user", 123, "profile") -> "user:123:profile"."""
    if not namespace:
        raise ValueError("Namespace is required")
    rendered = [namespace.lower()]
    for part in parts:
        rendered.append(part if isinstance(part, str) else json.dumps(part, default=str))
    return normalize_key(":".join(rendered))


def function_key(fn_name: str, args: tuple[Any, ...], kwargs: dict[str, Any]) -> str:
    """Generate a cache key from a function name and its arguments."""
    args_hash = hashlib.sha256(
        json.dumps([args, kwargs], sort_keys=True, default=str).encode()
    ).hexdigest()[:16]
    return f"fn:{fn_name}:{args_hash}"


@lru_cache(maxsize=128)
def _compile(pattern: str) -> re.Pattern[str]:
    return re.compile(fnmatch.translate(pattern))


def matches_pattern(key: str, pattern: str | None) -> bool:
    """Glob match ("user:*"). A missing or "*" pattern matches everything."""
    if pattern is None or pattern == "*":
        return True
    return _compile(pattern).match(key) is not None
