"""Duration parsing and clock utilities."""

import re
import time

from cachestack.types import Duration

_DURATION_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)(ms|s|m|h|d)$")
_UNITS: dict[str, float] = {
    "ms": 0.001,
    "s": 1,
    "m": 60,
    "h": 3_600,
    "d": 86_400,
}


def parse_duration(duration: Duration) -> float:
    """Parse duration string to seconds. Passthrough if already a number."""
    if isinstance(duration, bool):
        raise ValueError(f"Invalid duration: {duration!r}")
    if isinstance(duration, (int, float)):
        if duration < 0:
            raise ValueError(f"Invalid duration: {duration!r}")
        return float(duration)
    if not isinstance(duration, str):
        raise TypeError(f"Duration must be a string or number, got {type(duration).__name__}")

    match = _DURATION_PATTERN.match(duration.strip())
    if not match:
        raise ValueError(f"Invalid duration: {duration!r}")

    value, unit = match.groups()
    return float(value) * _UNITS[unit]


def now_ms() -> int:
    """Current wall-clock time as a Unix timestamp in milliseconds."""
    return int(time.time() * 1000)
