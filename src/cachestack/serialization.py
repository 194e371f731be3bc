"""Type-preserving serialization pipeline.

Values are encoded to JSON. Types JSON cannot represent natively are wrapped
in a marker object ``{"__type": <tag>, "__value": <payload>}`` and restored
on the way back:

    datetime, date, time, timedelta, Decimal, UUID, re.Pattern, exceptions,
    set, frozenset, tuple, bytes, bytearray, array.array, NaN/Infinity,
    dicts with non-string keys ("map") and dicts holding a "__type" key ("dict").

The encoded bytes are then optionally compressed and checksummed. The
checksum covers the encoded bytes before compression.
"""

from __future__ import annotations

import array
import base64
import builtins
import hashlib
import json
import math
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import UUID

from cachestack.compression import (
    DEFAULT_MAX_RATIO,
    DEFAULT_THRESHOLD,
    compress_if_needed,
    decompress_if_needed,
)
from cachestack.duration import now_ms
from cachestack.errors import (
    DataIntegrityError,
    DeserializationError,
    SerializationError,
)
from cachestack.types import CacheEntry, Clock

TYPE_MARKER = "__type"
VALUE_MARKER = "__value"


def _tag(type_name: str, payload: Any) -> dict[str, Any]:
    return {TYPE_MARKER: type_name, VALUE_MARKER: payload}


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(data: str) -> bytes:
    return base64.b64decode(data.encode("ascii"), validate=True)


def _encode(value: Any, path: set[int]) -> Any:
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if math.isnan(value):
            return _tag("float", "NaN")
        if math.isinf(value):
            return _tag("float", "Infinity" if value > 0 else "-Infinity")
        return value
    # datetime before date: datetime is a date subclass
    if isinstance(value, datetime):
        return _tag("datetime", value.isoformat())
    if isinstance(value, date):
        return _tag("date", value.isoformat())
    if isinstance(value, time):
        return _tag("time", value.isoformat())
    if isinstance(value, timedelta):
        return _tag("timedelta", [value.days, value.seconds, value.microseconds])
    if isinstance(value, Decimal):
        return _tag("decimal", str(value))
    if isinstance(value, UUID):
        return _tag("uuid", str(value))
    if isinstance(value, re.Pattern):
        return _tag(
            "regexp", {"pattern": _encode(value.pattern, path), "flags": int(value.flags)}
        )
    if isinstance(value, BaseException):
        return _tag(
            "error",
            {
                "name": type(value).__name__,
                "module": type(value).__module__,
                "args": [_encode(a, path) for a in value.args],
            },
        )
    if isinstance(value, bytes):
        return _tag("bytes", _b64(value))
    if isinstance(value, bytearray):
        return _tag("bytearray", _b64(bytes(value)))
    if isinstance(value, memoryview):
        return _tag("bytes", _b64(value.tobytes()))
    if isinstance(value, array.array):
        return _tag("array", {"typecode": value.typecode, "data": _b64(value.tobytes())})

    if isinstance(value, (list, tuple, set, frozenset, dict)):
        marker = id(value)
        if marker in path:
            raise SerializationError("Cannot serialize circular reference")
        path.add(marker)
        try:
            return _encode_container(value, path)
        finally:
            path.discard(marker)

    raise SerializationError(f"Unsupported type for caching: {type(value).__name__}")


def _encode_container(value: Any, path: set[int]) -> Any:
    if isinstance(value, list):
        return [_encode(v, path) for v in value]
    if isinstance(value, tuple):
        return _tag("tuple", [_encode(v, path) for v in value])
    if isinstance(value, frozenset):
        return _tag("frozenset", [_encode(v, path) for v in value])
    if isinstance(value, set):
        return _tag("set", [_encode(v, path) for v in value])
    if all(isinstance(k, str) for k in value):
        if TYPE_MARKER not in value:
            return {k: _encode(v, path) for k, v in value.items()}
        return _tag("dict", [[k, _encode(v, path)] for k, v in value.items()])
    return _tag("map", [[_encode(k, path), _encode(v, path)] for k, v in value.items()])


def _hashable(value: Any) -> Any:
    # Decoded lists that were tuples/sets are already restored; lists used
    # as keys can only come from tampered payloads.
    if isinstance(value, list):
        raise DeserializationError("Unhashable map key in payload")
    return value


def _restore_error(payload: dict[str, Any]) -> BaseException:
    args = [_decode(a) for a in payload.get("args", [])]
    cls = getattr(builtins, payload.get("name", ""), None)
    if (
        payload.get("module") == "builtins"
        and isinstance(cls, type)
        and issubclass(cls, BaseException)
    ):
        try:
            return cls(*args)
        except TypeError:
            pass
    return Exception(*args)


def _revive(type_name: str, payload: Any) -> Any:
    if type_name == "float":
        return {"NaN": math.nan, "Infinity": math.inf, "-Infinity": -math.inf}[payload]
    if type_name == "datetime":
        return datetime.fromisoformat(payload)
    if type_name == "date":
        return date.fromisoformat(payload)
    if type_name == "time":
        return time.fromisoformat(payload)
    if type_name == "timedelta":
        days, seconds, micros = payload
        return timedelta(days=days, seconds=seconds, microseconds=micros)
    if type_name == "decimal":
        return Decimal(payload)
    if type_name == "uuid":
        return UUID(payload)
    if type_name == "regexp":
        return re.compile(_decode(payload["pattern"]), payload["flags"])
    if type_name == "error":
        return _restore_error(payload)
    if type_name == "bytes":
        return _unb64(payload)
    if type_name == "bytearray":
        return bytearray(_unb64(payload))
    if type_name == "array":
        return array.array(payload["typecode"], _unb64(payload["data"]))
    if type_name == "tuple":
        return tuple(_decode(v) for v in payload)
    if type_name == "set":
        return {_hashable(_decode(v)) for v in payload}
    if type_name == "frozenset":
        return frozenset(_hashable(_decode(v)) for v in payload)
    if type_name == "dict":
        return {k: _decode(v) for k, v in payload}
    if type_name == "map":
        return {_hashable(_decode(k)): _decode(v) for k, v in payload}
    raise DeserializationError(f"Unknown type marker: {type_name!r}")


def _decode(obj: Any) -> Any:
    if isinstance(obj, list):
        return [_decode(v) for v in obj]
    if isinstance(obj, dict):
        if len(obj) == 2 and TYPE_MARKER in obj and VALUE_MARKER in obj:
            return _revive(obj[TYPE_MARKER], obj[VALUE_MARKER])
        return {k: _decode(v) for k, v in obj.items()}
    return obj


def encode_value(value: Any) -> bytes:
    """Encode a value to UTF-8 JSON bytes, tagging non-JSON types."""
    tagged = _encode(value, set())
    try:
        return json.dumps(
            tagged, separators=(",", ":"), ensure_ascii=False, allow_nan=False
        ).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise SerializationError(f"Failed to serialize value: {e}") from e


def decode_value(data: bytes) -> Any:
    """Inverse of ``encode_value``."""
    try:
        obj = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DeserializationError(f"Failed to deserialize value: {e}") from e
    try:
        return _decode(obj)
    except DeserializationError:
        raise
    except (KeyError, TypeError, ValueError, InvalidOperation, re.error) as e:
        raise DeserializationError(f"Malformed typed value: {e}") from e


def checksum(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()[:16]


@dataclass(frozen=True, slots=True)
class PayloadMetadata:
    checksum: str | None
    is_compressed: bool
    algorithm: str | None
    size: int  # stored size
    original_size: int  # encoded size before compression


@dataclass(frozen=True, slots=True)
class SerializedPayload:
    data: bytes
    metadata: PayloadMetadata


class Serializer:
    """Encode, compress and checksum values for storage."""

    def __init__(
        self,
        *,
        compression: bool = False,
        compression_threshold: int = DEFAULT_THRESHOLD,
        compression_algorithm: str | None = None,
        compression_max_ratio: float = DEFAULT_MAX_RATIO,
        checksum: bool = False,
    ) -> None:
        self._compression = compression
        self._threshold = compression_threshold
        self._algorithm = compression_algorithm
        self._max_ratio = compression_max_ratio
        self._checksum = checksum

    def serialize(
        self,
        value: Any,
        *,
        compression: bool | None = None,
        compression_threshold: int | None = None,
    ) -> SerializedPayload:
        encoded = encode_value(value)
        digest = checksum(encoded) if self._checksum else None
        result = compress_if_needed(
            encoded,
            enabled=self._compression if compression is None else compression,
            threshold=(
                self._threshold if compression_threshold is None else compression_threshold
            ),
            algorithm=self._algorithm,
            max_ratio=self._max_ratio,
        )
        return SerializedPayload(
            data=result.data,
            metadata=PayloadMetadata(
                checksum=digest,
                is_compressed=result.compressed,
                algorithm=result.algorithm,
                size=result.compressed_size,
                original_size=result.original_size,
            ),
        )

    def deserialize(self, payload: SerializedPayload) -> Any:
        meta = payload.metadata
        encoded = decompress_if_needed(
            payload.data, meta.algorithm if meta.is_compressed else None
        )
        if meta.checksum is not None and checksum(encoded) != meta.checksum:
            raise DataIntegrityError(
                "Checksum mismatch", details={"expected": meta.checksum}
            )
        return decode_value(encoded)


class EntryCodec:
    """Turns values into adapter-level CacheEntry objects and back."""

    def __init__(self, serializer: Serializer, *, clock: Clock = now_ms) -> None:
        self._serializer = serializer
        self._clock = clock

    def encode(
        self,
        value: Any,
        *,
        ttl: float | None,
        compute_time: float | None = None,
        compression: bool | None = None,
        compression_threshold: int | None = None,
    ) -> CacheEntry:
        payload = self._serializer.serialize(
            value, compression=compression, compression_threshold=compression_threshold
        )
        now = self._clock()
        meta = payload.metadata
        return CacheEntry(
            value=payload.data,
            created_at=now,
            expires_at=now + int(ttl * 1000) if ttl and ttl > 0 else None,
            size=meta.size,
            compressed=meta.is_compressed,
            algorithm=meta.algorithm,
            checksum=meta.checksum,
            original_size=meta.original_size,
            refreshed_at=now,
            compute_time=compute_time,
        )

    def decode(self, entry: CacheEntry) -> Any:
        return self._serializer.deserialize(
            SerializedPayload(
                data=entry.value,
                metadata=PayloadMetadata(
                    checksum=entry.checksum,
                    is_compressed=entry.compressed,
                    algorithm=entry.algorithm,
                    size=entry.size,
                    original_size=entry.original_size or entry.size,
                ),
            )
        )


__all__ = [
    "EntryCodec",
    "PayloadMetadata",
    "SerializedPayload",
    "Serializer",
    "checksum",
    "decode_value",
    "encode_value",
]
