"""Payload compression.

Compression is opt-in and size-gated. A result is only kept if it shrinks
the payload to at most ``max_ratio`` of its original size, so a stored
payload is never larger than the encoded value.
"""

from __future__ import annotations

import bz2
import gzip
import lzma
import zlib
from collections.abc import Callable
from dataclasses import dataclass

from cachestack.errors import DeserializationError, SerializationError

DEFAULT_THRESHOLD = 1024
DEFAULT_MAX_RATIO = 0.8
DEFAULT_LEVEL = 6

_Codec = tuple[Callable[[bytes], bytes], Callable[[bytes], bytes]]

ALGORITHMS: dict[str, _Codec] = {
    "gzip": (
        lambda data: gzip.compress(data, compresslevel=DEFAULT_LEVEL, mtime=0),
        gzip.decompress,
    ),
    "deflate": (lambda data: zlib.compress(data, DEFAULT_LEVEL), zlib.decompress),
    "bz2": (lambda data: bz2.compress(data, DEFAULT_LEVEL), bz2.decompress),
    "lzma": (lzma.compress, lzma.decompress),
}


@dataclass(frozen=True, slots=True)
class CompressionResult:
    data: bytes
    compressed: bool
    algorithm: str | None
    original_size: int
    compressed_size: int

    @property
    def ratio(self) -> float:
        if not self.original_size:
            return 1.0
        return self.compressed_size / self.original_size


def _uncompressed(data: bytes) -> CompressionResult:
    return CompressionResult(
        data=data,
        compressed=False,
        algorithm=None,
        original_size=len(data),
        compressed_size=len(data),
    )


def compress_if_needed(
    data: bytes,
    *,
    enabled: bool = True,
    threshold: int = DEFAULT_THRESHOLD,
    algorithm: str | None = None,
    max_ratio: float = DEFAULT_MAX_RATIO,
) -> CompressionResult:
    """Compress ``data`` when enabled and at least ``threshold`` bytes long.

    With no ``algorithm`` every available codec is tried and the smallest
    output wins.
    """
    if not enabled or len(data) < threshold:
        return _uncompressed(data)

    if algorithm is not None and algorithm not in ALGORITHMS:
        raise SerializationError(f"Unsupported compression algorithm: {algorithm!r}")
    candidates = [algorithm] if algorithm else list(ALGORITHMS)

    best: tuple[str, bytes] | None = None
    for name in candidates:
        compress, _ = ALGORITHMS[name]
        try:
            out = compress(data)
        except (OSError, ValueError, MemoryError) as e:
            raise SerializationError(f"Compression failed ({name}): {e}") from e
        if best is None or len(out) < len(best[1]):
            best = (name, out)

    assert best is not None
    name, out = best
    if len(out) > len(data) * max_ratio:
        return _uncompressed(data)
    return CompressionResult(
        data=out,
        compressed=True,
        algorithm=name,
        original_size=len(data),
        compressed_size=len(out),
    )


def decompress_if_needed(data: bytes, algorithm: str | None) -> bytes:
    """Reverse ``compress_if_needed``. ``None`` means the data is stored raw."""
    if algorithm is None:
        return data
    codec = ALGORITHMS.get(algorithm)
    if codec is None:
        raise DeserializationError(f"Unsupported compression algorithm: {algorithm!r}")
    _, decompress = codec
    try:
        return decompress(data)
    except (OSError, ValueError, EOFError, zlib.error, lzma.LZMAError) as e:
        raise DeserializationError(f"Decompression failed ({algorithm}): {e}") from e


def detect_compression(data: bytes) -> str | None:
    """Guess the algorithm from magic bytes."""
    if len(data) < 3:
        return None
    if data[:2] == b"\x1f\x8b":
        return "gzip"
    if data[0] == 0x78 and data[1] in (0x01, 0x5E, 0x9C, 0xDA):
        return "deflate"
    if data[:3] == b"BZh":
        return "bz2"
    if data[:6] == b"\xfd7zXZ\x00":
        return "lzma"
    return None


__all__ = [
    "ALGORITHMS",
    "CompressionResult",
    "compress_if_needed",
    "decompress_if_needed",
    "detect_compression",
]
