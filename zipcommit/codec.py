from __future__ import annotations

import bz2
import io
import zlib
from typing import Optional

from .constants import (
    COPY_BUFFER_SIZE,
    METHOD_STORED,
    METHOD_DEFLATE,
    METHOD_BZIP2,
    METHOD_ZSTD,
    METHOD_NAMES,
    VERSION_DEFAULT,
    VERSION_BZIP2,
    VERSION_ZSTD,
)
from .errors import ArchiveFormatError, UnsupportedCompressionError

_HAS_ZSTD = False
try:  # zstd is an optional extra; selecting it without the module fails fast below
    import zstandard as _zstd_mod  # type: ignore
    from zstandard import ZstdError as _ZstdError  # type: ignore
    _HAS_ZSTD = True
except ImportError:
    _zstd_mod = None
    _ZstdError = RuntimeError


class Codec:
    """Compression strategy for one entry, identified by its ZIP method id."""

    def __init__(self, method: int, level: Optional[int] = None):
        self.method = method
        self.level = level

    def __repr__(self) -> str:
        return f"Codec({self.name!r}, level={self.level!r})"

    def __eq__(self, other) -> bool:
        if not isinstance(other, Codec):
            return NotImplemented
        return (self.method, self.level) == (other.method, other.level)

    @classmethod
    def by_name(cls, name: str, level: Optional[int] = None) -> "Codec":
        for method, known in METHOD_NAMES.items():
            if known == name.lower():
                return cls(method, level)
        raise UnsupportedCompressionError(f"unknown compression method: {name}")

    @property
    def name(self) -> str:
        return METHOD_NAMES.get(self.method, f"method-{self.method}")

    @property
    def version_needed(self) -> int:
        if self.method == METHOD_BZIP2:
            return VERSION_BZIP2
        if self.method == METHOD_ZSTD:
            return VERSION_ZSTD
        return VERSION_DEFAULT

    def ensure_available(self) -> None:
        if self.method not in METHOD_NAMES:
            raise UnsupportedCompressionError(f"unsupported compression method id: {self.method}")
        if self.method == METHOD_ZSTD and not _HAS_ZSTD:
            raise UnsupportedCompressionError("zstd compression selected but the zstandard module is not installed")

    def compress(self, data: bytes) -> bytes:
        self.ensure_available()
        if self.method == METHOD_STORED:
            return data
        if self.method == METHOD_DEFLATE:
            # ZIP stores raw deflate streams (no zlib header/trailer)
            c = zlib.compressobj(self.level if self.level is not None else 6, zlib.DEFLATED, -15)
            return c.compress(data) + c.flush()
        if self.method == METHOD_BZIP2:
            return bz2.compress(data, self.level if self.level is not None else 9)
        try:
            c = _zstd_mod.ZstdCompressor(level=self.level if self.level is not None else 3)
            return c.compress(data)
        except _ZstdError as e:
            raise ArchiveFormatError(f"zstd compression failed: {e}") from e

    def decompress(self, data: bytes, expected_size: Optional[int] = None) -> bytes:
        """Decode ``data``; with ``expected_size`` set, output beyond it is never produced.

        Raises:
            ArchiveFormatError: the stream is corrupt, truncated, or inflates past ``expected_size``.
        """
        self.ensure_available()
        if self.method == METHOD_STORED:
            return data
        # One byte over the declared size is enough to detect a lie
        limit = expected_size + 1 if expected_size is not None else 0
        try:
            if self.method == METHOD_DEFLATE:
                d = zlib.decompressobj(-15)
                out = d.decompress(data, limit)
                if d.unconsumed_tail or (limit and len(out) >= limit):
                    self._oversized(expected_size)
                out += d.flush()
                eof = d.eof
            elif self.method == METHOD_BZIP2:
                d = bz2.BZ2Decompressor()
                out = d.decompress(data, max_length=limit or -1)
                eof = d.eof
            else:
                out = self._zstd_decompress(data, limit)
                eof = True
        except (zlib.error, OSError, ValueError, EOFError, _ZstdError) as e:
            raise ArchiveFormatError(f"{self.name} decompression failed: {e}") from e
        if expected_size is not None and len(out) > expected_size:
            self._oversized(expected_size)
        if not eof:
            raise ArchiveFormatError(f"{self.name} stream ended before its end-of-stream marker")
        return out

    @staticmethod
    def _zstd_decompress(data: bytes, limit: int) -> bytes:
        # Frames written by other tools may omit the content size, so read through a bounded stream
        reader = _zstd_mod.ZstdDecompressor().stream_reader(io.BytesIO(data))
        chunks = []
        total = 0
        while not limit or total < limit:
            chunk = reader.read(limit - total if limit else COPY_BUFFER_SIZE)
            if not chunk:
                break
            chunks.append(chunk)
            total += len(chunk)
        return b"".join(chunks)

    def _oversized(self, expected_size: Optional[int]) -> None:
        raise ArchiveFormatError(f"{self.name} stream inflates beyond its declared size of {expected_size} bytes")
