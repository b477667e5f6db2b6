"""Bounded accumulation of streamed bytes into decodable buffers."""
from __future__ import annotations

from typing import AsyncIterable, AsyncIterator, Iterable, Iterator, Optional

DEFAULT_THRESHOLD = 10 * 1024 * 1024


class ChunkAssembler:
    """Accumulates chunks and releases a buffer once the threshold is exceeded.

    A released buffer is at most ``threshold`` plus the size of the chunk that
    pushed it over, so peak memory stays independent of the object size.
    One assembler belongs to exactly one in-flight partition read.
    """

    def __init__(self, threshold: int = DEFAULT_THRESHOLD) -> None:
        if threshold <= 0:
            raise ValueError("threshold must be positive")
        self.threshold = threshold
        self._buffer = bytearray()

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def feed(self, chunk: bytes) -> Optional[bytes]:
        """Add a chunk; return a full buffer when the threshold was exceeded."""
        if not chunk:
            return None
        self._buffer.extend(chunk)
        if len(self._buffer) > self.threshold:
            return self._take()
        return None

    def flush(self) -> Optional[bytes]:
        """Return the non-empty remainder at end of stream."""
        if not self._buffer:
            return None
        return self._take()

    def _take(self) -> bytes:
        data = bytes(self._buffer)
        self._buffer.clear()
        return data

    def assemble(self, chunks: Iterable[bytes]) -> Iterator[bytes]:
        for chunk in chunks:
            ready = self.feed(chunk)
            if ready is not None:
                yield ready
        tail = self.flush()
        if tail is not None:
            yield tail

    async def assemble_async(self, chunks: AsyncIterable[bytes]) -> AsyncIterator[bytes]:
        async for chunk in chunks:
            ready = self.feed(chunk)
            if ready is not None:
                yield ready
        tail = self.flush()
        if tail is not None:
            yield tail


def assemble(chunks: Iterable[bytes], threshold: int = DEFAULT_THRESHOLD) -> Iterator[bytes]:
    """Convenience wrapper using a fresh assembler."""
    return ChunkAssembler(threshold).assemble(chunks)


__all__ = ["ChunkAssembler", "DEFAULT_THRESHOLD", "assemble"]
