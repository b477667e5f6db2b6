"""Flow-controlled emission of filtered partition records.

A producer task walks the selected partitions (open stream, assemble
chunks, decode lazily, filter) and puts accepted records on a bounded
queue. The consumer side drains that queue into a sink. When the sink is
slow the queue fills up and the producer blocks on ``put``, which throttles
remote reads without any polling.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
)

from .chunking import ChunkAssembler, DEFAULT_THRESHOLD
from .config import StreamingConfig
from .decoding import ColumnarDecoder, FailureCallback, Record
from .errors import NotFoundError
from .filtering import FilterSpec, Predicate, compose
from .object_store import (
    DEFAULT_READ_CHUNK,
    ObjectStoreReader,
    RetryPolicy,
    call_once,
    open_ranged,
)

logger = logging.getLogger(__name__)

CancelCheck = Callable[[], bool]

_END = object()


@dataclass
class _Failure:
    error: BaseException


class RecordSink(Protocol):
    """Consumer of emitted records; ``closed`` signals cancellation."""

    @property
    def closed(self) -> bool:
        """True once the consumer no longer wants records."""

    async def push(self, record: Record) -> None:
        """Deliver one record; may await to apply backpressure."""


@dataclass
class StreamReport:
    """Outcome of one query, including partitions that yielded nothing.

    ``missing`` holds partitions whose object does not exist; ``failed``
    holds partitions that could not be read or decoded, with the reason.
    """

    accepted: int = 0
    emitted: int = 0
    partitions_read: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)
    cancelled: bool = False
    limit_reached: bool = False

    @property
    def success(self) -> bool:
        return True

    def as_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "count": self.emitted,
            "partitions_read": list(self.partitions_read),
            "missing": list(self.missing),
            "failed": dict(self.failed),
            "skipped": list(self.skipped),
            "cancelled": self.cancelled,
            "limit_reached": self.limit_reached,
        }


def ndjson_line(record: Mapping[str, Any]) -> str:
    return json.dumps(record, ensure_ascii=False, default=str) + "\n"


class CollectingSink:
    """Keeps every pushed record in memory."""

    def __init__(self) -> None:
        self.records: List[Record] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True

    async def push(self, record: Record) -> None:
        self.records.append(record)


class NDJSONSink:
    """Writes newline-delimited JSON through a text writer callable."""

    def __init__(self, write: Callable[[str], Any], flush: Optional[Callable[[], Any]] = None) -> None:
        self._write = write
        self._flush = flush
        self._closed = False
        self.lines = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True

    async def push(self, record: Record) -> None:
        try:
            self._write(ndjson_line(record))
            if self._flush is not None:
                self._flush()
        except BrokenPipeError:
            logger.info("Consumer went away after %s lines; closing sink", self.lines)
            self._closed = True
            return
        self.lines += 1


class StreamEmitter:
    """Drives read, assemble, decode, filter and push for a list of partitions.

    An object that fits in one assembled buffer is decoded from memory. A
    larger one is decoded from a ranged, seekable view of the object, one
    row group at a time, reusing the bytes already read as its head.
    """

    def __init__(
        self,
        reader: ObjectStoreReader,
        decoder: ColumnarDecoder,
        chunk_threshold: int = DEFAULT_THRESHOLD,
        read_chunk_bytes: int = DEFAULT_READ_CHUNK,
        max_partitions: int = 3,
        queue_size: int = 256,
        retry: Optional[RetryPolicy] = None,
    ) -> None:
        self._reader = reader
        self._decoder = decoder
        self.chunk_threshold = chunk_threshold
        self.read_chunk_bytes = read_chunk_bytes
        self.max_partitions = max_partitions
        self.queue_size = queue_size
        self._retry = retry or call_once

    @classmethod
    def from_config(
        cls,
        reader: ObjectStoreReader,
        decoder: ColumnarDecoder,
        config: StreamingConfig,
        retry: Optional[RetryPolicy] = None,
    ) -> "StreamEmitter":
        return cls(
            reader,
            decoder,
            chunk_threshold=config.chunk_threshold_bytes,
            read_chunk_bytes=config.read_chunk_bytes,
            max_partitions=config.max_partitions,
            queue_size=config.queue_size,
            retry=retry,
        )

    async def emit(
        self,
        paths: Sequence[str],
        spec: FilterSpec,
        sink: RecordSink,
        extra: Optional[Predicate] = None,
    ) -> StreamReport:
        """Push every accepted record to ``sink`` and return the query report."""
        report = StreamReport()
        records = self.stream(paths, spec, report=report, is_cancelled=lambda: sink.closed, extra=extra)
        try:
            while not sink.closed:
                try:
                    record = await anext(records)
                except StopAsyncIteration:
                    break
                await sink.push(record)
            else:
                report.cancelled = True
        finally:
            await records.aclose()
        logger.info(
            "Emitted %s records from %s partition(s) missing=%s failed=%s cancelled=%s",
            report.emitted,
            len(report.partitions_read),
            len(report.missing),
            len(report.failed),
            report.cancelled,
        )
        return report

    async def stream(
        self,
        paths: Sequence[str],
        spec: FilterSpec,
        report: Optional[StreamReport] = None,
        is_cancelled: Optional[CancelCheck] = None,
        extra: Optional[Predicate] = None,
    ) -> AsyncIterator[Record]:
        """Yield accepted records in partition order, then record order."""
        report = report if report is not None else StreamReport()
        cancelled = is_cancelled or (lambda: False)
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        producer = asyncio.create_task(
            self._produce(list(paths), compose(spec, extra), spec.limit, queue, report, cancelled)
        )
        try:
            while True:
                item = await queue.get()
                if item is _END:
                    break
                if isinstance(item, _Failure):
                    raise item.error
                report.emitted += 1
                yield item
        finally:
            if not producer.done():
                producer.cancel()
            try:
                await producer
            except asyncio.CancelledError:
                pass

    async def _produce(
        self,
        paths: List[str],
        predicate: Predicate,
        limit: Optional[int],
        queue: asyncio.Queue,
        report: StreamReport,
        is_cancelled: CancelCheck,
    ) -> None:
        try:
            await self._fill(paths, predicate, limit, queue, report, is_cancelled)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await queue.put(_Failure(exc))
            return
        await queue.put(_END)

    async def _fill(
        self,
        paths: List[str],
        predicate: Predicate,
        limit: Optional[int],
        queue: asyncio.Queue,
        report: StreamReport,
        is_cancelled: CancelCheck,
    ) -> None:
        if len(paths) > self.max_partitions:
            report.skipped = paths[self.max_partitions :]
            logger.info(
                "Query touches %s partitions; reading the first %s",
                len(paths),
                self.max_partitions,
            )
            paths = paths[: self.max_partitions]
        if limit is not None and limit <= 0:
            report.limit_reached = True
            return
        for path in paths:
            if is_cancelled():
                report.cancelled = True
                return
            try:
                finished = await self._read_partition(path, predicate, limit, queue, report, is_cancelled)
            except NotFoundError:
                logger.warning("Partition %s not found; no data for it", path)
                report.missing.append(path)
                continue
            except Exception as exc:
                logger.error("Partition %s unreadable: %s", path, exc)
                report.failed[path] = str(exc)
                continue
            if finished:
                return

    async def _read_partition(
        self,
        path: str,
        predicate: Predicate,
        limit: Optional[int],
        queue: asyncio.Queue,
        report: StreamReport,
        is_cancelled: CancelCheck,
    ) -> bool:
        """Stream one partition; return True when the query is done."""
        stream = await asyncio.to_thread(
            self._retry, lambda: self._reader.open_stream(path, self.read_chunk_bytes), path
        )
        report.partitions_read.append(path)
        assembler = ChunkAssembler(self.chunk_threshold)
        failures: List[Exception] = []

        def on_failure(_source, exc: Exception) -> None:
            failures.append(exc)

        try:
            while True:
                if is_cancelled():
                    report.cancelled = True
                    return True
                chunk = await asyncio.to_thread(stream.read_chunk)
                if chunk is None:
                    buffer = assembler.flush()
                    if buffer is None:
                        return False
                    records = self._decoder.decode_lazy(buffer, source=path, on_failure=on_failure)
                    try:
                        return await self._push(records, predicate, limit, queue, report, is_cancelled)
                    finally:
                        records.close()
                head = assembler.feed(chunk)
                if head is not None:
                    stream.close()
                    return await self._read_row_groups(
                        path, head, predicate, limit, queue, report, is_cancelled, on_failure
                    )
        finally:
            stream.close()
            if failures:
                report.failed[path] = "; ".join(str(failure) for failure in failures)

    async def _read_row_groups(
        self,
        path: str,
        head: bytes,
        predicate: Predicate,
        limit: Optional[int],
        queue: asyncio.Queue,
        report: StreamReport,
        is_cancelled: CancelCheck,
        on_failure: FailureCallback,
    ) -> bool:
        """Decode an object larger than one buffer from ranged reads."""
        info = await asyncio.to_thread(self._retry, lambda: self._reader.stat(path), path)
        logger.info("Partition %s is %s bytes; decoding row groups from ranged reads", path, info.size)
        handle = open_ranged(
            self._reader, path, info.size, head=head, buffer_size=self.read_chunk_bytes, retry=self._retry
        )
        batches = self._decoder.decode_batches(handle, source=path, on_failure=on_failure)
        try:
            while True:
                if is_cancelled():
                    report.cancelled = True
                    return True
                batch = await asyncio.to_thread(next, batches, None)
                if batch is None:
                    return False
                if await self._push(batch, predicate, limit, queue, report, is_cancelled):
                    return True
        finally:
            # After cancellation a worker thread may still be inside the generator.
            if not batches.gi_running:
                batches.close()
                handle.close()

    async def _push(
        self,
        records: Iterable[Record],
        predicate: Predicate,
        limit: Optional[int],
        queue: asyncio.Queue,
        report: StreamReport,
        is_cancelled: CancelCheck,
    ) -> bool:
        for record in records:
            if not predicate(record):
                continue
            if is_cancelled():
                report.cancelled = True
                return True
            await queue.put(record)
            report.accepted += 1
            if limit is not None and report.accepted >= limit:
                report.limit_reached = True
                return True
        return False


__all__ = [
    "CollectingSink",
    "NDJSONSink",
    "RecordSink",
    "StreamEmitter",
    "StreamReport",
    "ndjson_line",
]
