"""Parquet decoding with a sticky primary/fallback backend selection.

Two interchangeable backends read Parquet buffers:

* ``pyarrow``: the primary, reads straight from memory.
* ``duckdb``: the fallback, spills the buffer to a temporary file and scans
  it with ``read_parquet``.

Objects too large for one buffer are decoded from a seekable handle instead
(see :meth:`ColumnarDecoder.decode_batches`). The primary reads the footer
and then one row group at a time through that handle.

The :class:`BackendSelector` initialises the primary on first use. If that
fails, or if the primary's first decode raises, the primary is demoted for
the lifetime of the selector and never retried. When neither backend can be
initialised every decode returns an empty result, so callers must read
"zero records" as a possible degraded outcome rather than proof of an empty
partition.
"""
from __future__ import annotations

import logging
import os
import shutil
import tempfile
import threading
from dataclasses import dataclass
from typing import (
    Any,
    BinaryIO,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Protocol,
    TypeVar,
)

from .errors import BackendUnavailable, DecodeFailure, ObjectStoreError

logger = logging.getLogger(__name__)

Record = Dict[str, Any]
FailureCallback = Callable[[Optional[str], Exception], None]
T = TypeVar("T")

DEFAULT_BATCH_SIZE = 1024
SPILL_COPY_BYTES = 1024 * 1024


@dataclass(frozen=True)
class FieldInfo:
    name: str
    type: str
    nullable: bool = True


class DecoderBackend(Protocol):
    name: str

    def decode_whole(self, buffer: bytes) -> List[Record]:
        """Materialise every row of the buffer."""

    def decode_streaming(self, buffer: bytes) -> Iterator[Record]:
        """Yield rows one at a time in on-disk order."""

    def decode_file_batches(self, handle: BinaryIO) -> Iterator[List[Record]]:
        """Yield lists of rows from a seekable handle, holding one row group at a time."""

    def describe_schema(self, buffer: bytes) -> List[FieldInfo]:
        """Return the column list of the buffer."""


class PyArrowBackend:
    name = "pyarrow"

    def __init__(self, batch_size: int = DEFAULT_BATCH_SIZE) -> None:
        # Imported here so a missing or broken native build demotes this
        # backend instead of breaking the module import.
        import pyarrow
        import pyarrow.parquet

        self._pa = pyarrow
        self._pq = pyarrow.parquet
        self.batch_size = batch_size

    def _open(self, buffer: bytes):
        return self._pq.ParquetFile(self._pa.BufferReader(buffer))

    def decode_whole(self, buffer: bytes) -> List[Record]:
        table = self._pq.read_table(self._pa.BufferReader(buffer))
        return table.to_pylist()

    def decode_streaming(self, buffer: bytes) -> Iterator[Record]:
        parquet_file = self._open(buffer)
        for batch in parquet_file.iter_batches(batch_size=self.batch_size):
            yield from batch.to_pylist()

    def decode_file_batches(self, handle: BinaryIO) -> Iterator[List[Record]]:
        handle.seek(0)
        parquet_file = self._pq.ParquetFile(handle)
        for index in range(parquet_file.num_row_groups):
            table = parquet_file.read_row_group(index)
            for batch in table.to_batches(max_chunksize=self.batch_size):
                yield batch.to_pylist()

    def describe_schema(self, buffer: bytes) -> List[FieldInfo]:
        schema = self._pq.read_schema(self._pa.BufferReader(buffer))
        return [FieldInfo(field.name, str(field.type), field.nullable) for field in schema]


class DuckDBBackend:
    name = "duckdb"

    def __init__(self, batch_size: int = DEFAULT_BATCH_SIZE) -> None:
        import duckdb

        self._duckdb = duckdb
        self.batch_size = batch_size
        self._duckdb.connect(":memory:").close()

    @staticmethod
    def _spill(buffer: bytes) -> str:
        handle = tempfile.NamedTemporaryFile(suffix=".parquet", delete=False)
        try:
            handle.write(buffer)
        finally:
            handle.close()
        return handle.name

    @staticmethod
    def _spill_handle(source: BinaryIO) -> str:
        handle = tempfile.NamedTemporaryFile(suffix=".parquet", delete=False)
        try:
            source.seek(0)
            shutil.copyfileobj(source, handle, SPILL_COPY_BYTES)
        except BaseException:
            handle.close()
            os.remove(handle.name)
            raise
        handle.close()
        return handle.name

    @staticmethod
    def _scan(path: str) -> str:
        escaped = path.replace("'", "''")
        return f"SELECT * FROM read_parquet('{escaped}')"

    def _scan_batches(self, path: str) -> Iterator[List[Record]]:
        """Yield row lists from a spilled file and remove it afterwards."""
        conn = self._duckdb.connect(":memory:")
        try:
            cursor = conn.execute(self._scan(path))
            columns = [column[0] for column in cursor.description]
            while True:
                rows = cursor.fetchmany(self.batch_size)
                if not rows:
                    break
                yield [dict(zip(columns, row)) for row in rows]
        finally:
            conn.close()
            os.remove(path)

    def decode_whole(self, buffer: bytes) -> List[Record]:
        return list(self.decode_streaming(buffer))

    def decode_streaming(self, buffer: bytes) -> Iterator[Record]:
        for rows in self._scan_batches(self._spill(buffer)):
            yield from rows

    def decode_file_batches(self, handle: BinaryIO) -> Iterator[List[Record]]:
        yield from self._scan_batches(self._spill_handle(handle))

    def describe_schema(self, buffer: bytes) -> List[FieldInfo]:
        path = self._spill(buffer)
        conn = self._duckdb.connect(":memory:")
        try:
            rows = conn.execute(f"DESCRIBE {self._scan(path)}").fetchall()
        finally:
            conn.close()
            os.remove(path)
        return [FieldInfo(str(row[0]), str(row[1]), str(row[2]).upper() != "NO") for row in rows]


BackendFactory = Callable[[int], DecoderBackend]


class BackendSelector:
    """Process-wide, write-once choice between the primary and fallback backend.

    Initialisation happens behind a lock on first use; the only later
    transition is the one-way demotion of an unconfirmed primary.
    """

    def __init__(
        self,
        primary_factory: BackendFactory = PyArrowBackend,
        fallback_factory: BackendFactory = DuckDBBackend,
        disable_primary: bool = False,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        self._primary_factory = primary_factory
        self._fallback_factory = fallback_factory
        self._batch_size = batch_size
        self._lock = threading.Lock()
        self._initialized = False
        self._backend: Optional[DecoderBackend] = None
        self._primary_disabled = disable_primary
        self._primary_failed = disable_primary
        self._confirmed = False

    def active(self) -> Optional[DecoderBackend]:
        if not self._initialized:
            with self._lock:
                if not self._initialized:
                    self._backend = self._initialize()
                    self._initialized = True
        return self._backend

    def _initialize(self) -> Optional[DecoderBackend]:
        if self._primary_disabled:
            logger.info("Primary decoder backend disabled by configuration")
        else:
            try:
                backend = self._primary_factory(self._batch_size)
            except Exception as exc:
                logger.warning("Primary decoder backend failed to initialise: %s", exc)
                self._primary_failed = True
            else:
                logger.info("Using decoder backend %s", backend.name)
                return backend
        return self._initialize_fallback()

    def _initialize_fallback(self) -> Optional[DecoderBackend]:
        try:
            backend = self._fallback_factory(self._batch_size)
        except Exception as exc:
            logger.error("Fallback decoder backend failed to initialise: %s", exc)
            return None
        logger.info("Using fallback decoder backend %s", backend.name)
        return backend

    def confirm(self, backend: DecoderBackend) -> None:
        """Mark the active backend as proven by a successful decode."""
        if not self._confirmed and backend is self._backend:
            with self._lock:
                if backend is self._backend:
                    self._confirmed = True

    def report_failure(self, backend: DecoderBackend, exc: Exception) -> Optional[DecoderBackend]:
        """Return a backend worth retrying with, or None when the failure is final."""
        with self._lock:
            if backend is not self._backend:
                return self._backend
            if self._primary_failed or self._confirmed:
                return None
            logger.warning(
                "Primary decoder backend %s failed on first decode (%s); switching to fallback",
                backend.name,
                exc,
            )
            self._primary_failed = True
            self._backend = self._initialize_fallback()
            return self._backend

    @property
    def primary_failed(self) -> bool:
        return self._primary_failed

    def status(self) -> Dict[str, Any]:
        backend = self.active()
        return {
            "backend": backend.name if backend is not None else None,
            "primary_failed": self._primary_failed,
            "primary_disabled": self._primary_disabled,
            "confirmed": self._confirmed,
        }


class ColumnarDecoder:
    """Fail-open decoding facade over the selected backend."""

    def __init__(self, selector: BackendSelector | None = None) -> None:
        self.selector = selector or BackendSelector()

    def _backend(self, source: Optional[str], on_failure: Optional[FailureCallback]):
        backend = self.selector.active()
        if backend is None:
            logger.warning("No decoder backend available; returning empty result for %s", source)
            if on_failure is not None:
                on_failure(source, BackendUnavailable("no decoder backend available"))
        return backend

    @staticmethod
    def _failed(source: Optional[str], exc: Exception, on_failure: Optional[FailureCallback]) -> None:
        logger.warning("Decode failed for %s: %s", source or "<buffer>", exc)
        if on_failure is not None:
            on_failure(source, DecodeFailure(f"{source or '<buffer>'}: {exc}"))

    def _run(
        self,
        operation: Callable[[DecoderBackend], T],
        empty: T,
        source: Optional[str],
        on_failure: Optional[FailureCallback],
    ) -> T:
        backend = self._backend(source, on_failure)
        while backend is not None:
            try:
                result = operation(backend)
            except Exception as exc:
                replacement = self.selector.report_failure(backend, exc)
                if replacement is None or replacement is backend:
                    self._failed(source, exc, on_failure)
                    return empty
                backend = replacement
                continue
            self.selector.confirm(backend)
            return result
        return empty

    def _iterate(
        self,
        operation: Callable[[DecoderBackend], Iterable[T]],
        source: Optional[str],
        on_failure: Optional[FailureCallback],
    ) -> Iterator[T]:
        """Yield from ``operation(backend)`` with demotion and fail-open handling.

        Object store errors raised while a backend pulls bytes are not decode
        failures: they propagate and never count against the primary.
        """
        backend = self._backend(source, on_failure)
        while backend is not None:
            yielded = False
            items = None
            try:
                items = iter(operation(backend))
                for item in items:
                    if not yielded:
                        yielded = True
                        self.selector.confirm(backend)
                    yield item
            except ObjectStoreError:
                raise
            except Exception as exc:
                if not yielded:
                    replacement = self.selector.report_failure(backend, exc)
                    if replacement is not None and replacement is not backend:
                        backend = replacement
                        continue
                self._failed(source, exc, on_failure)
                return
            finally:
                close = getattr(items, "close", None)
                if close is not None:
                    close()
            self.selector.confirm(backend)
            return

    def decode(
        self,
        buffer: bytes,
        source: Optional[str] = None,
        on_failure: Optional[FailureCallback] = None,
    ) -> List[Record]:
        return self._run(lambda backend: backend.decode_whole(buffer), [], source, on_failure)

    def schema(
        self,
        buffer: bytes,
        source: Optional[str] = None,
        on_failure: Optional[FailureCallback] = None,
    ) -> List[FieldInfo]:
        return self._run(lambda backend: backend.describe_schema(buffer), [], source, on_failure)

    def decode_lazy(
        self,
        buffer: bytes,
        source: Optional[str] = None,
        on_failure: Optional[FailureCallback] = None,
    ) -> Iterator[Record]:
        """Yield records one at a time.

        Not resumable: after a mid-sequence failure the records already
        yielded stand and the rest of the buffer is dropped.
        """
        return self._iterate(lambda backend: backend.decode_streaming(buffer), source, on_failure)

    def decode_batches(
        self,
        handle: BinaryIO,
        source: Optional[str] = None,
        on_failure: Optional[FailureCallback] = None,
    ) -> Iterator[List[Record]]:
        """Yield record lists from a seekable handle over a whole Parquet object.

        Memory stays bounded by one row group rather than the object size.
        """
        return self._iterate(lambda backend: backend.decode_file_batches(handle), source, on_failure)

    def stream_with_filter(
        self,
        buffer: bytes,
        predicate: Callable[[Record], bool],
        max_results: Optional[int] = None,
        source: Optional[str] = None,
    ) -> Iterator[Record]:
        if max_results is not None and max_results <= 0:
            return
        count = 0
        for record in self.decode_lazy(buffer, source=source):
            if predicate(record):
                yield record
                count += 1
                if max_results is not None and count >= max_results:
                    return

    def process_in_batches(
        self,
        buffer: bytes,
        batch_size: int,
        processor: Callable[[List[Record]], None],
        source: Optional[str] = None,
    ) -> int:
        """Feed records to ``processor`` in lists of ``batch_size``; return the total."""
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        batch: List[Record] = []
        total = 0
        for record in self.decode_lazy(buffer, source=source):
            batch.append(record)
            if len(batch) >= batch_size:
                processor(batch)
                total += len(batch)
                batch = []
        if batch:
            processor(batch)
            total += len(batch)
        return total


__all__ = [
    "BackendSelector",
    "ColumnarDecoder",
    "DecoderBackend",
    "DuckDBBackend",
    "FieldInfo",
    "PyArrowBackend",
    "Record",
]
