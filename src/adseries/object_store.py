"""Read-only access to the remote object store holding partition files."""
from __future__ import annotations

import io
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, BinaryIO, Callable, Iterator, List, Optional, Protocol, Sequence, TypeVar

import boto3
from botocore.client import BaseClient
from botocore.exceptions import BotoCoreError, ClientError, HTTPClientError
from botocore.exceptions import ConnectionError as BotoConnectionError

from .errors import (
    NotFoundError,
    ObjectStoreError,
    PermissionDeniedError,
    TransientError,
)

logger = logging.getLogger(__name__)

DEFAULT_READ_CHUNK = 1024 * 1024
TRANSIENT_MAX_ATTEMPTS = 3
TRANSIENT_INITIAL_BACKOFF = 0.2
TRANSIENT_MAX_BACKOFF = 2.0

T = TypeVar("T")

# Called as ``policy(operation, path)``; runs the operation and returns its result.
RetryPolicy = Callable[[Callable[[], Any], str], Any]

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound", "NoSuchBucket"}
_DENIED_CODES = {"403", "AccessDenied", "Forbidden", "AllAccessDisabled", "InvalidAccessKeyId"}
_TRANSIENT_CODES = {
    "500",
    "502",
    "503",
    "504",
    "InternalError",
    "RequestTimeout",
    "ServiceUnavailable",
    "SlowDown",
    "Throttling",
    "ThrottlingException",
}


@dataclass(frozen=True)
class ObjectInfo:
    path: str
    size: int
    updated: Optional[datetime] = None
    content_type: Optional[str] = None


class ObjectStream:
    """Sequential byte chunks of one object; must be closed when abandoned."""

    def __init__(self, path: str, chunks: Iterator[bytes], close: Callable[[], None]) -> None:
        self.path = path
        self._chunks = chunks
        self._close = close
        self.closed = False

    def __iter__(self) -> Iterator[bytes]:
        return self

    def __next__(self) -> bytes:
        if self.closed:
            raise StopIteration
        return next(self._chunks)

    def read_chunk(self) -> Optional[bytes]:
        """Return the next chunk or ``None`` at end of object."""
        return next(self, None)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._close()

    def __enter__(self) -> "ObjectStream":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class ObjectStoreReader(Protocol):
    """Path addressed, read-only view over a bucket."""

    def exists(self, path: str) -> bool:
        """Return True when the object is present."""

    def read_all(self, path: str) -> bytes:
        """Download a whole object."""

    def open_stream(self, path: str, chunk_size: int = DEFAULT_READ_CHUNK) -> ObjectStream:
        """Open an incremental reader over a (possibly very large) object."""

    def read_range(self, path: str, start: int, length: int) -> bytes:
        """Return up to ``length`` bytes starting at offset ``start``."""

    def list(self, prefix: str) -> Sequence[str]:
        """Return object paths under ``prefix`` in lexical order."""

    def stat(self, path: str) -> ObjectInfo:
        """Return size and metadata of an object."""


@dataclass
class S3Config:
    bucket: str
    endpoint_url: str | None = None
    region: str | None = None
    access_key: str | None = None
    secret_key: str | None = None


def translate_client_error(exc: Exception, path: str) -> ObjectStoreError:
    """Map boto3/botocore failures onto the engine's error taxonomy."""
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = str(error.get("Code", ""))
        status = str(exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", ""))
        message = error.get("Message") or str(exc)
        if code in _NOT_FOUND_CODES or status == "404":
            return NotFoundError(path, f"Object not found: {path}")
        if code in _DENIED_CODES or status == "403":
            return PermissionDeniedError(
                path,
                f"Permission denied reading {path}: grant object read access to the "
                f"configured credentials ({message})",
            )
        if code in _TRANSIENT_CODES or status.startswith("5"):
            return TransientError(path, f"Transient store failure for {path}: {message}")
        return ObjectStoreError(path, f"Object store error for {path}: {message}")
    if isinstance(exc, (BotoConnectionError, HTTPClientError)):
        return TransientError(path, f"Network failure for {path}: {exc}")
    return ObjectStoreError(path, f"Object store error for {path}: {exc}")


class S3ObjectStoreReader(ObjectStoreReader):
    """boto3 backed reader; the client is shared across concurrent queries."""

    def __init__(self, config: S3Config, client: BaseClient | None = None) -> None:
        if client is None:
            session = boto3.session.Session()
            client = session.client(
                "s3",
                endpoint_url=config.endpoint_url,
                region_name=config.region,
                aws_access_key_id=config.access_key,
                aws_secret_access_key=config.secret_key,
            )
        self.client: BaseClient = client
        self.bucket = config.bucket

    def exists(self, path: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=path)
            return True
        except (ClientError, BotoCoreError) as exc:
            error = translate_client_error(exc, path)
            if isinstance(error, NotFoundError):
                return False
            raise error from exc

    def read_all(self, path: str) -> bytes:
        try:
            obj = self.client.get_object(Bucket=self.bucket, Key=path)
            return obj["Body"].read()
        except (ClientError, BotoCoreError) as exc:
            raise translate_client_error(exc, path) from exc

    def open_stream(self, path: str, chunk_size: int = DEFAULT_READ_CHUNK) -> ObjectStream:
        logger.debug("Opening stream s3://%s/%s chunk_size=%s", self.bucket, path, chunk_size)
        try:
            obj = self.client.get_object(Bucket=self.bucket, Key=path)
        except (ClientError, BotoCoreError) as exc:
            raise translate_client_error(exc, path) from exc
        body = obj["Body"]
        return ObjectStream(path, self._iter_body(path, body, chunk_size), body.close)

    @staticmethod
    def _iter_body(path: str, body, chunk_size: int) -> Iterator[bytes]:
        try:
            for chunk in body.iter_chunks(chunk_size):
                if chunk:
                    yield chunk
        except (ClientError, BotoCoreError) as exc:
            raise translate_client_error(exc, path) from exc

    def read_range(self, path: str, start: int, length: int) -> bytes:
        if length <= 0:
            return b""
        byte_range = f"bytes={start}-{start + length - 1}"
        try:
            obj = self.client.get_object(Bucket=self.bucket, Key=path, Range=byte_range)
            return obj["Body"].read()
        except (ClientError, BotoCoreError) as exc:
            raise translate_client_error(exc, path) from exc

    def list(self, prefix: str) -> Sequence[str]:
        paginator = self.client.get_paginator("list_objects_v2")
        keys: List[str] = []
        try:
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for item in page.get("Contents", []) or []:
                    key = item.get("Key")
                    if key and not key.endswith("/"):
                        keys.append(key)
        except (ClientError, BotoCoreError) as exc:
            raise translate_client_error(exc, prefix) from exc
        return sorted(keys)

    def stat(self, path: str) -> ObjectInfo:
        try:
            head = self.client.head_object(Bucket=self.bucket, Key=path)
        except (ClientError, BotoCoreError) as exc:
            raise translate_client_error(exc, path) from exc
        return ObjectInfo(
            path=path,
            size=int(head.get("ContentLength", 0)),
            updated=head.get("LastModified"),
            content_type=head.get("ContentType"),
        )


def translate_os_error(exc: OSError, path: str) -> ObjectStoreError:
    """Map local filesystem failures onto the engine's error taxonomy."""
    if isinstance(exc, FileNotFoundError):
        return NotFoundError(path, f"Object not found: {path}")
    if isinstance(exc, PermissionError):
        return PermissionDeniedError(path, f"Permission denied reading {path}")
    return ObjectStoreError(path, f"Cannot read {path}: {exc}")


class LocalObjectStoreReader(ObjectStoreReader):
    """Serves the same path layout from a local directory tree."""

    def __init__(self, root: Path | str = Path("data/store")) -> None:
        self._root = Path(root)

    def _resolve(self, path: str) -> Path:
        return self._root / path.strip("/")

    def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    def read_all(self, path: str) -> bytes:
        try:
            return self._resolve(path).read_bytes()
        except OSError as exc:
            raise translate_os_error(exc, path) from exc

    def open_stream(self, path: str, chunk_size: int = DEFAULT_READ_CHUNK) -> ObjectStream:
        try:
            handle = self._resolve(path).open("rb")
        except OSError as exc:
            raise translate_os_error(exc, path) from exc
        return ObjectStream(path, self._iter_file(path, handle, chunk_size), handle.close)

    @staticmethod
    def _iter_file(path: str, handle: BinaryIO, chunk_size: int) -> Iterator[bytes]:
        while True:
            try:
                chunk = handle.read(chunk_size)
            except OSError as exc:
                raise translate_os_error(exc, path) from exc
            if not chunk:
                return
            yield chunk

    def read_range(self, path: str, start: int, length: int) -> bytes:
        if length <= 0:
            return b""
        try:
            with self._resolve(path).open("rb") as handle:
                handle.seek(start)
                return handle.read(length)
        except OSError as exc:
            raise translate_os_error(exc, path) from exc

    def list(self, prefix: str) -> Sequence[str]:
        if not self._root.exists():
            return []
        paths = []
        for child in self._root.rglob("*"):
            if not child.is_file():
                continue
            relative = child.relative_to(self._root).as_posix()
            if relative.startswith(prefix):
                paths.append(relative)
        return sorted(paths)

    def stat(self, path: str) -> ObjectInfo:
        target = self._resolve(path)
        try:
            info = target.stat()
        except OSError as exc:
            raise translate_os_error(exc, path) from exc
        if not target.is_file():
            raise ObjectStoreError(path, f"Cannot read {path}: not a regular file")
        return ObjectInfo(
            path=path,
            size=info.st_size,
            updated=datetime.fromtimestamp(info.st_mtime, tz=timezone.utc),
            content_type="application/octet-stream",
        )


class RangedObjectFile(io.RawIOBase):
    """Seekable, read-only file over one object, served by ranged reads.

    ``head`` holds bytes already downloaded from the start of the object and
    is served without another request. Every other read goes through
    ``retry(lambda: reader.read_range(...), path)``.
    """

    def __init__(
        self,
        reader: ObjectStoreReader,
        path: str,
        size: int,
        head: bytes = b"",
        retry: Optional[RetryPolicy] = None,
    ) -> None:
        super().__init__()
        self._reader = reader
        self.path = path
        self.size = size
        self._head = head[:size]
        self._retry = retry or call_once
        self._position = 0

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return True

    def tell(self) -> int:
        return self._position

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        if whence == io.SEEK_SET:
            position = offset
        elif whence == io.SEEK_CUR:
            position = self._position + offset
        elif whence == io.SEEK_END:
            position = self.size + offset
        else:
            raise ValueError(f"Invalid whence: {whence}")
        if position < 0:
            raise ValueError(f"Negative seek position {position}")
        self._position = position
        return position

    def readinto(self, buffer) -> int:
        length = min(len(buffer), self.size - self._position)
        if length <= 0:
            return 0
        start = self._position
        if start + length <= len(self._head):
            data = self._head[start : start + length]
        else:
            data = self._retry(lambda: self._reader.read_range(self.path, start, length), self.path)
        buffer[: len(data)] = data
        self._position += len(data)
        return len(data)


def open_ranged(
    reader: ObjectStoreReader,
    path: str,
    size: int,
    head: bytes = b"",
    buffer_size: int = DEFAULT_READ_CHUNK,
    retry: Optional[RetryPolicy] = None,
) -> io.BufferedReader:
    """Buffered, seekable view of a remote object for footer-first formats."""
    return io.BufferedReader(RangedObjectFile(reader, path, size, head, retry), buffer_size=buffer_size)


def call_once(operation: Callable[[], T], path: str) -> T:
    """Retry policy that never retries."""
    return operation()


def with_transient_retry(
    operation: Callable[[], T],
    path: str,
    attempts: int = TRANSIENT_MAX_ATTEMPTS,
    backoff: float = TRANSIENT_INITIAL_BACKOFF,
    sleep: Optional[Callable[[float], None]] = None,
) -> T:
    """Run ``operation``, retrying only :class:`TransientError` with exponential backoff.

    Not used inside the engine; callers opt in by passing it as the engine's
    ``retry`` policy.
    """
    pause = sleep or time.sleep
    delay = backoff
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except TransientError as exc:
            if attempt >= attempts:
                raise
            logger.warning(
                "Transient failure on %s (attempt %s/%s), backing off %.2fs: %s",
                path,
                attempt,
                attempts,
                delay,
                exc,
            )
            pause(delay)
            delay = min(delay * 2, TRANSIENT_MAX_BACKOFF)
    raise ValueError("attempts must be positive")


__all__ = [
    "LocalObjectStoreReader",
    "ObjectInfo",
    "ObjectStoreReader",
    "ObjectStream",
    "RangedObjectFile",
    "RetryPolicy",
    "S3Config",
    "S3ObjectStoreReader",
    "call_once",
    "open_ranged",
    "translate_client_error",
    "translate_os_error",
    "with_transient_retry",
]
