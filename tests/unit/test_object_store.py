from __future__ import annotations

import io
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from adseries.config import StorageConfig
from adseries.errors import (
    ConfigurationError,
    NotFoundError,
    ObjectStoreError,
    PermissionDeniedError,
    TransientError,
)
from adseries.object_store import (
    LocalObjectStoreReader,
    RangedObjectFile,
    S3Config,
    S3ObjectStoreReader,
    open_ranged,
    translate_client_error,
    with_transient_retry,
)
from adseries.object_store_factory import create_object_store

PATH = "timeseries_data/raw_consolidated/consolidated_2024_01.parquet"


def _client_error(code: str, operation: str = "get_object") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class _Body:
    def __init__(self, data: bytes) -> None:
        self._stream = io.BytesIO(data)
        self.closed = False

    def read(self) -> bytes:
        return self._stream.read()

    def iter_chunks(self, chunk_size: int):
        while True:
            chunk = self._stream.read(chunk_size)
            if not chunk:
                return
            yield chunk

    def close(self) -> None:
        self.closed = True


def _reader(client) -> S3ObjectStoreReader:
    return S3ObjectStoreReader(S3Config(bucket="bucket"), client=client)


@pytest.mark.parametrize(
    "code, expected",
    [
        ("404", NotFoundError),
        ("NoSuchKey", NotFoundError),
        ("AccessDenied", PermissionDeniedError),
        ("403", PermissionDeniedError),
        ("SlowDown", TransientError),
        ("503", TransientError),
        ("InvalidRange", ObjectStoreError),
    ],
)
def test_translate_client_error(code, expected):
    error = translate_client_error(_client_error(code), PATH)
    assert type(error) is expected
    assert error.path == PATH


def test_network_failures_are_transient():
    error = translate_client_error(EndpointConnectionError(endpoint_url="http://minio"), PATH)
    assert isinstance(error, TransientError)


def test_exists_maps_not_found_to_false():
    client = MagicMock()
    client.head_object.side_effect = _client_error("404", "head_object")
    assert _reader(client).exists(PATH) is False


def test_exists_raises_on_permission_errors():
    client = MagicMock()
    client.head_object.side_effect = _client_error("AccessDenied", "head_object")
    with pytest.raises(PermissionDeniedError, match="grant object read access"):
        _reader(client).exists(PATH)


def test_open_stream_yields_chunks_and_closes_body():
    body = _Body(b"abcdefghij")
    client = MagicMock()
    client.get_object.return_value = {"Body": body}
    with _reader(client).open_stream(PATH, chunk_size=4) as stream:
        assert stream.read_chunk() == b"abcd"
        assert stream.read_chunk() == b"efgh"
        assert stream.read_chunk() == b"ij"
        assert stream.read_chunk() is None
    assert body.closed
    client.get_object.assert_called_once_with(Bucket="bucket", Key=PATH)


def test_read_all_translates_missing_object():
    client = MagicMock()
    client.get_object.side_effect = _client_error("NoSuchKey")
    with pytest.raises(NotFoundError):
        _reader(client).read_all(PATH)


def test_list_uses_paginator_and_skips_directories():
    client = MagicMock()
    paginator = client.get_paginator.return_value
    paginator.paginate.return_value = [
        {"Contents": [{"Key": "timeseries_data/daily/"}, {"Key": "timeseries_data/daily/b.parquet"}]},
        {"Contents": [{"Key": "timeseries_data/daily/a.parquet"}]},
        {},
    ]
    assert _reader(client).list("timeseries_data/daily/") == [
        "timeseries_data/daily/a.parquet",
        "timeseries_data/daily/b.parquet",
    ]
    paginator.paginate.assert_called_once_with(Bucket="bucket", Prefix="timeseries_data/daily/")


def test_stat_reads_head_object():
    client = MagicMock()
    client.head_object.return_value = {"ContentLength": 42, "ContentType": "application/octet-stream"}
    info = _reader(client).stat(PATH)
    assert info.size == 42
    assert info.path == PATH


def test_local_reader_round_trip(tmp_path: Path):
    target = tmp_path / PATH
    target.parent.mkdir(parents=True)
    target.write_bytes(b"0123456789")
    reader = LocalObjectStoreReader(tmp_path)
    assert reader.exists(PATH)
    assert b"".join(reader.open_stream(PATH, chunk_size=3)) == b"0123456789"
    assert reader.stat(PATH).size == 10
    assert reader.list("timeseries_data/") == [PATH]
    with pytest.raises(NotFoundError):
        reader.read_all("timeseries_data/missing.parquet")


def test_factory_requires_bucket_for_object_backend():
    with pytest.raises(ConfigurationError):
        create_object_store(StorageConfig(backend="object"))


def test_factory_builds_filesystem_reader(tmp_path: Path):
    reader = create_object_store(StorageConfig(backend="filesystem", root=str(tmp_path)))
    assert isinstance(reader, LocalObjectStoreReader)


def test_bucket_suffix_is_stripped():
    assert StorageConfig(bucket="project.firebasestorage.app").bucket == "project"


def test_transient_errors_are_retried_with_backoff():
    delays = []
    operation = MagicMock(side_effect=[TransientError(PATH, "slow down"), TransientError(PATH, "slow down"), b"ok"])
    assert with_transient_retry(operation, PATH, attempts=3, backoff=0.1, sleep=delays.append) == b"ok"
    assert delays == [0.1, 0.2]


def test_transient_retry_gives_up_and_skips_other_errors():
    operation = MagicMock(side_effect=TransientError(PATH, "down"))
    with pytest.raises(TransientError):
        with_transient_retry(operation, PATH, attempts=2, sleep=lambda _delay: None)
    assert operation.call_count == 2
    missing = MagicMock(side_effect=NotFoundError(PATH))
    with pytest.raises(NotFoundError):
        with_transient_retry(missing, PATH, sleep=lambda _delay: None)
    assert missing.call_count == 1


def test_read_range_sends_inclusive_byte_range():
    client = MagicMock()
    client.get_object.return_value = {"Body": _Body(b"3456")}
    assert _reader(client).read_range(PATH, 3, 4) == b"3456"
    client.get_object.assert_called_once_with(Bucket="bucket", Key=PATH, Range="bytes=3-6")
    assert _reader(client).read_range(PATH, 3, 0) == b""


def test_local_reader_translates_os_errors(tmp_path: Path):
    (tmp_path / PATH).mkdir(parents=True)
    reader = LocalObjectStoreReader(tmp_path)
    assert not reader.exists(PATH)
    with pytest.raises(ObjectStoreError) as excinfo:
        reader.open_stream(PATH)
    assert not isinstance(excinfo.value, NotFoundError)
    with pytest.raises(ObjectStoreError):
        reader.read_all(PATH)
    with pytest.raises(ObjectStoreError):
        reader.stat(PATH)


def test_ranged_file_serves_head_then_ranged_reads(tmp_path: Path):
    target = tmp_path / PATH
    target.parent.mkdir(parents=True)
    target.write_bytes(b"0123456789abcdef")
    inner = LocalObjectStoreReader(tmp_path)
    reader = MagicMock(wraps=inner)
    ranged = RangedObjectFile(reader, PATH, 16, head=b"01234")
    assert ranged.read(4) == b"0123"
    reader.read_range.assert_not_called()
    assert ranged.seek(-4, 2) == 12
    assert ranged.read() == b"cdef"
    ranged.seek(3)
    assert ranged.read(4) == b"3456"
    assert ranged.read(0) == b""
    ranged.seek(20)
    assert ranged.read(4) == b""
    with pytest.raises(ValueError):
        ranged.seek(-1)


def test_ranged_file_applies_retry_policy(tmp_path: Path):
    target = tmp_path / PATH
    target.parent.mkdir(parents=True)
    target.write_bytes(b"0123456789")
    calls = []

    def retry(operation, path):
        calls.append(path)
        return operation()

    with open_ranged(LocalObjectStoreReader(tmp_path), PATH, 10, buffer_size=4, retry=retry) as handle:
        assert handle.read() == b"0123456789"
    assert calls and set(calls) == {PATH}
