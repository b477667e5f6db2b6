from __future__ import annotations

import asyncio
import io
import os
import uuid

import pyarrow as pa
import pyarrow.parquet as pq
import pytest

from adseries.decoding import BackendSelector, ColumnarDecoder
from adseries.errors import NotFoundError
from adseries.filtering import FilterSpec
from adseries.object_store import S3Config, S3ObjectStoreReader
from adseries.streaming import CollectingSink, StreamEmitter

pytestmark = [pytest.mark.integration, pytest.mark.minio]


def _minio_config() -> S3Config:
    endpoint = os.getenv("MINIO_ENDPOINT_URL")
    bucket = os.getenv("MINIO_BUCKET")
    access = os.getenv("MINIO_ACCESS_KEY_ID")
    secret = os.getenv("MINIO_SECRET_ACCESS_KEY")
    if not all([endpoint, bucket, access, secret]):
        pytest.skip("MinIO env vars not configured")
    return S3Config(
        bucket=bucket,
        endpoint_url=endpoint,
        access_key=access,
        secret_key=secret,
    )


def _payload() -> bytes:
    sink = io.BytesIO()
    rows = [{"date": f"2024-01-{day:02d}", "app_name": "TikTok", "play_count": day} for day in range(1, 21)]
    pq.write_table(pa.Table.from_pylist(rows), sink)
    return sink.getvalue()


def test_minio_stream_round_trip():
    config = _minio_config()
    reader = S3ObjectStoreReader(config)
    try:
        reader.client.head_bucket(Bucket=config.bucket)
    except Exception:
        reader.client.create_bucket(Bucket=config.bucket)
    prefix = os.getenv("MINIO_PREFIX", "adseries-tests")
    path = f"{prefix}/{uuid.uuid4().hex}/consolidated_2024_01.parquet"
    reader.client.put_object(Bucket=config.bucket, Key=path, Body=_payload())

    assert reader.exists(path)
    assert reader.stat(path).size > 0
    assert path in reader.list(f"{prefix}/")

    payload = _payload()
    assert reader.read_range(path, 0, 4) == payload[:4]

    emitter = StreamEmitter(reader, ColumnarDecoder(BackendSelector()), read_chunk_bytes=256)
    sink = CollectingSink()
    report = asyncio.run(emitter.emit([path], FilterSpec(min_play_count=11), sink))
    assert [record["play_count"] for record in sink.records] == list(range(11, 21))
    assert report.partitions_read == [path]

    # Above the threshold the partition is decoded through ranged reads.
    ranged = StreamEmitter(reader, ColumnarDecoder(BackendSelector()), chunk_threshold=512, read_chunk_bytes=256)
    sink = CollectingSink()
    report = asyncio.run(ranged.emit([path], FilterSpec(), sink))
    assert [record["play_count"] for record in sink.records] == list(range(1, 21))
    assert report.failed == {}

    missing = f"{prefix}/{uuid.uuid4().hex}/absent.parquet"
    assert not reader.exists(missing)
    with pytest.raises(NotFoundError):
        reader.read_all(missing)
