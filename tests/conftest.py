"""Pytest configuration for loading local environment variables and shared fixtures."""
from __future__ import annotations

import io
from pathlib import Path
from typing import Dict, List

import pytest

try:
    from adseries.env import load_layered_env
except ImportError as exc:
    raise RuntimeError(
        "adseries is not importable. Activate your virtualenv (source .venv/bin/activate) "
        "and run 'pip install -e .[dev]' before running pytest."
    ) from exc

# Load default runtime env first, then overlay .env.test if provided
load_layered_env(Path(".env.test"))

import pyarrow as pa  # noqa: E402
import pyarrow.parquet as pq  # noqa: E402

from adseries.object_store import LocalObjectStoreReader  # noqa: E402
from adseries.partition import resolve_path  # noqa: E402


def parquet_bytes(rows: List[Dict], **write_options) -> bytes:
    sink = io.BytesIO()
    pq.write_table(pa.Table.from_pylist(rows), sink, **write_options)
    return sink.getvalue()


def ad_row(day: str, app: str = "TikTok", play_count: int = 100, cost: int = 1000, **extra) -> Dict:
    row = {
        "date": day,
        "app_name": app,
        "genre_name": extra.pop("genre_name", "Beauty"),
        "advertiser_name": extra.pop("advertiser_name", "Acme"),
        "product_name": extra.pop("product_name", "Serum"),
        "ad_sentence": extra.pop("ad_sentence", "Glow every day"),
        "play_count": play_count,
        "digg_count": extra.pop("digg_count", 10),
        "cost": cost,
    }
    row.update(extra)
    return row


@pytest.fixture
def sample_rows() -> List[Dict]:
    return [
        ad_row("2024-02-01", "TikTok", play_count=50, cost=100),
        ad_row("2024-02-02", "Instagram", play_count=150, cost=300),
        ad_row("2024-02-03", "TikTok", play_count=500, cost=900),
        ad_row("2024-02-04", "TikTok", play_count=120, cost=50),
    ]


@pytest.fixture
def sample_parquet(sample_rows) -> bytes:
    return parquet_bytes(sample_rows)


@pytest.fixture
def store(tmp_path: Path):
    """Local store rooted in tmp_path; call ``store.put(path, data)`` to add objects."""
    root = tmp_path / "store"
    root.mkdir()
    reader = LocalObjectStoreReader(root)

    def put(path: str, data: bytes) -> None:
        target = root / path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    def put_month(period: str, rows: List[Dict]) -> str:
        path = resolve_path("raw", period)
        put(path, parquet_bytes(rows))
        return path

    reader.put = put
    reader.put_month = put_month
    return reader


@pytest.fixture
def make_row():
    return ad_row


@pytest.fixture
def to_parquet():
    return parquet_bytes
