"""Unit tests for the configuration loader."""
from __future__ import annotations

from pathlib import Path

import pytest

from adseries.config import ConfigLoader, EngineConfig

_ENV_VARS = (
    "ADSERIES_CONFIG_PATH",
    "ADSERIES_STORE",
    "ADSERIES_BUCKET",
    "ADSERIES_ROOT",
    "DISABLE_PYARROW",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_config_loader_parses_sections(tmp_path: Path) -> None:
    config_payload = """
    storage:
      backend: object
      bucket: my-project.firebasestorage.app
      endpoint_url: http://localhost:9000
    decoder:
      disable_primary: false
      batch_size: 256
    streaming:
      max_partitions: 5
      chunk_threshold_bytes: 2048
    catalog:
      list_fallback: true
    retrieval:
      top_k: 4
    """
    config_file = tmp_path / "config.yaml"
    config_file.write_text(config_payload)

    model = ConfigLoader(path=config_file).model

    assert model.storage.bucket == "my-project"
    assert model.decoder.batch_size == 256
    assert model.streaming.max_partitions == 5
    assert model.streaming.default_limit == 1000
    assert model.catalog.list_fallback is True
    assert model.retrieval.top_k == 4


def test_environment_overrides_yaml(tmp_path: Path, monkeypatch) -> None:
    config_file = tmp_path / "config.yaml"
    config_file.write_text("storage:\n  bucket: from-yaml\n")
    monkeypatch.setenv("ADSERIES_BUCKET", "from-env")
    monkeypatch.setenv("ADSERIES_STORE", "FILESYSTEM")
    monkeypatch.setenv("DISABLE_PYARROW", "true")

    model = ConfigLoader(path=config_file).model

    assert model.storage.bucket == "from-env"
    assert model.storage.backend == "filesystem"
    assert model.decoder.disable_primary is True


def test_missing_default_file_yields_defaults(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    assert ConfigLoader().model == EngineConfig()


def test_missing_explicit_file_raises(tmp_path: Path, monkeypatch) -> None:
    with pytest.raises(FileNotFoundError):
        ConfigLoader(path=tmp_path / "absent.yaml")
    monkeypatch.setenv("ADSERIES_CONFIG_PATH", str(tmp_path / "absent.yaml"))
    with pytest.raises(FileNotFoundError):
        ConfigLoader()


def test_invalid_values_are_rejected(tmp_path: Path) -> None:
    config_file = tmp_path / "config.yaml"
    config_file.write_text("streaming:\n  max_partitions: 0\n")
    with pytest.raises(ValueError, match="Invalid configuration"):
        ConfigLoader(path=config_file)
