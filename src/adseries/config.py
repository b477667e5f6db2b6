"""Typed configuration loader for the retrieval engine."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .env import env_flag, load_env

load_env()

DEFAULT_CONFIG_PATH = "config/adseries.yaml"
DEFAULT_MANIFEST_PATH = "timeseries_data/raw_consolidated/consolidation_results.json"


class StorageConfig(BaseModel):
    backend: Literal["object", "filesystem"] = "object"
    bucket: str | None = None
    endpoint_url: str | None = None
    region: str | None = None
    access_key: str | None = None
    secret_key: str | None = None
    root: str = "data/store"

    @field_validator("bucket", mode="before")
    @classmethod
    def _clean_bucket(cls, value):
        # Firebase style bucket names are served under the bare project id.
        if isinstance(value, str):
            value = value.strip()
            for suffix in (".firebasestorage.app", ".appspot.com"):
                if value.endswith(suffix):
                    value = value[: -len(suffix)]
            return value or None
        return value


class DecoderConfig(BaseModel):
    disable_primary: bool = False
    batch_size: int = Field(default=1024, gt=0)


class StreamingConfig(BaseModel):
    chunk_threshold_bytes: int = Field(default=10 * 1024 * 1024, gt=0)
    read_chunk_bytes: int = Field(default=1024 * 1024, gt=0)
    max_partitions: int = Field(default=3, gt=0)
    queue_size: int = Field(default=256, gt=0)
    default_limit: int = Field(default=1000, gt=0)


class CatalogConfig(BaseModel):
    manifest_path: str = DEFAULT_MANIFEST_PATH
    list_fallback: bool = False


class RetrievalConfig(BaseModel):
    top_k: int = Field(default=10, gt=0)
    max_per_partition: int = Field(default=100, gt=0)
    max_files: int = Field(default=3, gt=0)


class EngineConfig(BaseModel):
    storage: StorageConfig = Field(default_factory=StorageConfig)
    decoder: DecoderConfig = Field(default_factory=DecoderConfig)
    streaming: StreamingConfig = Field(default_factory=StreamingConfig)
    catalog: CatalogConfig = Field(default_factory=CatalogConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)

    def with_env_overrides(self) -> "EngineConfig":
        """Return a copy with ADSERIES_* / DISABLE_PYARROW variables applied."""
        storage = self.storage.model_dump()
        for field, variable in (
            ("backend", "ADSERIES_STORE"),
            ("bucket", "ADSERIES_BUCKET"),
            ("endpoint_url", "ADSERIES_ENDPOINT_URL"),
            ("region", "ADSERIES_REGION"),
            ("access_key", "ADSERIES_ACCESS_KEY_ID"),
            ("secret_key", "ADSERIES_SECRET_ACCESS_KEY"),
            ("root", "ADSERIES_ROOT"),
        ):
            value = os.getenv(variable)
            if value:
                storage[field] = value.lower() if field == "backend" else value
        decoder = self.decoder.model_dump()
        decoder["disable_primary"] = env_flag("DISABLE_PYARROW", decoder["disable_primary"])
        try:
            return self.model_copy(
                update={
                    "storage": StorageConfig(**storage),
                    "decoder": DecoderConfig(**decoder),
                }
            )
        except ValidationError as exc:
            raise ValueError(f"Invalid environment configuration: {exc}") from exc


class ConfigLoader:
    """Loads YAML driven configuration and validates it with Pydantic."""

    def __init__(self, path: str | Path | None = None) -> None:
        explicit = path or os.getenv("ADSERIES_CONFIG_PATH")
        self.config_path = Path(explicit or DEFAULT_CONFIG_PATH)
        if explicit and not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")
        self.model = self._parse_yaml().with_env_overrides()

    def _parse_yaml(self) -> EngineConfig:
        if not self.config_path.exists():
            return EngineConfig()
        with self.config_path.open("r", encoding="utf-8") as fp:
            raw = yaml.safe_load(fp) or {}
        try:
            return EngineConfig(**raw)
        except ValidationError as exc:  # pragma: no cover - surfacing error to CLI
            raise ValueError(f"Invalid configuration: {exc}") from exc


__all__ = [
    "CatalogConfig",
    "ConfigLoader",
    "DecoderConfig",
    "EngineConfig",
    "RetrievalConfig",
    "StorageConfig",
    "StreamingConfig",
]
