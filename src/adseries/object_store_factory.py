"""Factory for selecting the ObjectStoreReader backend."""
from __future__ import annotations

from .config import StorageConfig
from .errors import ConfigurationError
from .object_store import LocalObjectStoreReader, ObjectStoreReader, S3Config, S3ObjectStoreReader


def create_object_store(config: StorageConfig) -> ObjectStoreReader:
    if config.backend == "filesystem":
        return LocalObjectStoreReader(config.root)
    if config.backend == "object":
        if not config.bucket:
            raise ConfigurationError(
                "No bucket configured: set storage.bucket or ADSERIES_BUCKET"
            )
        return S3ObjectStoreReader(
            S3Config(
                bucket=config.bucket,
                endpoint_url=config.endpoint_url,
                region=config.region,
                access_key=config.access_key,
                secret_key=config.secret_key,
            )
        )
    raise ConfigurationError(f"Unsupported storage backend: {config.backend}")


__all__ = ["create_object_store"]
