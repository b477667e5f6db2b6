"""Error taxonomy shared by the retrieval engine."""
from __future__ import annotations


class AdseriesError(Exception):
    """Base class for all engine errors."""


class InvalidArgumentError(AdseriesError, ValueError):
    """Raised for unknown categories, unparseable periods or bad filters."""


class ConfigurationError(AdseriesError, RuntimeError):
    """Raised when the engine cannot be wired from the current configuration."""


class ObjectStoreError(AdseriesError):
    """Base class for remote object store failures."""

    def __init__(self, path: str, message: str | None = None) -> None:
        self.path = path
        super().__init__(message or path)


class NotFoundError(ObjectStoreError, FileNotFoundError):
    """The object does not exist. Treated as "no data" for that partition."""


class PermissionDeniedError(ObjectStoreError, PermissionError):
    """The credentials are not allowed to read the object. Never retried."""


class TransientError(ObjectStoreError):
    """Network failure or timeout. Callers may retry with their own budget."""


class DecodeFailure(AdseriesError):
    """A buffer could not be decoded by the active backend."""


class BackendUnavailable(AdseriesError):
    """No decoder backend could be initialised."""


__all__ = [
    "AdseriesError",
    "BackendUnavailable",
    "ConfigurationError",
    "DecodeFailure",
    "InvalidArgumentError",
    "NotFoundError",
    "ObjectStoreError",
    "PermissionDeniedError",
    "TransientError",
]
