"""Retrieval and streaming engine for partitioned ad time series data."""
from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("adseries")
except PackageNotFoundError:  # pragma: no cover - during local dev without install
    __version__ = "0.0.0"

__all__ = ["__version__"]
