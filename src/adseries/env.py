"""Environment loading helpers backed by python-dotenv."""
from __future__ import annotations

import os
from pathlib import Path


def load_env(*args, **kwargs) -> bool:
    """Proxy to python-dotenv that surfaces actionable errors when missing."""
    try:
        from dotenv import load_dotenv as _load_dotenv
    except ModuleNotFoundError as exc:  # pragma: no cover - dependency missing
        raise RuntimeError(
            "python-dotenv is not installed. Install project dependencies with "
            "`pip install -e '.[dev]'` before running adseries commands."
        ) from exc
    return _load_dotenv(*args, **kwargs)


def load_layered_env(*overlays: str | Path) -> list[Path]:
    """Load the default .env, then every existing overlay file on top of it.

    Returns the overlay paths that were actually applied.
    """
    load_env()
    applied: list[Path] = []
    for overlay in overlays:
        path = Path(overlay)
        if path.exists():
            load_env(dotenv_path=path, override=True)
            applied.append(path)
    return applied


def env_flag(name: str, default: bool = False) -> bool:
    """Interpret an environment variable as a boolean switch."""
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


__all__ = ["env_flag", "load_env", "load_layered_env"]
