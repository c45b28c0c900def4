"""Path helpers for per-user app data."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from platformdirs import AppDirs

DEFAULT_APP_NAME = "tz-video-host"


@lru_cache(maxsize=4)
def get_app_dirs(app_name: str = DEFAULT_APP_NAME) -> AppDirs:
    """Return platform-specific app directories."""
    return AppDirs(app_name, appauthor=False)


def _ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def data_dir(app_name: str = DEFAULT_APP_NAME) -> Path:
    """Return the per-user data directory, creating it if needed."""
    return _ensure_dir(Path(get_app_dirs(app_name).user_data_dir))


def config_dir(app_name: str = DEFAULT_APP_NAME) -> Path:
    """Return the per-user config directory, creating it if needed."""
    return _ensure_dir(Path(get_app_dirs(app_name).user_config_dir))


def log_dir(app_name: str = DEFAULT_APP_NAME) -> Path:
    """Return the per-user log directory, creating it if needed."""
    return _ensure_dir(data_dir(app_name) / "logs")


def downloads_dir(
    app_name: str = DEFAULT_APP_NAME, *, override: Path | None = None
) -> Path:
    """Return the offline download content directory, creating it if needed.

    A configured `override` replaces the per-user default location.
    """
    if override is not None:
        return _ensure_dir(override)
    return _ensure_dir(data_dir(app_name) / "downloads")


def download_index_path(
    app_name: str = DEFAULT_APP_NAME, *, override: Path | None = None
) -> Path:
    """Return the JSON index of known download records."""
    if override is not None:
        return _ensure_dir(override) / "downloads.json"
    return data_dir(app_name) / "downloads.json"


def settings_path(app_name: str = DEFAULT_APP_NAME) -> Path:
    """Return the JSON host settings file path."""
    return config_dir(app_name) / "settings.json"
