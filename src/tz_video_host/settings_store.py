"""JSON persistence for host settings.

Loading is tolerant of invalid/missing values so a damaged settings file
degrades to defaults instead of aborting startup.
"""

from __future__ import annotations

import json
import logging
import math
from contextlib import suppress
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any
from uuid import uuid4

from .runtime_config import DEFAULT_ENGINE, clamp_poll_interval_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HostSettings:
    """Persisted settings applied when the host starts."""

    engine: str = DEFAULT_ENGINE
    poll_interval_ms: int = 1000
    user_agent: str = "tz-video-host"
    allow_cross_protocol_redirects: bool = True
    asset_root: str | None = None
    download_dir: str | None = None
    log_level: str = "INFO"


def _coerce_settings(data: dict[str, Any]) -> HostSettings:
    def _str_or_default(value: Any, default: str) -> str:
        if isinstance(value, str) and value.strip():
            return value
        return default

    def _str_or_none(value: Any) -> str | None:
        if isinstance(value, str) and value.strip():
            return value
        return None

    def _bool_or_default(value: Any, default: bool) -> bool:
        if isinstance(value, bool):
            return value
        return default

    def _interval(value: Any) -> int:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return 1000
        if isinstance(value, float) and not math.isfinite(value):
            return 1000
        return clamp_poll_interval_ms(int(value))

    return HostSettings(
        engine=_str_or_default(data.get("engine"), DEFAULT_ENGINE),
        poll_interval_ms=_interval(data.get("poll_interval_ms")),
        user_agent=_str_or_default(data.get("user_agent"), "tz-video-host"),
        allow_cross_protocol_redirects=_bool_or_default(
            data.get("allow_cross_protocol_redirects"), True
        ),
        asset_root=_str_or_none(data.get("asset_root")),
        download_dir=_str_or_none(data.get("download_dir")),
        log_level=_str_or_default(data.get("log_level"), "INFO"),
    )


def load_settings_with_notice(path: Path) -> tuple[HostSettings, str | None]:
    """Load settings and return an optional user-facing notice."""
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.info("Settings file missing at %s; using defaults.", path)
        return HostSettings(), None
    except OSError as exc:
        logger.warning(
            "Failed to read settings %s: %s; using defaults.", path, exc
        )
        return (
            HostSettings(),
            "Settings were reset to defaults.\n"
            "Likely cause: settings file is unreadable (permissions or IO issues).\n"
            f"Next step: verify access to '{path}' and restart.",
        )

    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Settings file at %s is invalid JSON; using defaults.", path)
        return (
            HostSettings(),
            "Settings were reset to defaults.\n"
            "Likely cause: settings file is corrupt or partially written.\n"
            f"Next step: remove or repair '{path}' and restart.",
        )

    if not isinstance(data, dict):
        logger.warning("Settings file at %s is not a JSON object.", path)
        return (
            HostSettings(),
            "Settings were reset to defaults.\n"
            "Likely cause: settings file format is invalid for this version.\n"
            f"Next step: remove '{path}' and restart.",
        )

    return _coerce_settings(data), None


def load_settings(path: Path) -> HostSettings:
    settings, _notice = load_settings_with_notice(path)
    return settings


def save_settings(path: Path, settings: HostSettings) -> None:
    """Persist settings atomically via write-then-replace."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f"{path.name}.{uuid4().hex}.tmp")
    try:
        tmp_path.write_text(
            json.dumps(asdict(settings), indent=2, sort_keys=True), encoding="utf-8"
        )
        tmp_path.replace(path)
    finally:
        with suppress(OSError):
            tmp_path.unlink()
