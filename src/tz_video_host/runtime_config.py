"""Runtime configuration normalization helpers.

These helpers keep CLI flag and persisted setting interpretation
deterministic across entrypoints.
"""

from __future__ import annotations

ENGINE_NAMES = ("fake", "vlc")
DEFAULT_ENGINE = "fake"
POLL_INTERVAL_MIN_MS = 100
POLL_INTERVAL_MAX_MS = 10_000
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def resolve_log_level(
    *, verbose: bool, quiet: bool, default: str | None = None
) -> str:
    """Resolve effective log level from CLI flags, then the persisted level.

    Precedence is deterministic: --quiet overrides --verbose, and either
    flag overrides `default`. Unknown persisted levels fall back to INFO.
    """
    if quiet:
        return "WARNING"
    if verbose:
        return "DEBUG"
    if default is not None and default.strip().upper() in LOG_LEVELS:
        return default.strip().upper()
    return "INFO"


def normalize_engine_name(value: str | None, fallback: str | None = None) -> str:
    """Pick the first valid engine name from CLI value, then persisted fallback."""
    for candidate in (value, fallback):
        if candidate is None:
            continue
        normalized = candidate.strip().lower()
        if normalized in ENGINE_NAMES:
            return normalized
    return DEFAULT_ENGINE


def clamp_poll_interval_ms(value: int) -> int:
    """Bound the download progress poll interval to a sane range."""
    return max(POLL_INTERVAL_MIN_MS, min(POLL_INTERVAL_MAX_MS, int(value)))
