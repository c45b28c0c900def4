"""Tests for runtime config precedence behavior."""

from __future__ import annotations

from tz_video_host.cli import build_parser
from tz_video_host.runtime_config import (
    clamp_poll_interval_ms,
    normalize_engine_name,
    resolve_log_level,
)


def test_resolve_log_level_precedence_matrix() -> None:
    assert resolve_log_level(verbose=False, quiet=False) == "INFO"
    assert resolve_log_level(verbose=True, quiet=False) == "DEBUG"
    assert resolve_log_level(verbose=False, quiet=True) == "WARNING"
    assert resolve_log_level(verbose=True, quiet=True) == "WARNING"


def test_persisted_log_level_applies_only_without_flags() -> None:
    assert resolve_log_level(verbose=False, quiet=False, default="debug") == "DEBUG"
    assert resolve_log_level(verbose=False, quiet=True, default="DEBUG") == "WARNING"
    assert resolve_log_level(verbose=True, quiet=False, default="ERROR") == "DEBUG"
    assert resolve_log_level(verbose=False, quiet=False, default="loud") == "INFO"


def test_engine_name_prefers_cli_then_settings() -> None:
    assert normalize_engine_name("VLC", "fake") == "vlc"
    assert normalize_engine_name(None, " vlc ") == "vlc"
    assert normalize_engine_name("bogus", "vlc") == "vlc"
    assert normalize_engine_name("bogus", "also-bogus") == "fake"
    assert normalize_engine_name(None) == "fake"


def test_poll_interval_is_clamped() -> None:
    assert clamp_poll_interval_ms(1) == 100
    assert clamp_poll_interval_ms(1000) == 1000
    assert clamp_poll_interval_ms(60_000) == 10_000


def test_parser_and_log_resolution_consistent() -> None:
    args = build_parser().parse_args(["--engine", "fake", "--verbose", "--quiet"])
    assert args.engine == "fake"
    assert resolve_log_level(verbose=args.verbose, quiet=args.quiet) == "WARNING"
