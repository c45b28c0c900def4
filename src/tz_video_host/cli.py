"""Command-line entrypoint: a JSON-lines command channel over stdio.

Each stdin line is a request ``{"id": ..., "method": ..., "args": {...}}``.
Responses are ``{"id": ..., "result": ...}`` or ``{"id": ..., "error":
{"code": ..., "message": ...}}``. Session events are written as
``{"handle": ..., "event": ...}`` once a client sends ``listen``.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from . import __version__
from .doctor import render_report, run_doctor
from .errors import VideoHostError
from .events import SessionEvent
from .logging_utils import setup_logging
from .paths import download_index_path, downloads_dir, log_dir, settings_path
from .runtime_config import (
    ENGINE_NAMES,
    clamp_poll_interval_ms,
    normalize_engine_name,
    resolve_log_level,
)
from .services.download_engine import InMemoryDownloadEngine
from .services.download_index import load_index
from .services.download_registry import DownloadRegistry
from .services.fake_engine import FakeMediaEngine
from .services.media_engine import MediaEngine
from .services.session_registry import SessionRegistry, handle_arg
from .services.source_resolver import SourceResolver
from .services.vlc_engine import VlcMediaEngine
from .settings_store import HostSettings, load_settings_with_notice
from .version import build_help_epilog

logger = logging.getLogger(__name__)

Writer = Callable[[dict[str, Any]], None]
LineReader = Callable[[], Awaitable[str]]


class _InvalidRequest(VideoHostError):
    code = "invalid_request"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tz-video-host",
        description="Video playback session host speaking JSON lines on stdio.",
        epilog=build_help_epilog(),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    parser.add_argument("--verbose", action="store_true", help="Enable verbose output")
    parser.add_argument(
        "--quiet", action="store_true", help="Only show warnings and errors"
    )
    parser.add_argument("--log-file", help="Write logs to a file path")
    parser.add_argument(
        "--engine",
        choices=ENGINE_NAMES,
        help="Media engine to use (fake or vlc).",
    )
    parser.add_argument("--asset-root", help="Directory holding bundled assets")
    parser.add_argument(
        "--doctor",
        action="store_true",
        help="Check media engine prerequisites and exit.",
    )
    return parser


def download_root(settings: HostSettings) -> Path | None:
    """Return the configured download directory, if settings name one."""
    return Path(settings.download_dir).expanduser() if settings.download_dir else None


def engine_factory_for(
    engine_name: str, settings: HostSettings
) -> Callable[[], MediaEngine]:
    if engine_name == "vlc":
        return lambda: VlcMediaEngine(user_agent=settings.user_agent)
    return lambda: FakeMediaEngine(tick_interval_ms=250, auto_ready=True)


def build_registry(
    settings: HostSettings,
    engine_name: str,
    *,
    index_path: Path | None = None,
    asset_root: Path | None = None,
) -> tuple[SessionRegistry, InMemoryDownloadEngine]:
    download_registry = DownloadRegistry(load_index(index_path) if index_path else [])
    download_engine = InMemoryDownloadEngine(
        download_registry, index_path=index_path, auto_progress=True
    )
    root = asset_root
    if root is None and settings.asset_root:
        root = Path(settings.asset_root)
    resolver = SourceResolver(
        user_agent=settings.user_agent,
        allow_cross_protocol_redirects=settings.allow_cross_protocol_redirects,
        asset_root=root,
    )
    registry = SessionRegistry(
        engine_factory=engine_factory_for(engine_name, settings),
        download_registry=download_registry,
        download_engine=download_engine,
        resolver=resolver,
        poll_interval_ms=clamp_poll_interval_ms(settings.poll_interval_ms),
    )
    return registry, download_engine


def event_writer(
    handle: int, write: Writer
) -> Callable[[SessionEvent], Awaitable[None]]:
    async def deliver(event: SessionEvent) -> None:
        write({"handle": handle, **event.to_message()})

    return deliver


async def handle_request(
    registry: SessionRegistry, request: Any, write: Writer
) -> None:
    """Dispatch one decoded request and write exactly one response."""
    request_id = request.get("id") if isinstance(request, dict) else None
    try:
        if not isinstance(request, dict) or not isinstance(request.get("method"), str):
            raise _InvalidRequest("request must be an object with a 'method'")
        method = request["method"]
        args = request.get("args") or {}
        if not isinstance(args, dict):
            raise _InvalidRequest("'args' must be an object")
        if method in ("listen", "cancel"):
            result = await _stream_command(registry, method, args, write)
        else:
            result = await registry.handle_command(method, args)
    except VideoHostError as exc:
        write({"id": request_id, "error": {"code": exc.code, "message": str(exc)}})
        return
    except Exception as exc:
        logger.exception("Unhandled error for request %r", request_id)
        write(
            {"id": request_id, "error": {"code": "internal_error", "message": str(exc)}}
        )
        return
    write({"id": request_id, "result": result})


async def _stream_command(
    registry: SessionRegistry, method: str, args: dict[str, Any], write: Writer
) -> None:
    handle = handle_arg(args)
    if method == "listen":
        await registry.subscribe(handle, event_writer(handle, write))
    else:
        await registry.unsubscribe(handle)


async def serve(
    registry: SessionRegistry, read_line: LineReader, write: Writer
) -> None:
    """Process requests until EOF, then dispose every session."""
    try:
        while True:
            line = await read_line()
            if not line:
                break
            line = line.strip()
            if not line:
                continue
            try:
                request = json.loads(line)
            except json.JSONDecodeError as exc:
                write(
                    {"id": None, "error": {"code": "invalid_json", "message": str(exc)}}
                )
                continue
            await handle_request(registry, request, write)
    finally:
        await registry.dispose_all()


def _stdout_writer(message: dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(message, ensure_ascii=True) + "\n")
    sys.stdout.flush()


async def _read_stdin_line() -> str:
    return await asyncio.to_thread(sys.stdin.readline)


async def _run(
    settings: HostSettings, engine_name: str, asset_root: Path | None
) -> None:
    registry, download_engine = build_registry(
        settings,
        engine_name,
        index_path=download_index_path(override=download_root(settings)),
        asset_root=asset_root,
    )
    try:
        await serve(registry, _read_stdin_line, _stdout_writer)
    finally:
        await download_engine.shutdown()


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    logger = logging.getLogger(__name__)
    try:
        settings, notice = load_settings_with_notice(settings_path())
        level = resolve_log_level(
            verbose=args.verbose, quiet=args.quiet, default=settings.log_level
        )
        setup_logging(
            log_dir=log_dir(),
            level=level,
            log_file=Path(args.log_file) if args.log_file else None,
        )
        if notice:
            logger.warning(notice)
        engine_name = normalize_engine_name(args.engine, settings.engine)
        if args.doctor:
            report = run_doctor(
                engine_name,
                settings_file=settings_path(),
                downloads=downloads_dir(override=download_root(settings)),
            )
            print(render_report(report), file=sys.stderr)
            return report.exit_code
        logger.info("Starting tz-video-host", extra={"engine": engine_name})
        asyncio.run(
            _run(
                settings,
                engine_name,
                Path(args.asset_root) if args.asset_root else None,
            )
        )
        return 0
    except KeyboardInterrupt:
        return 130
    except Exception as exc:  # pragma: no cover - top-level safety net
        logger.exception("Unhandled error: %s", exc)
        print("Unexpected error. Re-run with --verbose for details.", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
