"""Handle-to-session map and command dispatch for the client channel.

`SessionRegistry` is the single owner of live sessions. Transports hand
it `(method, args)` pairs; lookup and argument errors are raised back to
the caller while runtime playback failures travel on the event streams.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Awaitable, Callable, Mapping
from pathlib import Path
from typing import Any

from tz_video_host.errors import (
    CommandNotImplementedError,
    InvalidArgumentError,
    UnknownSessionError,
)
from tz_video_host.services.download_engine import DownloadEngine
from tz_video_host.services.download_registry import DownloadRegistry
from tz_video_host.services.event_sink import EventListener
from tz_video_host.services.media_engine import MediaEngine
from tz_video_host.services.progress_poller import DEFAULT_POLL_INTERVAL_MS
from tz_video_host.services.session import Session
from tz_video_host.services.source_resolver import SourceResolver, asset_uri
from tz_video_host.services.surfaces import SurfaceAllocator

logger = logging.getLogger(__name__)

_HANDLE_KEYS = ("handle", "textureId")
_POSITION_KEYS = ("position", "location", "positionMs")
_LABEL_KEYS = ("label", "name")


class SessionRegistry:
    """Creates, looks up and tears down sessions keyed by handle."""

    def __init__(
        self,
        *,
        engine_factory: Callable[[], MediaEngine],
        download_registry: DownloadRegistry,
        download_engine: DownloadEngine,
        surfaces: SurfaceAllocator | None = None,
        resolver: SourceResolver | None = None,
        poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
        asset_root: Path | None = None,
    ) -> None:
        self._engine_factory = engine_factory
        self._download_registry = download_registry
        self._download_engine = download_engine
        self._surfaces = surfaces or SurfaceAllocator()
        self._resolver = resolver or SourceResolver(asset_root=asset_root)
        self._poll_interval_ms = poll_interval_ms
        self._sessions: dict[int, Session] = {}
        self._commands: dict[str, Callable[[Mapping[str, Any]], Awaitable[Any]]] = {
            "init": self._cmd_init,
            "create": self._cmd_create,
            "setLooping": self._cmd_set_looping,
            "setVolume": self._cmd_set_volume,
            "setSpeed": self._cmd_set_speed,
            "seekTo": self._cmd_seek_to,
            "play": self._cmd_play,
            "pause": self._cmd_pause,
            "position": self._cmd_position,
            "dispose": self._cmd_dispose,
            "switchResolution": self._cmd_switch_resolution,
            "switchResolutions": self._cmd_switch_resolution,
            "download": self._cmd_download,
            "removeDownload": self._cmd_remove_download,
        }

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, handle: object) -> bool:
        return handle in self._sessions

    @property
    def handles(self) -> list[int]:
        return list(self._sessions)

    def get(self, handle: int) -> Session:
        session = self._sessions.get(handle)
        if session is None:
            raise UnknownSessionError(handle)
        return session

    async def create(
        self,
        *,
        uri: str | None = None,
        asset: str | None = None,
        package: str | None = None,
    ) -> int:
        """Create and open a session; returns its handle."""
        if asset is not None:
            source_uri = asset_uri(asset, package)
        elif uri is not None:
            source_uri = uri
        else:
            raise InvalidArgumentError("create requires 'uri' or 'asset'")
        surface = self._surfaces.create()
        session = Session(
            surface.id,
            source_uri,
            engine=self._engine_factory(),
            surface=surface,
            download_registry=self._download_registry,
            download_engine=self._download_engine,
            resolver=self._resolver,
            poll_interval_ms=self._poll_interval_ms,
        )
        try:
            await session.open()
        except Exception:
            await session.dispose()
            raise
        self._sessions[session.handle] = session
        logger.info(
            "Created session", extra={"handle": session.handle, "uri": source_uri}
        )
        return session.handle

    async def dispose(self, handle: int) -> None:
        session = self._sessions.pop(handle, None)
        if session is None:
            raise UnknownSessionError(handle)
        await session.dispose()

    async def dispose_all(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            await session.dispose()
        if sessions:
            logger.info("Disposed %d session(s)", len(sessions))

    async def subscribe(self, handle: int, listener: EventListener) -> None:
        await self.get(handle).subscribe(listener)

    async def unsubscribe(self, handle: int) -> None:
        await self.get(handle).unsubscribe()

    async def handle_command(
        self, method: str, args: Mapping[str, Any] | None = None
    ) -> Any:
        command = self._commands.get(method)
        if command is None:
            raise CommandNotImplementedError(method)
        return await command(args or {})

    async def _cmd_init(self, args: Mapping[str, Any]) -> None:
        await self.dispose_all()

    async def _cmd_create(self, args: Mapping[str, Any]) -> dict[str, int]:
        asset = _optional_str(args, "asset")
        handle = await self.create(
            uri=_optional_str(args, "uri"),
            asset=asset,
            package=_optional_str(args, "package") if asset is not None else None,
        )
        return {"handle": handle}

    async def _cmd_set_looping(self, args: Mapping[str, Any]) -> None:
        session = self._session_for(args)
        await session.set_looping(_bool_arg(args, "looping"))

    async def _cmd_set_volume(self, args: Mapping[str, Any]) -> None:
        session = self._session_for(args)
        await session.set_volume(_float_arg(args, "volume"))

    async def _cmd_set_speed(self, args: Mapping[str, Any]) -> None:
        session = self._session_for(args)
        await session.set_speed(_float_arg(args, "speed"))

    async def _cmd_seek_to(self, args: Mapping[str, Any]) -> None:
        session = self._session_for(args)
        await session.seek_to(_int_arg(args, *_POSITION_KEYS))

    async def _cmd_play(self, args: Mapping[str, Any]) -> None:
        await self._session_for(args).play()

    async def _cmd_pause(self, args: Mapping[str, Any]) -> None:
        await self._session_for(args).pause()

    async def _cmd_position(self, args: Mapping[str, Any]) -> int:
        return await self._session_for(args).position()

    async def _cmd_dispose(self, args: Mapping[str, Any]) -> None:
        await self.dispose(_int_arg(args, *_HANDLE_KEYS))

    async def _cmd_switch_resolution(self, args: Mapping[str, Any]) -> None:
        session = self._session_for(args)
        await session.switch_resolution(_int_arg(args, "trackIndex"))

    async def _cmd_download(self, args: Mapping[str, Any]) -> None:
        session = self._session_for(args)
        track_index = _int_arg(args, "trackIndex")
        label = _optional_str(args, *_LABEL_KEYS) or ""
        await session.download(track_index, label)

    async def _cmd_remove_download(self, args: Mapping[str, Any]) -> None:
        await self._session_for(args).remove_download()

    def _session_for(self, args: Mapping[str, Any]) -> Session:
        return self.get(_int_arg(args, *_HANDLE_KEYS))


def handle_arg(args: Mapping[str, Any]) -> int:
    """Read the session handle, accepting the `textureId` alias."""
    return _int_arg(args, *_HANDLE_KEYS)


def _lookup(args: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        if key in args and args[key] is not None:
            return args[key]
    raise InvalidArgumentError(f"missing argument {keys[0]!r}")


def _int_arg(args: Mapping[str, Any], *keys: str) -> int:
    value = _lookup(args, keys)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidArgumentError(f"argument {keys[0]!r} must be an integer")
    if isinstance(value, float) and not value.is_integer():
        raise InvalidArgumentError(f"argument {keys[0]!r} must be an integer")
    return int(value)


def _float_arg(args: Mapping[str, Any], *keys: str) -> float:
    value = _lookup(args, keys)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidArgumentError(f"argument {keys[0]!r} must be a number")
    if math.isnan(value):
        raise InvalidArgumentError(f"argument {keys[0]!r} must be a number")
    return float(value)


def _bool_arg(args: Mapping[str, Any], *keys: str) -> bool:
    value = _lookup(args, keys)
    if not isinstance(value, bool):
        raise InvalidArgumentError(f"argument {keys[0]!r} must be a boolean")
    return value


def _optional_str(args: Mapping[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = args.get(key)
        if value is None:
            continue
        if not isinstance(value, str):
            raise InvalidArgumentError(f"argument {key!r} must be a string")
        return value
    return None
