"""VLC media engine using python-vlc.

libVLC is driven from one dedicated thread. Commands are queued to it and
resolved through asyncio futures; engine callbacks are derived by polling
the player state and posted back onto the event loop in order.
"""

from __future__ import annotations

import asyncio
import logging
import queue
import sys
import threading
from collections.abc import Coroutine
from dataclasses import dataclass
from typing import Any, cast

from .media_engine import (
    EngineEventHandler,
    EngineFailed,
    EngineState,
    MappedTrackInfo,
    PlaybackStateChanged,
    PlayWhenReadyChanged,
    RawEngineEvent,
    RepeatMode,
    SelectionOverride,
    TimelineChanged,
    TrackGroup,
    TracksChanged,
    VideoFormat,
)
from .source_resolver import PlayableSource
from .surfaces import RenderTarget

logger = logging.getLogger(__name__)


@dataclass
class _Command:
    name: str
    args: tuple[Any, ...]
    future: asyncio.Future[Any] | None


@dataclass
class _ThreadState:
    """Mutated only on the VLC thread."""

    media: Any = None
    engine_state: EngineState = EngineState.IDLE
    play_when_ready: bool = False
    repeat_mode: RepeatMode = RepeatMode.OFF
    video_track_ids: tuple[int, ...] = ()
    error_reported: bool = False
    timeline_reported: bool = False


class VlcMediaEngine:
    """Media engine backed by a dedicated libVLC thread."""

    def __init__(self, *, poll_interval_ms: int = 100, user_agent: str = "") -> None:
        self._poll_interval = poll_interval_ms / 1000
        self._user_agent = user_agent
        self._handler: EngineEventHandler | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: queue.Queue[_Command] = queue.Queue()
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._state = _ThreadState()

    def set_event_handler(self, handler: EngineEventHandler) -> None:
        self._handler = handler

    async def start(self) -> None:
        if self._thread is not None:
            return
        self._loop = asyncio.get_running_loop()
        ready_future: asyncio.Future[None] = self._loop.create_future()
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._thread_main,
            args=(ready_future,),
            name="VlcEngineThread",
            daemon=True,
        )
        self._thread.start()
        await ready_future

    async def release(self) -> None:
        if self._thread is None:
            return
        self._stop_event.set()
        self._queue.put(_Command("wake", (), None))
        thread = self._thread
        await asyncio.to_thread(thread.join, 2.0)
        self._thread = None
        if thread.is_alive():
            raise RuntimeError("VLC engine thread did not stop within 2.0 seconds")

    async def prepare(self, source: PlayableSource) -> None:
        await self._submit("prepare", source)

    async def attach_surface(self, surface: RenderTarget) -> None:
        await self._submit("attach_surface", surface.native_handle)

    async def set_play_when_ready(self, play_when_ready: bool) -> None:
        await self._submit("set_play_when_ready", play_when_ready)

    async def retry(self) -> None:
        await self._submit("retry")

    async def seek_to(self, position_ms: int) -> None:
        await self._submit("seek_to", position_ms)

    async def set_repeat_mode(self, mode: RepeatMode) -> None:
        await self._submit("set_repeat_mode", mode)

    async def set_volume(self, volume: float) -> None:
        await self._submit("set_volume", volume)

    async def set_playback_speed(self, speed: float) -> None:
        await self._submit("set_playback_speed", speed)

    async def get_playback_state(self) -> EngineState:
        return cast(EngineState, await self._submit("get_playback_state"))

    async def get_position_ms(self) -> int:
        return int(await self._submit("get_position_ms"))

    async def get_buffered_position_ms(self) -> int:
        # libVLC exposes no buffered-range API; report the read position.
        return int(await self._submit("get_position_ms"))

    async def get_duration_ms(self) -> int:
        return int(await self._submit("get_duration_ms"))

    async def get_video_format(self) -> VideoFormat | None:
        return cast("VideoFormat | None", await self._submit("get_video_format"))

    async def get_manifest(self) -> object | None:
        return None

    async def get_mapped_track_info(self) -> MappedTrackInfo | None:
        return cast("MappedTrackInfo | None", await self._submit("get_tracks"))

    async def clear_selection_overrides(self) -> None:
        await self._submit("clear_selection_overrides")

    async def set_selection_override(
        self, renderer_index: int, override: SelectionOverride
    ) -> None:
        await self._submit("set_selection_override", renderer_index, override)

    async def stop(self) -> None:
        await self._submit("stop")

    async def _submit(self, name: str, *args: Any) -> Any:
        if self._loop is None or self._thread is None or not self._thread.is_alive():
            raise RuntimeError("VLC engine not started.")
        future: asyncio.Future[Any] = self._loop.create_future()
        self._queue.put(_Command(name, args, future))
        return await future

    def _thread_main(self, ready_future: asyncio.Future[None]) -> None:
        try:
            import vlc

            instance = vlc.Instance("--no-video-title-show")
            player = instance.media_player_new()
        except Exception as exc:  # pragma: no cover - depends on VLC install
            self._notify_future_exception(
                ready_future,
                RuntimeError("VLC engine unavailable. Ensure VLC/libVLC is installed."),
            )
            self._emit_event(EngineFailed(str(exc)))
            return

        self._notify_future_result(ready_future, None)
        while not self._stop_event.is_set():
            try:
                cmd = self._queue.get(timeout=self._poll_interval)
            except queue.Empty:
                cmd = None

            if cmd is not None and cmd.name != "wake":
                try:
                    result = self._handle_command(cmd, instance, player)
                    self._notify_future_result(cmd.future, result)
                except Exception as exc:  # pragma: no cover - engine safety net
                    self._notify_future_exception(cmd.future, exc)

            self._poll_player(player)

        player.stop()
        player.release()
        instance.release()

    def _poll_player(self, player: Any) -> None:
        state = self._state
        if state.media is None:
            return
        vlc_state = _vlc_state_name(player)
        if vlc_state == "error":
            if not state.error_reported:
                state.error_reported = True
                state.play_when_ready = False
                self._set_engine_state(EngineState.IDLE, emit=False)
                self._emit_event(EngineFailed("libVLC reported a playback error"))
            return
        if vlc_state == "ended" and state.repeat_mode is RepeatMode.ALL:
            player.set_media(state.media)
            player.play()
            return
        mapped = _map_state(vlc_state, state.engine_state)
        if mapped is EngineState.READY and not state.play_when_ready:
            if vlc_state == "playing":
                player.set_pause(1)
        self._set_engine_state(mapped)
        if mapped is EngineState.READY and not state.timeline_reported:
            state.timeline_reported = True
            self._refresh_tracks(player)
            self._emit_event(TimelineChanged())
            current = player.video_get_track()
            if current in state.video_track_ids:
                self._emit_event(
                    TracksChanged((state.video_track_ids.index(current),))
                )

    def _set_engine_state(
        self, engine_state: EngineState, *, emit: bool = True
    ) -> None:
        if engine_state is self._state.engine_state:
            return
        self._state.engine_state = engine_state
        if emit:
            self._emit_event(PlaybackStateChanged(engine_state))

    def _refresh_tracks(self, player: Any) -> None:
        descriptions = player.video_get_track_description() or []
        self._state.video_track_ids = tuple(
            int(track_id) for track_id, _name in descriptions if int(track_id) >= 0
        )

    def _handle_command(self, cmd: _Command, instance: Any, player: Any) -> Any:
        state = self._state
        name = cmd.name
        if name == "prepare":
            (source,) = cmd.args
            if source.local_path:
                media = instance.media_new_path(source.local_path)
            else:
                media = instance.media_new(source.uri)
                if self._user_agent:
                    media.add_option(f":http-user-agent={self._user_agent}")
            state.media = media
            state.error_reported = False
            state.timeline_reported = False
            player.set_media(media)
            # libVLC only opens media on play; READY pauses it unless wanted.
            player.play()
            self._set_engine_state(EngineState.BUFFERING)
            return None
        if name == "attach_surface":
            (native_handle,) = cmd.args
            if native_handle is not None:
                _attach_window(player, native_handle)
            return None
        if name == "set_play_when_ready":
            (play_when_ready,) = cmd.args
            changed = state.play_when_ready != play_when_ready
            state.play_when_ready = play_when_ready
            if play_when_ready:
                if state.engine_state is EngineState.READY:
                    player.set_pause(0)
                elif state.engine_state is EngineState.ENDED:
                    player.play()
            else:
                player.set_pause(1)
            if changed:
                self._emit_event(PlayWhenReadyChanged(play_when_ready))
            return None
        if name == "retry":
            if state.media is None:
                return None
            state.error_reported = False
            player.stop()
            player.set_media(state.media)
            player.play()
            self._set_engine_state(EngineState.BUFFERING)
            return None
        if name == "seek_to":
            (position_ms,) = cmd.args
            if state.engine_state is EngineState.ENDED:
                player.set_media(state.media)
                player.play()
                self._set_engine_state(EngineState.BUFFERING)
            player.set_time(max(int(position_ms), 0))
            return None
        if name == "set_repeat_mode":
            (state.repeat_mode,) = cmd.args
            return None
        if name == "set_volume":
            (volume,) = cmd.args
            player.audio_set_volume(int(round(float(volume) * 100)))
            return None
        if name == "set_playback_speed":
            (speed,) = cmd.args
            player.set_rate(float(speed))
            return None
        if name == "get_playback_state":
            return state.engine_state
        if name == "get_position_ms":
            return max(player.get_time(), 0)
        if name == "get_duration_ms":
            return max(player.get_length(), 0)
        if name == "get_video_format":
            size = player.video_get_size(0)
            if not size or size[0] <= 0 or size[1] <= 0:
                return None
            return VideoFormat(int(size[0]), int(size[1]))
        if name == "get_tracks":
            self._refresh_tracks(player)
            if not state.video_track_ids:
                return None
            labels = tuple(str(track_id) for track_id in state.video_track_ids)
            return MappedTrackInfo(renderer_groups=((TrackGroup(labels),),))
        if name == "clear_selection_overrides":
            return None
        if name == "set_selection_override":
            renderer_index, override = cmd.args
            ids = state.video_track_ids
            if renderer_index != 0 or not 0 <= override.track_index < len(ids):
                return None
            player.video_set_track(ids[override.track_index])
            self._emit_event(TracksChanged((override.track_index,)))
            return None
        if name == "stop":
            player.stop()
            state.play_when_ready = False
            self._set_engine_state(EngineState.IDLE)
            return None
        raise ValueError(f"Unknown command {name}")

    def _emit_event(self, event: RawEngineEvent) -> None:
        if self._handler is None or self._loop is None:
            return
        coro = self._handler(event)
        asyncio.run_coroutine_threadsafe(
            cast(Coroutine[Any, Any, None], coro), self._loop
        )

    def _notify_future_result(
        self, future: asyncio.Future[Any] | None, value: Any
    ) -> None:
        if future is None or self._loop is None:
            return
        self._loop.call_soon_threadsafe(_resolve_future_result, future, value)

    def _notify_future_exception(
        self, future: asyncio.Future[Any] | None, exc: Exception
    ) -> None:
        if future is None or self._loop is None:
            return
        self._loop.call_soon_threadsafe(_resolve_future_exception, future, exc)


def _resolve_future_result(future: asyncio.Future[Any], value: Any) -> None:
    if not future.done():
        future.set_result(value)


def _resolve_future_exception(future: asyncio.Future[Any], exc: Exception) -> None:
    if not future.done():
        future.set_exception(exc)


def _attach_window(player: Any, native_handle: int) -> None:
    if sys.platform.startswith("win"):
        player.set_hwnd(native_handle)
    elif sys.platform == "darwin":
        player.set_nsobject(native_handle)
    else:
        player.set_xwindow(native_handle)


def _vlc_state_name(player: Any) -> str:
    try:
        state = player.get_state()
    except Exception:
        return "error"
    return str(getattr(state, "name", state)).lower().replace("state.", "")


def _map_state(vlc_state: str, current: EngineState) -> EngineState:
    if vlc_state in {"opening", "buffering"}:
        return EngineState.BUFFERING
    if vlc_state in {"playing", "paused"}:
        return EngineState.READY
    if vlc_state == "ended":
        return EngineState.ENDED
    if vlc_state in {"stopped", "nothingspecial"}:
        return EngineState.IDLE
    return current
