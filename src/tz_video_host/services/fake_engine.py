"""Fake media engine for deterministic testing and the `fake` host mode.

Callbacks are queued and delivered in order by a dispatcher task, like a
real engine reporting from its own thread. `settle()` waits until every
queued callback has been handled.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any

from .media_engine import (
    EngineEventHandler,
    EngineFailed,
    EngineState,
    HlsManifest,
    HlsVariant,
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
from .source_resolver import PlayableSource, SourceKind
from .surfaces import RenderTarget

logger = logging.getLogger(__name__)


@dataclass
class _EngineState:
    playback_state: EngineState = EngineState.IDLE
    play_when_ready: bool = False
    position_ms: int = 0
    buffered_ms: int = 0
    duration_ms: int = 0
    volume: float = 1.0
    speed: float = 1.0
    repeat_mode: RepeatMode = RepeatMode.OFF
    video_format: VideoFormat | None = None
    manifest: object | None = None
    mapped_track_info: MappedTrackInfo | None = None
    overrides: dict[int, SelectionOverride] = field(default_factory=dict)


class FakeMediaEngine:
    """In-memory engine; `auto_ready` simulates a source that loads instantly."""

    def __init__(
        self,
        *,
        tick_interval_ms: int | None = None,
        auto_ready: bool = False,
        default_duration_ms: int = 180_000,
        video_format: VideoFormat | None = VideoFormat(1280, 720),
    ) -> None:
        self._tick_interval_ms = tick_interval_ms
        self._auto_ready = auto_ready
        self._default_duration_ms = default_duration_ms
        self._default_video_format = video_format
        self._state = _EngineState()
        self._handler: EngineEventHandler | None = None
        self._events: asyncio.Queue[RawEngineEvent] | None = None
        self._dispatcher: asyncio.Task[None] | None = None
        self._ticker: asyncio.Task[None] | None = None
        self.source: PlayableSource | None = None
        self.surface: RenderTarget | None = None
        self.released = False
        self.calls: list[tuple[str, tuple[Any, ...]]] = []

    @property
    def state(self) -> _EngineState:
        return self._state

    def set_event_handler(self, handler: EngineEventHandler) -> None:
        self._handler = handler

    async def start(self) -> None:
        if self._dispatcher is not None:
            return
        self._events = asyncio.Queue()
        self._dispatcher = asyncio.create_task(self._dispatch_loop())
        if self._tick_interval_ms:
            self._ticker = asyncio.create_task(self._ticker_loop())

    async def settle(self) -> None:
        """Wait until all queued callbacks have been delivered."""
        if self._events is not None and self._dispatcher is not None:
            await self._events.join()

    async def prepare(self, source: PlayableSource) -> None:
        self._record("prepare", source)
        self.source = source
        self._set_state(EngineState.BUFFERING)
        if self._auto_ready:
            self._load_media()

    async def attach_surface(self, surface: RenderTarget) -> None:
        self._record("attach_surface", surface.id)
        self.surface = surface

    async def set_play_when_ready(self, play_when_ready: bool) -> None:
        self._record("set_play_when_ready", play_when_ready)
        if self._state.play_when_ready == play_when_ready:
            return
        self._state.play_when_ready = play_when_ready
        self._enqueue(PlayWhenReadyChanged(play_when_ready))

    async def retry(self) -> None:
        self._record("retry")
        if self._state.playback_state is not EngineState.IDLE or self.source is None:
            return
        self._set_state(EngineState.BUFFERING)
        if self._auto_ready:
            self._set_state(EngineState.READY)

    async def seek_to(self, position_ms: int) -> None:
        self._record("seek_to", position_ms)
        duration = self._state.duration_ms
        upper = duration if duration > 0 else max(position_ms, 0)
        self._state.position_ms = _clamp(position_ms, 0, upper)
        if self._state.playback_state in (EngineState.READY, EngineState.ENDED):
            self._set_state(EngineState.BUFFERING)
            if self._auto_ready:
                self._set_state(EngineState.READY)

    async def set_repeat_mode(self, mode: RepeatMode) -> None:
        self._record("set_repeat_mode", mode)
        self._state.repeat_mode = mode

    async def set_volume(self, volume: float) -> None:
        self._record("set_volume", volume)
        self._state.volume = volume

    async def set_playback_speed(self, speed: float) -> None:
        self._record("set_playback_speed", speed)
        self._state.speed = speed

    async def get_playback_state(self) -> EngineState:
        return self._state.playback_state

    async def get_position_ms(self) -> int:
        return self._state.position_ms

    async def get_buffered_position_ms(self) -> int:
        return self._state.buffered_ms

    async def get_duration_ms(self) -> int:
        return self._state.duration_ms

    async def get_video_format(self) -> VideoFormat | None:
        return self._state.video_format

    async def get_manifest(self) -> object | None:
        return self._state.manifest

    async def get_mapped_track_info(self) -> MappedTrackInfo | None:
        return self._state.mapped_track_info

    async def clear_selection_overrides(self) -> None:
        self._record("clear_selection_overrides")
        self._state.overrides.clear()

    async def set_selection_override(
        self, renderer_index: int, override: SelectionOverride
    ) -> None:
        self._record("set_selection_override", renderer_index, override)
        self._state.overrides[renderer_index] = override
        if renderer_index == 0:
            self._enqueue(TracksChanged((override.track_index,)))

    async def stop(self) -> None:
        self._record("stop")
        self._state.play_when_ready = False
        self._set_state(EngineState.IDLE)

    async def release(self) -> None:
        self._record("release")
        if self.released:
            raise RuntimeError("Engine already released")
        self.released = True
        for task in (self._ticker, self._dispatcher):
            if task is not None:
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
        self._ticker = None
        self._dispatcher = None

    def simulate_buffering(self, buffered_ms: int | None = None) -> None:
        if buffered_ms is not None:
            self._state.buffered_ms = buffered_ms
        self._set_state(EngineState.BUFFERING)

    def simulate_ready(
        self,
        *,
        duration_ms: int | None = None,
        video_format: VideoFormat | None = None,
        audio_only: bool = False,
    ) -> None:
        self._state.duration_ms = duration_ms or self._default_duration_ms
        if audio_only:
            self._state.video_format = None
        else:
            self._state.video_format = video_format or self._default_video_format
        self._set_state(EngineState.READY)

    def simulate_ended(self) -> None:
        self._state.position_ms = self._state.duration_ms
        self._set_state(EngineState.ENDED)

    def simulate_error(self, message: str) -> None:
        self._state.playback_state = EngineState.IDLE
        self._state.play_when_ready = False
        self._enqueue(EngineFailed(message))

    def simulate_timeline(
        self,
        manifest: object | None,
        mapped_track_info: MappedTrackInfo | None = None,
    ) -> None:
        self._state.manifest = manifest
        if mapped_track_info is None and isinstance(manifest, HlsManifest):
            mapped_track_info = _tracks_for(manifest)
        self._state.mapped_track_info = mapped_track_info
        self._enqueue(TimelineChanged())

    def simulate_tracks(self, *selected_indices: int) -> None:
        self._enqueue(TracksChanged(tuple(selected_indices)))

    def _load_media(self) -> None:
        self._state.duration_ms = self._default_duration_ms
        self._state.video_format = self._default_video_format
        self._state.buffered_ms = self._state.duration_ms // 10
        if self.source is not None and self.source.kind is SourceKind.HLS:
            manifest = HlsManifest(
                (
                    HlsVariant(640, 360, 800_000),
                    HlsVariant(1280, 720, 2_500_000),
                    HlsVariant(1920, 1080, 5_000_000),
                )
            )
            self.simulate_timeline(manifest)
            self.simulate_tracks(0)
        self._set_state(EngineState.READY)

    def _set_state(self, state: EngineState) -> None:
        self._state.playback_state = state
        self._enqueue(PlaybackStateChanged(state))

    def _enqueue(self, event: RawEngineEvent) -> None:
        if self._events is None:
            raise RuntimeError("Fake engine not started.")
        self._events.put_nowait(event)

    def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))

    async def _dispatch_loop(self) -> None:
        assert self._events is not None
        while True:
            event = await self._events.get()
            try:
                if self._handler is not None:
                    await self._handler(event)
            except Exception:
                logger.exception("Engine event handler failed for %r", event)
            finally:
                self._events.task_done()

    async def _ticker_loop(self) -> None:
        assert self._tick_interval_ms
        interval_s = self._tick_interval_ms / 1000
        while True:
            await asyncio.sleep(interval_s)
            self._tick()

    def _tick(self) -> None:
        state = self._state
        if state.playback_state is not EngineState.READY or not state.play_when_ready:
            return
        if state.duration_ms <= 0:
            return
        increment = int((self._tick_interval_ms or 0) * state.speed)
        state.position_ms = min(state.position_ms + increment, state.duration_ms)
        state.buffered_ms = max(state.buffered_ms, state.position_ms)
        if state.position_ms < state.duration_ms:
            return
        if state.repeat_mode is RepeatMode.ALL:
            state.position_ms = 0
            return
        self._set_state(EngineState.ENDED)


def _tracks_for(manifest: HlsManifest) -> MappedTrackInfo:
    labels = tuple(f"{v.width}x{v.height}" for v in manifest.variants)
    return MappedTrackInfo(renderer_groups=((TrackGroup(labels),),))


def _clamp(value: int, min_value: int, max_value: int) -> int:
    return max(min_value, min(value, max_value))
