"""One playback session: engine callbacks in, normalized events out.

`Session` is the lifecycle authority for a single handle. It resolves the
source, drives the media engine, normalizes raw engine callbacks into
client events and owns the session's download coordinator and progress
poller. Engine callbacks and client commands are serialized by a
per-session lock; all events leave through one queuing sink.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Iterator
from contextlib import contextmanager
from enum import Enum

from tz_video_host.errors import InvalidArgumentError, PlaybackError
from tz_video_host.events import (
    BufferingEnd,
    BufferingStart,
    BufferingUpdate,
    Completed,
    Initialized,
    PlaybackFailed,
    PlayStateChanged,
    ResolutionChanged,
    ResolutionsAvailable,
    SessionEvent,
)
from tz_video_host.services.download_coordinator import DownloadCoordinator
from tz_video_host.services.download_engine import DownloadEngine
from tz_video_host.services.download_registry import DownloadRegistry
from tz_video_host.services.event_sink import EventListener, QueuingEventSink
from tz_video_host.services.media_engine import (
    EngineFailed,
    EngineState,
    HlsManifest,
    MediaEngine,
    PlaybackStateChanged,
    PlayWhenReadyChanged,
    RawEngineEvent,
    RepeatMode,
    SelectionOverride,
    TimelineChanged,
    TracksChanged,
)
from tz_video_host.services.progress_poller import (
    DEFAULT_POLL_INTERVAL_MS,
    ProgressPoller,
)
from tz_video_host.services.source_resolver import PlayableSource, SourceResolver
from tz_video_host.services.surfaces import RenderTarget

logger = logging.getLogger(__name__)

VIDEO_RENDERER_INDEX = 0


class SessionState(Enum):
    IDLE = "idle"
    BUFFERING = "buffering"
    READY = "ready"
    ENDED = "ended"
    ERROR = "error"


_STATE_BY_ENGINE = {
    EngineState.IDLE: SessionState.IDLE,
    EngineState.BUFFERING: SessionState.BUFFERING,
    EngineState.READY: SessionState.READY,
    EngineState.ENDED: SessionState.ENDED,
}


def resolution_labels(manifest: HlsManifest) -> dict[int, str]:
    return {
        index: f"{variant.width}x{variant.height}"
        for index, variant in enumerate(manifest.variants)
    }


class Session:
    """Owns one playback handle; commands after `dispose()` are ignored."""

    def __init__(
        self,
        handle: int,
        uri: str,
        *,
        engine: MediaEngine,
        surface: RenderTarget,
        download_registry: DownloadRegistry,
        download_engine: DownloadEngine,
        resolver: SourceResolver,
        poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
    ) -> None:
        self.handle = handle
        self.uri = uri
        self._engine = engine
        self._surface = surface
        self._registry = download_registry
        self._resolver = resolver
        self._sink = QueuingEventSink()
        self._lock = asyncio.Lock()
        self._initialized = False
        self._disposed = False
        self._state = SessionState.IDLE
        self._play_when_ready = False
        self._looping = False
        self._volume = 1.0
        self._speed = 1.0
        self.last_error: PlaybackError | None = None
        self.source: PlayableSource | None = None
        self.downloads = DownloadCoordinator(
            uri,
            registry=download_registry,
            engine=download_engine,
            data_source_factory=resolver.data_source_factory_for(uri),
            emit=self._emit,
        )
        self.poller = ProgressPoller(
            self.downloads, download_registry, interval_ms=poll_interval_ms
        )

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def play_when_ready(self) -> bool:
        return self._play_when_ready

    @property
    def looping(self) -> bool:
        return self._looping

    @property
    def volume(self) -> float:
        return self._volume

    @property
    def speed(self) -> float:
        return self._speed

    @property
    def engine(self) -> MediaEngine:
        return self._engine

    @property
    def surface(self) -> RenderTarget:
        return self._surface

    async def open(self) -> None:
        """Resolve the source and attach the engine.

        Raises `UnsupportedSourceError` before any engine work starts.
        """
        self.source = self._resolver.resolve(self.uri, self._registry)
        self._engine.set_event_handler(self._on_engine_event)
        await self._engine.start()
        await self._engine.prepare(self.source)
        await self._engine.attach_surface(self._surface)
        await self.init_download_state()
        logger.info(
            "Session opened",
            extra={"handle": self.handle, "source_kind": self.source.kind.value},
        )

    async def init_download_state(self) -> None:
        """Report the offline copy state; poll if a record already exists."""
        record = await self.downloads.emit_state()
        if record is not None:
            # A record mid-transfer only notifies again at completion.
            self.poller.start()

    async def subscribe(self, listener: EventListener) -> None:
        await self._sink.attach(listener)

    async def unsubscribe(self) -> None:
        await self._sink.detach()

    async def play(self) -> None:
        async with self._lock:
            if self._disposed:
                return
            engine_state = await self._engine.get_playback_state()
            if engine_state is EngineState.IDLE:
                await self._engine.retry()
            elif engine_state is EngineState.ENDED:
                await self._engine.seek_to(0)
            await self._engine.set_play_when_ready(True)
            self._play_when_ready = True

    async def pause(self) -> None:
        async with self._lock:
            if self._disposed:
                return
            await self._engine.set_play_when_ready(False)
            self._play_when_ready = False

    async def seek_to(self, position_ms: int) -> None:
        async with self._lock:
            if self._disposed:
                return
            await self._engine.seek_to(int(position_ms))

    async def set_looping(self, looping: bool) -> None:
        async with self._lock:
            if self._disposed:
                return
            self._looping = bool(looping)
            await self._engine.set_repeat_mode(
                RepeatMode.ALL if self._looping else RepeatMode.OFF
            )

    async def set_volume(self, volume: float) -> None:
        if math.isnan(volume):
            raise InvalidArgumentError("volume must be a number")
        async with self._lock:
            if self._disposed:
                return
            self._volume = max(0.0, min(1.0, float(volume)))
            await self._engine.set_volume(self._volume)

    async def set_speed(self, speed: float) -> None:
        if not math.isfinite(speed) or speed <= 0:
            raise InvalidArgumentError("speed must be a positive number")
        async with self._lock:
            if self._disposed or not self._initialized:
                return
            self._speed = float(speed)
            await self._engine.set_playback_speed(self._speed)

    async def position(self) -> int:
        """Return the playback position and emit a buffered-range update."""
        async with self._lock:
            if self._disposed:
                return 0
            position_ms = await self._engine.get_position_ms()
            await self._send_buffering_update()
            return position_ms

    async def switch_resolution(self, track_index: int) -> bool:
        """Pin the video renderer to `track_index`; False when not applicable."""
        async with self._lock:
            if self._disposed or not self._initialized:
                return False
            mapped = await self._engine.get_mapped_track_info()
            if mapped is None:
                return False
            groups = mapped.track_groups(VIDEO_RENDERER_INDEX)
            if not groups or not 0 <= track_index < len(groups[0].tracks):
                logger.warning(
                    "Ignoring resolution switch to unavailable track %s",
                    track_index,
                    extra={"handle": self.handle},
                )
                return False
            await self._engine.clear_selection_overrides()
            await self._engine.set_selection_override(
                VIDEO_RENDERER_INDEX, SelectionOverride(0, track_index)
            )
            return True

    async def download(self, track_index: int, label: str) -> None:
        async with self._lock:
            if self._disposed:
                return
            if await self.downloads.start_download(track_index, label):
                self.poller.start_on_next_change()

    async def remove_download(self) -> None:
        async with self._lock:
            if self._disposed:
                return
            self.poller.cancel()
            await self.downloads.remove_download()

    async def dispose(self) -> None:
        """Release everything the session acquired; safe to call repeatedly."""
        async with self._lock:
            if self._disposed:
                return
            self._disposed = True
        if self._initialized:
            with self._cleanup_step("stop engine"):
                await self._engine.stop()
        with self._cleanup_step("release surface"):
            self._surface.release()
        with self._cleanup_step("detach listener"):
            await self._sink.detach()
        with self._cleanup_step("release engine"):
            await self._engine.release()
        with self._cleanup_step("release download helper"):
            await self.downloads.release()
        with self._cleanup_step("cancel poller"):
            self.poller.cancel()
        logger.info("Session disposed", extra={"handle": self.handle})

    @contextmanager
    def _cleanup_step(self, step: str) -> Iterator[None]:
        try:
            yield
        except Exception:
            logger.debug(
                "Session cleanup step %r failed",
                step,
                exc_info=True,
                extra={"handle": self.handle},
            )

    async def _emit(self, event: SessionEvent) -> None:
        await self._sink.emit(event)

    async def _on_engine_event(self, event: RawEngineEvent) -> None:
        async with self._lock:
            if self._disposed:
                return
            if isinstance(event, PlaybackStateChanged):
                await self._on_playback_state(event.state)
            elif isinstance(event, PlayWhenReadyChanged):
                await self._emit(PlayStateChanged(event.play_when_ready))
            elif isinstance(event, EngineFailed):
                self._state = SessionState.ERROR
                self.last_error = PlaybackError(event.message)
                logger.warning(
                    "Playback error: %s",
                    self.last_error,
                    extra={"handle": self.handle, "code": self.last_error.code},
                )
                await self._emit(PlaybackFailed(event.message))
            elif isinstance(event, TimelineChanged):
                manifest = await self._engine.get_manifest()
                if isinstance(manifest, HlsManifest):
                    await self._emit(ResolutionsAvailable(resolution_labels(manifest)))
            elif isinstance(event, TracksChanged):
                # Only the first (video) renderer is considered.
                if event.selected_indices:
                    await self._emit(ResolutionChanged(event.selected_indices[0]))
            else:
                logger.debug("Ignoring unknown engine event %r", event)

    async def _on_playback_state(self, engine_state: EngineState) -> None:
        self._state = _STATE_BY_ENGINE[engine_state]
        if engine_state is EngineState.BUFFERING:
            await self._emit(BufferingStart())
            await self._send_buffering_update()
        elif engine_state is EngineState.READY:
            await self._emit(BufferingEnd())
            if not self._initialized:
                self._initialized = True
                await self._send_initialized()
        elif engine_state is EngineState.ENDED:
            await self._emit(Completed())

    async def _send_buffering_update(self) -> None:
        buffered_ms = await self._engine.get_buffered_position_ms()
        await self._emit(BufferingUpdate(0, buffered_ms))

    async def _send_initialized(self) -> None:
        duration_ms = await self._engine.get_duration_ms()
        video_format = await self._engine.get_video_format()
        if video_format is None:
            await self._emit(Initialized(duration_ms))
            return
        width, height = video_format.width, video_format.height
        # Portrait captures report landscape dimensions plus a rotation.
        if video_format.rotation_degrees in (90, 270):
            width, height = height, width
        await self._emit(Initialized(duration_ms, width, height))
