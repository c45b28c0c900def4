"""Media engine contracts and raw callback payloads.

`Session` depends on this protocol to stay engine-agnostic. Concrete
implementations (fake/VLC) translate engine-specific behavior into these
shared commands and a single tagged callback stream.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from tz_video_host.services.source_resolver import PlayableSource
    from tz_video_host.services.surfaces import RenderTarget


class EngineState(Enum):
    IDLE = "idle"
    BUFFERING = "buffering"
    READY = "ready"
    ENDED = "ended"


class RepeatMode(Enum):
    OFF = "off"
    ALL = "all"


@dataclass(frozen=True)
class RawEngineEvent:
    """Marker base type for engine-originated callbacks."""

    pass


@dataclass(frozen=True)
class PlaybackStateChanged(RawEngineEvent):
    state: EngineState


@dataclass(frozen=True)
class PlayWhenReadyChanged(RawEngineEvent):
    play_when_ready: bool


@dataclass(frozen=True)
class EngineFailed(RawEngineEvent):
    """Unrecoverable runtime error; the engine will not retry on its own."""

    message: str


@dataclass(frozen=True)
class TimelineChanged(RawEngineEvent):
    """Timeline or manifest refreshed; renditions may have changed."""

    pass


@dataclass(frozen=True)
class TracksChanged(RawEngineEvent):
    """Active track selection changed.

    `selected_indices` holds, per renderer, the index of the selected track
    within its group. Only the first renderer is treated as video.
    """

    selected_indices: tuple[int, ...] = ()


@dataclass(frozen=True)
class VideoFormat:
    width: int
    height: int
    rotation_degrees: int = 0


@dataclass(frozen=True)
class HlsVariant:
    width: int
    height: int
    bitrate: int = 0
    url: str = ""


@dataclass(frozen=True)
class HlsManifest:
    """Master playlist variants, in playlist order."""

    variants: tuple[HlsVariant, ...] = ()


@dataclass(frozen=True)
class TrackGroup:
    tracks: tuple[str, ...] = ()


@dataclass(frozen=True)
class MappedTrackInfo:
    """Track groups available to each renderer (index 0 is video)."""

    renderer_groups: tuple[tuple[TrackGroup, ...], ...] = field(default=())

    def track_groups(self, renderer_index: int) -> tuple[TrackGroup, ...]:
        if renderer_index >= len(self.renderer_groups):
            return ()
        return self.renderer_groups[renderer_index]


@dataclass(frozen=True)
class SelectionOverride:
    """Pin `track_index` within track group `group_index`."""

    group_index: int
    track_index: int


EngineEventHandler = Callable[[RawEngineEvent], Awaitable[None]]


class MediaEngine(Protocol):
    """Playback engine protocol consumed by `Session`.

    Commands are fire-and-forget: outcomes arrive later through the
    registered event handler.
    """

    def set_event_handler(self, handler: EngineEventHandler) -> None: ...

    async def start(self) -> None: ...

    async def prepare(self, source: PlayableSource) -> None: ...

    async def attach_surface(self, surface: RenderTarget) -> None: ...

    async def set_play_when_ready(self, play_when_ready: bool) -> None: ...

    async def retry(self) -> None: ...

    async def seek_to(self, position_ms: int) -> None: ...

    async def set_repeat_mode(self, mode: RepeatMode) -> None: ...

    async def set_volume(self, volume: float) -> None: ...

    async def set_playback_speed(self, speed: float) -> None: ...

    async def get_playback_state(self) -> EngineState: ...

    async def get_position_ms(self) -> int: ...

    async def get_buffered_position_ms(self) -> int: ...

    async def get_duration_ms(self) -> int: ...

    async def get_video_format(self) -> VideoFormat | None: ...

    async def get_manifest(self) -> object | None: ...

    async def get_mapped_track_info(self) -> MappedTrackInfo | None: ...

    async def clear_selection_overrides(self) -> None: ...

    async def set_selection_override(
        self, renderer_index: int, override: SelectionOverride
    ) -> None: ...

    async def stop(self) -> None: ...

    async def release(self) -> None: ...
