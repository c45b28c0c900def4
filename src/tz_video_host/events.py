"""Normalized session events delivered to the client stream.

Every event is a frozen dataclass; `to_message()` renders the wire dict
written to the per-session channel.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any


class ClientDownloadState(IntEnum):
    """Download state as seen by the client."""

    UNDOWNLOADED = 0
    DOWNLOADING = 1
    COMPLETED = 2
    ERROR = 3


@dataclass(frozen=True)
class SessionEvent:
    """Marker base type for normalized session events."""

    def to_message(self) -> dict[str, Any]:
        raise NotImplementedError


@dataclass(frozen=True)
class Initialized(SessionEvent):
    """First transition to ready; dimensions are absent for audio-only media."""

    duration_ms: int
    width: int | None = None
    height: int | None = None

    def to_message(self) -> dict[str, Any]:
        message: dict[str, Any] = {"event": "initialized", "duration": self.duration_ms}
        if self.width is not None and self.height is not None:
            message["width"] = self.width
            message["height"] = self.height
        return message


@dataclass(frozen=True)
class BufferingStart(SessionEvent):
    def to_message(self) -> dict[str, Any]:
        return {"event": "bufferingStart"}


@dataclass(frozen=True)
class BufferingEnd(SessionEvent):
    def to_message(self) -> dict[str, Any]:
        return {"event": "bufferingEnd"}


@dataclass(frozen=True)
class BufferingUpdate(SessionEvent):
    range_start_ms: int
    range_end_ms: int

    def to_message(self) -> dict[str, Any]:
        # Single buffered range, wrapped in a list for multi-range clients.
        return {
            "event": "bufferingUpdate",
            "values": [[self.range_start_ms, self.range_end_ms]],
        }


@dataclass(frozen=True)
class PlayStateChanged(SessionEvent):
    is_playing: bool

    def to_message(self) -> dict[str, Any]:
        return {"event": "playStateChanged", "isPlaying": self.is_playing}


@dataclass(frozen=True)
class Completed(SessionEvent):
    def to_message(self) -> dict[str, Any]:
        return {"event": "completed"}


@dataclass(frozen=True)
class PlaybackFailed(SessionEvent):
    """Unrecoverable engine error; the session stays alive."""

    message: str

    def to_message(self) -> dict[str, Any]:
        return {
            "event": "error",
            "code": "VideoError",
            "message": f"Video player had error {self.message}",
        }


@dataclass(frozen=True)
class ResolutionsAvailable(SessionEvent):
    labels: dict[int, str] = field(default_factory=dict)

    def to_message(self) -> dict[str, Any]:
        return {"event": "resolutions", "map": dict(self.labels)}


@dataclass(frozen=True)
class ResolutionChanged(SessionEvent):
    index: int

    def to_message(self) -> dict[str, Any]:
        return {"event": "resolutionChange", "index": self.index}


@dataclass(frozen=True)
class DownloadStateChanged(SessionEvent):
    """Current offline copy state; `percent` only accompanies DOWNLOADING."""

    state: ClientDownloadState
    percent: float | None = None

    def to_message(self) -> dict[str, Any]:
        message: dict[str, Any] = {"event": "downloadState", "state": int(self.state)}
        if self.state is ClientDownloadState.DOWNLOADING:
            message["progress"] = self.percent if self.percent is not None else 0.0
        return message


@dataclass(frozen=True)
class DownloadFailed(SessionEvent):
    """A selective download could not be prepared."""

    message: str

    def to_message(self) -> dict[str, Any]:
        return {"event": "downloadError", "message": self.message}
