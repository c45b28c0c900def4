"""Error taxonomy shared by the command surface and services.

Configuration and lookup errors are raised synchronously to the command
caller. Runtime engine failures are reported as stream events instead; the
session keeps the latest one as a `PlaybackError` and logs it with its code.
"""

from __future__ import annotations


class VideoHostError(Exception):
    """Base error carrying a stable wire code."""

    code = "internal_error"


class UnknownSessionError(VideoHostError):
    code = "unknown_session"

    def __init__(self, handle: object) -> None:
        super().__init__(f"No video session associated with handle {handle!r}")
        self.handle = handle


class CommandNotImplementedError(VideoHostError):
    code = "not_implemented"

    def __init__(self, method: str) -> None:
        super().__init__(f"Command {method!r} is not implemented")
        self.method = method


class InvalidArgumentError(VideoHostError):
    code = "invalid_argument"


class UnsupportedSourceError(VideoHostError):
    """Source URI could not be classified into a playable container."""

    code = "unsupported_source"


class PlaybackError(VideoHostError):
    """Engine-reported unrecoverable playback failure."""

    code = "playback_error"


class DownloadPrepareError(VideoHostError):
    """Selective download could not be prepared."""

    code = "download_prepare_error"
