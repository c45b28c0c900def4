"""Observable registry of offline download records keyed by source URI.

Only the download engine mutates the registry (`put`/`discard`); sessions
observe it through lookups and change listeners. Listeners are removed by
the `ListenerHandle` returned at registration.
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class DownloadState(Enum):
    QUEUED = "queued"
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    FAILED = "failed"
    REMOVING = "removing"

    @property
    def is_terminal(self) -> bool:
        return self in (DownloadState.COMPLETED, DownloadState.FAILED)


@dataclass(frozen=True)
class DownloadRequest:
    """What to fetch for one offline copy; `data` carries the client label."""

    id: str
    uri: str
    data: bytes = b""
    stream_keys: tuple[tuple[int, int, int], ...] = ()
    local_path: str | None = None


@dataclass(frozen=True)
class DownloadRecord:
    request: DownloadRequest
    state: DownloadState = DownloadState.QUEUED
    percent: float | None = None

    @property
    def uri(self) -> str:
        return self.request.uri


@dataclass(frozen=True)
class ListenerHandle:
    id: int


DownloadsChangedListener = Callable[[], Awaitable[None]]


@dataclass
class _Listener:
    handle: ListenerHandle
    callback: DownloadsChangedListener
    active: bool = field(default=True)


class DownloadRegistry:
    """Shared, read-mostly view of download records."""

    def __init__(self, records: list[DownloadRecord] | None = None) -> None:
        self._records: dict[str, DownloadRecord] = {
            record.uri: record for record in records or []
        }
        self._listeners: dict[ListenerHandle, _Listener] = {}
        self._ids = itertools.count(1)

    def get_download(self, uri: str) -> DownloadRecord | None:
        return self._records.get(uri)

    def get_state(self, uri: str) -> DownloadState:
        """Return the record state, treating an absent record as QUEUED."""
        record = self._records.get(uri)
        return record.state if record is not None else DownloadState.QUEUED

    def records(self) -> list[DownloadRecord]:
        return list(self._records.values())

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def register_listener(self, callback: DownloadsChangedListener) -> ListenerHandle:
        handle = ListenerHandle(next(self._ids))
        self._listeners[handle] = _Listener(handle, callback)
        return handle

    def unregister_listener(self, handle: ListenerHandle | None) -> None:
        if handle is None:
            return
        listener = self._listeners.pop(handle, None)
        if listener is not None:
            listener.active = False

    async def put(self, record: DownloadRecord) -> None:
        self._records[record.uri] = record
        await self._notify()

    async def discard(self, uri: str) -> None:
        if self._records.pop(uri, None) is not None:
            await self._notify()

    async def _notify(self) -> None:
        # Snapshot: listeners may unregister themselves (or others) mid-loop.
        for listener in list(self._listeners.values()):
            if not listener.active:
                continue
            try:
                await listener.callback()
            except Exception:
                logger.exception(
                    "Downloads-changed listener %s failed", listener.handle.id
                )
