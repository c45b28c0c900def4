"""Download engine contracts and the in-memory reference engine.

The byte-level transfer belongs to the engine. Coordinators only create
preparation helpers, submit add/remove requests and observe the shared
`DownloadRegistry`.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from contextlib import suppress
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Protocol

from tz_video_host.errors import DownloadPrepareError
from tz_video_host.services.download_index import save_index
from tz_video_host.services.download_registry import (
    DownloadRecord,
    DownloadRegistry,
    DownloadRequest,
    DownloadState,
)
from tz_video_host.services.media_engine import (
    HlsVariant,
    MappedTrackInfo,
    SelectionOverride,
    TrackGroup,
)
from tz_video_host.services.source_resolver import DataSourceFactory

logger = logging.getLogger(__name__)

DEFAULT_VARIANTS = (
    HlsVariant(640, 360, 800_000),
    HlsVariant(1280, 720, 2_500_000),
    HlsVariant(1920, 1080, 5_000_000),
)


class DownloadHelper(Protocol):
    """Prepares a selective download by resolving the manifest's tracks."""

    @property
    def period_count(self) -> int: ...

    async def prepare(self) -> None: ...

    def get_mapped_track_info(self, period_index: int) -> MappedTrackInfo | None: ...

    def clear_track_selections(self, period_index: int) -> None: ...

    def add_track_selection_for_single_renderer(
        self,
        period_index: int,
        renderer_index: int,
        overrides: list[SelectionOverride],
    ) -> None: ...

    def get_download_request(self, data: bytes) -> DownloadRequest: ...

    def release(self) -> None: ...


class DownloadEngine(Protocol):
    def create_hls_helper(
        self, uri: str, data_source_factory: DataSourceFactory
    ) -> DownloadHelper: ...

    async def add_download(self, request: DownloadRequest) -> None: ...

    async def remove_download(self, request_id: str) -> None: ...


def request_id_for(uri: str) -> str:
    return hashlib.sha1(uri.encode("utf-8")).hexdigest()


@dataclass
class InMemoryDownloadHelper:
    """Helper over a fixed variant list; one period, one video renderer."""

    uri: str
    data_source_factory: DataSourceFactory
    variants: tuple[HlsVariant, ...] = DEFAULT_VARIANTS
    prepare_error: Exception | None = None
    prepared: bool = False
    released: bool = False
    selections: dict[int, list[tuple[int, SelectionOverride]]] = field(
        default_factory=dict
    )

    @property
    def period_count(self) -> int:
        return 1

    async def prepare(self) -> None:
        await asyncio.sleep(0)
        if self.released:
            raise DownloadPrepareError(f"Helper for {self.uri} was released")
        if self.prepare_error is not None:
            raise DownloadPrepareError(
                f"Failed to prepare download for {self.uri}: {self.prepare_error}"
            ) from self.prepare_error
        self.prepared = True

    def get_mapped_track_info(self, period_index: int) -> MappedTrackInfo | None:
        if not self.prepared:
            return None
        labels = tuple(f"{v.width}x{v.height}" for v in self.variants)
        return MappedTrackInfo(renderer_groups=((TrackGroup(labels),),))

    def clear_track_selections(self, period_index: int) -> None:
        self.selections[period_index] = []

    def add_track_selection_for_single_renderer(
        self,
        period_index: int,
        renderer_index: int,
        overrides: list[SelectionOverride],
    ) -> None:
        chosen = self.selections.setdefault(period_index, [])
        chosen.extend((renderer_index, override) for override in overrides)

    def get_download_request(self, data: bytes) -> DownloadRequest:
        stream_keys = tuple(
            (period, override.group_index, override.track_index)
            for period, chosen in sorted(self.selections.items())
            for _renderer, override in chosen
        )
        return DownloadRequest(
            id=request_id_for(self.uri),
            uri=self.uri,
            data=data,
            stream_keys=stream_keys,
        )

    def release(self) -> None:
        self.released = True


class InMemoryDownloadEngine:
    """Registry-backed engine that simulates transfers without network IO."""

    def __init__(
        self,
        registry: DownloadRegistry,
        *,
        index_path: Path | None = None,
        variants: tuple[HlsVariant, ...] = DEFAULT_VARIANTS,
        prepare_error: Exception | None = None,
        auto_progress: bool = False,
        tick_interval_ms: int = 250,
        step_percent: float = 10.0,
    ) -> None:
        self._registry = registry
        self._index_path = index_path
        self._variants = variants
        self.prepare_error = prepare_error
        self._auto_progress = auto_progress
        self._tick_interval = tick_interval_ms / 1000
        self._step_percent = step_percent
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self.helpers: list[InMemoryDownloadHelper] = []
        self.added: list[DownloadRequest] = []
        self.removed: list[str] = []

    def create_hls_helper(
        self, uri: str, data_source_factory: DataSourceFactory
    ) -> InMemoryDownloadHelper:
        helper = InMemoryDownloadHelper(
            uri=uri,
            data_source_factory=data_source_factory,
            variants=self._variants,
            prepare_error=self.prepare_error,
        )
        self.helpers.append(helper)
        return helper

    async def add_download(self, request: DownloadRequest) -> None:
        self.added.append(request)
        logger.info(
            "Download queued for %s",
            request.uri,
            extra={
                "request_id": request.id,
                "label": request.data.decode("utf-8", "replace"),
            },
        )
        await self._put(DownloadRecord(request, DownloadState.QUEUED))
        if self._auto_progress:
            self._cancel_task(request.uri)
            self._tasks[request.uri] = asyncio.create_task(self._progress(request.uri))

    async def remove_download(self, request_id: str) -> None:
        record = next(
            (r for r in self._registry.records() if r.request.id == request_id), None
        )
        if record is None:
            return
        self.removed.append(request_id)
        self._cancel_task(record.uri)
        await self._put(replace(record, state=DownloadState.REMOVING, percent=None))
        await self._registry.discard(record.uri)
        self._persist()

    async def advance(
        self, uri: str, state: DownloadState, percent: float | None = None
    ) -> None:
        """Move an existing record to `state` (test and simulation hook)."""
        record = self._registry.get_download(uri)
        if record is None:
            raise KeyError(uri)
        await self._put(replace(record, state=state, percent=percent))

    async def shutdown(self) -> None:
        for uri in list(self._tasks):
            task = self._tasks.pop(uri)
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    async def _progress(self, uri: str) -> None:
        percent = 0.0
        while percent < 100.0:
            await asyncio.sleep(self._tick_interval)
            percent = min(100.0, percent + self._step_percent)
            await self.advance(uri, DownloadState.DOWNLOADING, percent)
        await self.advance(uri, DownloadState.COMPLETED)
        self._tasks.pop(uri, None)

    def _cancel_task(self, uri: str) -> None:
        task = self._tasks.pop(uri, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _put(self, record: DownloadRecord) -> None:
        await self._registry.put(record)
        self._persist()

    def _persist(self) -> None:
        if self._index_path is None:
            return
        try:
            save_index(self._index_path, self._registry.records())
        except OSError as exc:
            logger.warning("Failed to persist download index: %s", exc)
