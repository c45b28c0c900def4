"""Per-session download coordination for one source URI.

Only HLS sources support selective (single-rendition) downloads. Other
remote containers are accepted as no-ops; local files and assets are never
downloaded.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import suppress

from tz_video_host.events import (
    ClientDownloadState,
    DownloadFailed,
    DownloadStateChanged,
    SessionEvent,
)
from tz_video_host.services.download_engine import DownloadEngine, DownloadHelper
from tz_video_host.services.download_registry import (
    DownloadRecord,
    DownloadRegistry,
    DownloadState,
    ListenerHandle,
)
from tz_video_host.services.media_engine import SelectionOverride
from tz_video_host.services.source_resolver import (
    ContentType,
    DataSourceFactory,
    infer_content_type,
    is_file_or_asset,
)

logger = logging.getLogger(__name__)

VIDEO_RENDERER_INDEX = 0


def client_state_for(record: DownloadRecord | None) -> DownloadStateChanged:
    """Map an engine record to the client-visible download state."""
    if record is None:
        return DownloadStateChanged(ClientDownloadState.UNDOWNLOADED)
    if record.state is DownloadState.COMPLETED:
        return DownloadStateChanged(ClientDownloadState.COMPLETED)
    if record.state is DownloadState.DOWNLOADING:
        return DownloadStateChanged(
            ClientDownloadState.DOWNLOADING,
            record.percent if record.percent is not None else 0.0,
        )
    if record.state is DownloadState.FAILED:
        return DownloadStateChanged(ClientDownloadState.ERROR)
    return DownloadStateChanged(ClientDownloadState.UNDOWNLOADED)


class DownloadCoordinator:
    def __init__(
        self,
        uri: str,
        *,
        registry: DownloadRegistry,
        engine: DownloadEngine,
        data_source_factory: DataSourceFactory,
        emit: Callable[[SessionEvent], Awaitable[None]],
    ) -> None:
        self.uri = uri
        self._registry = registry
        self._engine = engine
        self._data_source_factory = data_source_factory
        self._emit = emit
        self._helper: DownloadHelper | None = None
        self._prepare_task: asyncio.Task[None] | None = None
        self._removal_listener: ListenerHandle | None = None

    @property
    def helper(self) -> DownloadHelper | None:
        return self._helper

    def query_state(self) -> DownloadStateChanged:
        return client_state_for(self._registry.get_download(self.uri))

    async def emit_state(self) -> DownloadRecord | None:
        """Emit the current state and return the record it was derived from."""
        record = self._registry.get_download(self.uri)
        await self._emit(client_state_for(record))
        return record

    async def start_download(self, track_index: int, label: str) -> bool:
        """Begin a selective download; returns True when a request is in flight."""
        if is_file_or_asset(self.uri):
            return False
        content_type = infer_content_type(self.uri)
        if content_type is not ContentType.HLS:
            logger.info(
                "Selective download not supported for %s sources; ignoring",
                content_type.value,
                extra={"uri": self.uri},
            )
            return False
        await self._release_helper()
        helper = self._engine.create_hls_helper(self.uri, self._data_source_factory)
        self._helper = helper
        self._prepare_task = asyncio.create_task(
            self._prepare_and_submit(helper, track_index, label),
            name=f"download-prepare:{self.uri}",
        )
        return True

    async def join(self) -> None:
        """Wait for any in-flight preparation to finish."""
        task = self._prepare_task
        if task is not None:
            with suppress(asyncio.CancelledError):
                await task

    async def remove_download(self) -> bool:
        record = self._registry.get_download(self.uri)
        if record is None:
            return False
        # Listen before submitting: the engine may apply the removal immediately.
        self._registry.unregister_listener(self._removal_listener)
        self._removal_listener = self._registry.register_listener(
            self._on_removal_progress
        )
        await self._engine.remove_download(record.request.id)
        return True

    async def release(self) -> None:
        await self._release_helper()
        self._registry.unregister_listener(self._removal_listener)
        self._removal_listener = None

    async def _on_removal_progress(self) -> None:
        if self._registry.get_state(self.uri) is not DownloadState.QUEUED:
            return
        self._registry.unregister_listener(self._removal_listener)
        self._removal_listener = None
        await self.emit_state()

    async def _prepare_and_submit(
        self, helper: DownloadHelper, track_index: int, label: str
    ) -> None:
        try:
            await helper.prepare()
            mapped = helper.get_mapped_track_info(0)
            for period_index in range(helper.period_count):
                helper.clear_track_selections(period_index)
                if mapped is not None:
                    helper.add_track_selection_for_single_renderer(
                        period_index,
                        VIDEO_RENDERER_INDEX,
                        [SelectionOverride(0, track_index)],
                    )
            request = helper.get_download_request(label.encode("utf-8"))
            await self._engine.add_download(request)
        except Exception as exc:
            logger.warning(
                "Failed to prepare download for %s",
                self.uri,
                exc_info=True,
                extra={"track_index": track_index, "label": label},
            )
            await self._emit(DownloadFailed(str(exc)))

    async def _release_helper(self) -> None:
        task = self._prepare_task
        self._prepare_task = None
        if task is not None and not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        if self._helper is not None:
            self._helper.release()
            self._helper = None
