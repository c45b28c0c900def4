"""Tests for per-session download coordination."""

from __future__ import annotations

import asyncio

from tz_video_host.events import (
    ClientDownloadState,
    DownloadFailed,
    DownloadStateChanged,
)
from tz_video_host.services.download_coordinator import (
    DownloadCoordinator,
    client_state_for,
)
from tz_video_host.services.download_engine import InMemoryDownloadEngine
from tz_video_host.services.download_registry import (
    DownloadRecord,
    DownloadRegistry,
    DownloadRequest,
    DownloadState,
)
from tz_video_host.services.media_engine import SelectionOverride
from tz_video_host.services.source_resolver import DataSourceFactory

HLS_URI = "https://cdn.example.com/show/master.m3u8"


def _run(coro):
    return asyncio.run(coro)


def _coordinator(uri: str, events: list, *, prepare_error: Exception | None = None):
    registry = DownloadRegistry()
    engine = InMemoryDownloadEngine(registry, prepare_error=prepare_error)

    async def emit(event) -> None:
        events.append(event)

    coordinator = DownloadCoordinator(
        uri,
        registry=registry,
        engine=engine,
        data_source_factory=DataSourceFactory("http", user_agent="test"),
        emit=emit,
    )
    return registry, engine, coordinator


def _record(state: DownloadState, percent: float | None = None) -> DownloadRecord:
    return DownloadRecord(DownloadRequest(id="r1", uri=HLS_URI), state, percent)


def test_client_state_mapping() -> None:
    assert client_state_for(None).state is ClientDownloadState.UNDOWNLOADED
    assert (
        client_state_for(_record(DownloadState.QUEUED)).state
        is ClientDownloadState.UNDOWNLOADED
    )
    assert (
        client_state_for(_record(DownloadState.REMOVING)).state
        is ClientDownloadState.UNDOWNLOADED
    )
    assert (
        client_state_for(_record(DownloadState.COMPLETED)).state
        is ClientDownloadState.COMPLETED
    )
    assert (
        client_state_for(_record(DownloadState.FAILED)).state
        is ClientDownloadState.ERROR
    )
    downloading = client_state_for(_record(DownloadState.DOWNLOADING, 37.5))
    assert downloading == DownloadStateChanged(ClientDownloadState.DOWNLOADING, 37.5)
    unknown_percent = client_state_for(_record(DownloadState.DOWNLOADING))
    assert unknown_percent.percent == 0.0


def test_selective_download_submits_one_labelled_request() -> None:
    events: list = []

    async def run():
        _registry, engine, coordinator = _coordinator(HLS_URI, events)
        assert await coordinator.start_download(2, "720p")
        await coordinator.join()
        return engine

    engine = _run(run())
    assert len(engine.helpers) == 1
    helper = engine.helpers[0]
    assert helper.prepared
    assert helper.selections == {0: [(0, SelectionOverride(0, 2))]}
    assert len(engine.added) == 1
    assert engine.added[0].data == b"720p"
    assert engine.added[0].stream_keys == ((0, 0, 2),)
    assert events == []


def test_restarting_download_releases_previous_helper() -> None:
    events: list = []

    async def run():
        _registry, engine, coordinator = _coordinator(HLS_URI, events)
        await coordinator.start_download(0, "360p")
        await coordinator.start_download(1, "720p")
        await coordinator.join()
        await coordinator.release()
        return engine, coordinator

    engine, coordinator = _run(run())
    assert len(engine.helpers) == 2
    assert engine.helpers[0].released
    assert engine.helpers[1].released
    assert coordinator.helper is None


def test_non_hls_and_local_sources_are_not_downloaded() -> None:
    events: list = []

    async def run():
        results = []
        engines = []
        for uri in (
            "https://cdn.example.com/movie.mp4",
            "https://cdn.example.com/show/manifest.mpd",
            "file:///videos/clip.m3u8",
            "asset:///assets/clip.m3u8",
        ):
            _registry, engine, coordinator = _coordinator(uri, events)
            results.append(await coordinator.start_download(0, "720p"))
            engines.append(engine)
        return results, engines

    results, engines = _run(run())
    assert results == [False, False, False, False]
    assert all(engine.helpers == [] for engine in engines)
    assert events == []


def test_prepare_failure_is_reported_as_event() -> None:
    """Preparation failures reach the client as a `downloadError` event.

    Earlier hosts only logged these; clients now get an explicit signal.
    """
    events: list = []

    async def run():
        _registry, engine, coordinator = _coordinator(
            HLS_URI, events, prepare_error=OSError("manifest unreachable")
        )
        assert await coordinator.start_download(1, "720p")
        await coordinator.join()
        return engine

    engine = _run(run())
    assert engine.added == []
    assert len(events) == 1
    assert isinstance(events[0], DownloadFailed)
    assert "manifest unreachable" in events[0].message
    assert events[0].to_message()["event"] == "downloadError"


def test_remove_download_emits_single_undownloaded_and_unregisters() -> None:
    events: list = []

    async def run():
        registry, engine, coordinator = _coordinator(HLS_URI, events)
        await registry.put(_record(DownloadState.COMPLETED))
        assert await coordinator.remove_download()
        return registry, engine

    registry, engine = _run(run())
    assert engine.removed == ["r1"]
    assert registry.get_download(HLS_URI) is None
    assert registry.listener_count == 0
    assert events == [DownloadStateChanged(ClientDownloadState.UNDOWNLOADED)]


def test_remove_without_record_is_noop() -> None:
    events: list = []

    async def run():
        registry, engine, coordinator = _coordinator(HLS_URI, events)
        assert not await coordinator.remove_download()
        return registry, engine

    registry, engine = _run(run())
    assert engine.removed == []
    assert registry.listener_count == 0
    assert events == []


def test_emit_state_returns_record() -> None:
    events: list = []

    async def run():
        registry, _engine, coordinator = _coordinator(HLS_URI, events)
        assert await coordinator.emit_state() is None
        await registry.put(_record(DownloadState.DOWNLOADING, 40.0))
        record = await coordinator.emit_state()
        return record, coordinator.query_state()

    record, queried = _run(run())
    assert record is not None and record.percent == 40.0
    assert queried == DownloadStateChanged(ClientDownloadState.DOWNLOADING, 40.0)
    assert [e.state for e in events] == [
        ClientDownloadState.UNDOWNLOADED,
        ClientDownloadState.DOWNLOADING,
    ]
