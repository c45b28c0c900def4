"""Tests for a single playback session."""

from __future__ import annotations

import asyncio

import pytest

from tz_video_host.errors import InvalidArgumentError, PlaybackError
from tz_video_host.events import (
    BufferingEnd,
    BufferingStart,
    BufferingUpdate,
    ClientDownloadState,
    Completed,
    DownloadStateChanged,
    Initialized,
    PlaybackFailed,
    PlayStateChanged,
    ResolutionChanged,
    ResolutionsAvailable,
)
from tz_video_host.services.download_engine import InMemoryDownloadEngine
from tz_video_host.services.download_registry import (
    DownloadRecord,
    DownloadRegistry,
    DownloadRequest,
    DownloadState,
)
from tz_video_host.services.fake_engine import FakeMediaEngine
from tz_video_host.services.media_engine import (
    EngineState,
    PlaybackStateChanged,
    RepeatMode,
    VideoFormat,
)
from tz_video_host.services.session import Session, SessionState
from tz_video_host.services.source_resolver import SourceResolver
from tz_video_host.services.surfaces import RenderTarget

MP4_URI = "https://cdn.example.com/movie.mp4"
HLS_URI = "https://cdn.example.com/show/master.m3u8"


def _run(coro):
    return asyncio.run(coro)


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


async def _open(uri: str = MP4_URI, *, engine=None, records=()):
    registry = DownloadRegistry(list(records))
    download_engine = InMemoryDownloadEngine(registry)
    engine = engine or FakeMediaEngine()
    session = Session(
        1,
        uri,
        engine=engine,
        surface=RenderTarget(1),
        download_registry=registry,
        download_engine=download_engine,
        resolver=SourceResolver(user_agent="test"),
        poll_interval_ms=10,
    )
    events: list = []

    async def listener(event) -> None:
        events.append(event)

    await session.open()
    await session.subscribe(listener)
    await engine.settle()
    return session, engine, events, download_engine


def _of(events: list, kind: type) -> list:
    return [event for event in events if isinstance(event, kind)]


def _call_names(engine: FakeMediaEngine) -> list[str]:
    return [name for name, _args in engine.calls]


def test_open_reports_buffering_and_download_state() -> None:
    async def run():
        session, engine, events, _ = await _open()
        await session.dispose()
        return events

    events = _run(run())
    assert _of(events, BufferingStart) == [BufferingStart()]
    assert _of(events, BufferingUpdate) == [BufferingUpdate(0, 0)]
    assert _of(events, DownloadStateChanged) == [
        DownloadStateChanged(ClientDownloadState.UNDOWNLOADED)
    ]


def test_initialized_emitted_once_with_rotation_applied() -> None:
    async def run():
        session, engine, events, _ = await _open()
        engine.simulate_ready(
            duration_ms=5000, video_format=VideoFormat(1920, 1080, 90)
        )
        await engine.settle()
        engine.simulate_buffering(2500)
        engine.simulate_ready(duration_ms=5000)
        await engine.settle()
        state = session.state
        await session.dispose()
        return events, state

    events, state = _run(run())
    assert _of(events, Initialized) == [Initialized(5000, 1080, 1920)]
    assert len(_of(events, BufferingEnd)) == 2
    assert BufferingUpdate(0, 2500) in events
    assert state is SessionState.READY


def test_audio_only_initialized_has_no_dimensions() -> None:
    async def run():
        session, engine, events, _ = await _open()
        engine.simulate_ready(duration_ms=1000, audio_only=True)
        await engine.settle()
        await session.dispose()
        return events

    (initialized,) = _of(_run(run()), Initialized)
    assert initialized == Initialized(1000)
    assert initialized.to_message() == {"event": "initialized", "duration": 1000}


def test_play_after_completion_seeks_to_start_first() -> None:
    async def run():
        session, engine, events, _ = await _open()
        engine.simulate_ready()
        engine.simulate_ended()
        await engine.settle()
        engine.calls.clear()
        await session.play()
        await engine.settle()
        await session.dispose()
        return engine, events

    engine, events = _run(run())
    names = _call_names(engine)
    assert names.index("seek_to") < names.index("set_play_when_ready")
    assert ("seek_to", (0,)) in engine.calls
    assert _of(events, Completed) == [Completed()]
    assert _of(events, PlayStateChanged) == [PlayStateChanged(True)]


def test_playback_error_becomes_event_and_play_retries() -> None:
    async def run():
        session, engine, events, _ = await _open()
        engine.simulate_error("decoder exploded")
        await engine.settle()
        state = session.state
        last_error = session.last_error
        engine.calls.clear()
        await session.play()
        await engine.settle()
        alive = not session.disposed
        await session.dispose()
        return engine, events, state, alive, last_error

    engine, events, state, alive, last_error = _run(run())
    assert state is SessionState.ERROR
    assert isinstance(last_error, PlaybackError)
    assert last_error.code == "playback_error"
    assert str(last_error) == "decoder exploded"
    assert alive
    (failure,) = _of(events, PlaybackFailed)
    assert failure.to_message() == {
        "event": "error",
        "code": "VideoError",
        "message": "Video player had error decoder exploded",
    }
    assert _call_names(engine)[:2] == ["retry", "set_play_when_ready"]


def test_pause_and_looping_forward_to_engine() -> None:
    async def run():
        session, engine, events, _ = await _open()
        await session.play()
        await session.pause()
        await session.set_looping(True)
        await session.seek_to(1500)
        await engine.settle()
        looping = session.looping
        await session.dispose()
        return engine, events, looping

    engine, events, looping = _run(run())
    assert looping
    assert engine.state.repeat_mode is RepeatMode.ALL
    assert ("seek_to", (1500,)) in engine.calls
    assert _of(events, PlayStateChanged) == [
        PlayStateChanged(True),
        PlayStateChanged(False),
    ]


def test_volume_is_clamped_and_nan_rejected() -> None:
    async def run():
        session, engine, _events, _ = await _open()
        await session.set_volume(1.5)
        high = engine.state.volume
        await session.set_volume(-0.25)
        low = engine.state.volume
        with pytest.raises(InvalidArgumentError):
            await session.set_volume(float("nan"))
        await session.dispose()
        return high, low

    assert _run(run()) == (1.0, 0.0)


def test_speed_ignored_until_initialized() -> None:
    async def run():
        session, engine, _events, _ = await _open()
        await session.set_speed(2.0)
        before = [c for c in engine.calls if c[0] == "set_playback_speed"]
        engine.simulate_ready()
        await engine.settle()
        await session.set_speed(2.0)
        after = [c for c in engine.calls if c[0] == "set_playback_speed"]
        with pytest.raises(InvalidArgumentError):
            await session.set_speed(0)
        await session.dispose()
        return before, after

    before, after = _run(run())
    assert before == []
    assert after == [("set_playback_speed", (2.0,))]


def test_position_emits_buffered_range() -> None:
    async def run():
        session, engine, events, _ = await _open()
        engine.simulate_ready(duration_ms=10_000)
        await engine.settle()
        await session.seek_to(4000)
        engine.simulate_buffering(6000)
        await engine.settle()
        events.clear()
        position = await session.position()
        await session.dispose()
        return position, events

    position, events = _run(run())
    assert position == 4000
    assert events == [BufferingUpdate(0, 6000)]
    assert events[0].to_message() == {
        "event": "bufferingUpdate",
        "values": [[0, 6000]],
    }


def test_resolutions_reported_and_switched_for_hls() -> None:
    async def run():
        engine = FakeMediaEngine(auto_ready=True)
        session, engine, events, _ = await _open(HLS_URI, engine=engine)
        assert session.initialized
        switched = await session.switch_resolution(2)
        rejected = await session.switch_resolution(7)
        await engine.settle()
        await session.dispose()
        return events, switched, rejected

    events, switched, rejected = _run(run())
    assert switched
    assert not rejected
    assert _of(events, ResolutionsAvailable) == [
        ResolutionsAvailable({0: "640x360", 1: "1280x720", 2: "1920x1080"})
    ]
    assert _of(events, ResolutionChanged) == [
        ResolutionChanged(0),
        ResolutionChanged(2),
    ]


def test_switch_resolution_before_initialized_is_noop() -> None:
    async def run():
        session, engine, _events, _ = await _open(HLS_URI)
        switched = await session.switch_resolution(1)
        await session.dispose()
        return engine, switched

    engine, switched = _run(run())
    assert not switched
    assert "set_selection_override" not in _call_names(engine)


def test_download_submits_request_and_starts_polling() -> None:
    async def run():
        session, _engine, events, download_engine = await _open(HLS_URI)
        await session.download(2, "720p")
        await session.downloads.join()
        running = session.poller.running
        await session.dispose()
        return download_engine, running

    download_engine, running = _run(run())
    assert len(download_engine.helpers) == 1
    assert [request.data for request in download_engine.added] == [b"720p"]
    assert running


def test_existing_download_record_starts_poller_on_open() -> None:
    record = DownloadRecord(
        DownloadRequest(id="r1", uri=HLS_URI, data=b"720p"),
        DownloadState.DOWNLOADING,
        30.0,
    )

    async def run():
        session, _engine, events, _ = await _open(HLS_URI, records=[record])
        running = session.poller.running
        await _wait_for(lambda: len(_of(events, DownloadStateChanged)) >= 2)
        await session.dispose()
        return events, running, session.poller.running

    events, running, running_after_dispose = _run(run())
    assert running
    assert not running_after_dispose
    assert _of(events, DownloadStateChanged)[0] == DownloadStateChanged(
        ClientDownloadState.DOWNLOADING, 30.0
    )


def test_removing_download_mid_flight_reports_undownloaded_once() -> None:
    async def run():
        session, _engine, events, download_engine = await _open(HLS_URI)
        await session.download(0, "360p")
        await session.downloads.join()
        await download_engine.advance(HLS_URI, DownloadState.DOWNLOADING, 40.0)
        await _wait_for(
            lambda: DownloadStateChanged(ClientDownloadState.DOWNLOADING, 40.0)
            in events
        )
        removed_at = len(events)
        await session.remove_download()
        await asyncio.sleep(0.2)
        result = (
            events[removed_at:],
            session.poller.running,
            session.downloads._registry.listener_count,
        )
        await session.dispose()
        return result

    after_removal, running, listener_count = _run(run())
    assert _of(after_removal, DownloadStateChanged) == [
        DownloadStateChanged(ClientDownloadState.UNDOWNLOADED)
    ]
    assert not running
    assert listener_count == 0


def test_dispose_is_idempotent_and_survives_cleanup_failures() -> None:
    async def run():
        session, engine, _events, _ = await _open()
        engine.simulate_ready()
        await engine.settle()

        async def broken_release() -> None:
            raise RuntimeError("release failed")

        engine.release = broken_release
        await session.dispose()
        await session.dispose()
        engine.calls.clear()
        await session.play()
        await session.set_volume(0.5)
        position = await session.position()
        return session, engine, position

    session, engine, position = _run(run())
    assert session.disposed
    assert session.surface.released
    assert engine.calls == []
    assert position == 0


def test_engine_callbacks_after_dispose_are_dropped() -> None:
    async def run():
        session, engine, events, _ = await _open()
        handler = engine._handler
        await session.dispose()
        count = len(events)
        await handler(PlaybackStateChanged(EngineState.ENDED))
        return count, events, session.state

    count, events, state = _run(run())
    assert len(events) == count
    assert state is SessionState.BUFFERING
