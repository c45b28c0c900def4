"""Self-cancelling download progress polling.

While a download is in flight the engine only notifies on state changes,
not on percent progress, so sessions poll the registry on a fixed interval
and re-emit the client-visible state until a terminal state is seen.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from tz_video_host.services.download_registry import DownloadRegistry, ListenerHandle

if TYPE_CHECKING:
    from tz_video_host.services.download_coordinator import DownloadCoordinator

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_MS = 1000


class RepeatingTask:
    """Run `callback` every `interval_s` until it returns False or is cancelled.

    The first run happens one interval after `start()`. Restarting cancels
    the previous loop, so at most one loop is alive per instance.
    """

    def __init__(
        self,
        interval_s: float,
        callback: Callable[[], Awaitable[bool]],
        *,
        name: str | None = None,
    ) -> None:
        self._interval_s = interval_s
        self._callback = callback
        self._name = name
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        self.cancel()
        self._task = asyncio.create_task(self._run(), name=self._name)

    def cancel(self) -> None:
        task = self._task
        self._task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _run(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._interval_s)
                try:
                    keep_going = await self._callback()
                except Exception:
                    logger.exception("Repeating task %s tick failed", self._name)
                    keep_going = True
                if not keep_going:
                    return
        finally:
            if self._task is asyncio.current_task():
                self._task = None


class ProgressPoller:
    """Polls one session's download state; at most one timer is ever alive."""

    def __init__(
        self,
        coordinator: DownloadCoordinator,
        registry: DownloadRegistry,
        *,
        interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
    ) -> None:
        self._coordinator = coordinator
        self._registry = registry
        self._interval_s = interval_ms / 1000
        self._timer: RepeatingTask | None = None
        self._listener: ListenerHandle | None = None
        self._pending_listener: ListenerHandle | None = None

    @property
    def running(self) -> bool:
        return self._timer is not None and self._timer.running

    @property
    def awaiting_change(self) -> bool:
        return self._pending_listener is not None

    def start(self, listener: ListenerHandle | None = None) -> None:
        """Start polling now; `listener` is deregistered once polling ends."""
        if self._timer is not None:
            self._timer.cancel()
        if self._listener is not None and self._listener != listener:
            self._registry.unregister_listener(self._listener)
        self._listener = listener
        self._timer = RepeatingTask(
            self._interval_s,
            self._tick,
            name=f"download-poll:{self._coordinator.uri}",
        )
        self._timer.start()

    def start_on_next_change(self) -> None:
        """Start polling the first time the registry reports a change."""
        self._registry.unregister_listener(self._pending_listener)
        started = False

        async def on_downloads_changed() -> None:
            nonlocal started
            if started:
                return
            started = True
            if self._pending_listener == handle:
                self._pending_listener = None
            self.start(handle)

        handle = self._registry.register_listener(on_downloads_changed)
        self._pending_listener = handle

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._registry.unregister_listener(self._listener)
        self._registry.unregister_listener(self._pending_listener)
        self._listener = None
        self._pending_listener = None

    async def _tick(self) -> bool:
        record = await self._coordinator.emit_state()
        if record is not None and not record.state.is_terminal:
            return True
        logger.debug(
            "Download for %s reached %s; stopping poller",
            self._coordinator.uri,
            record.state.value if record is not None else "removed",
        )
        self._timer = None
        self._registry.unregister_listener(self._listener)
        self._listener = None
        return False
