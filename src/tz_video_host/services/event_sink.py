"""Queuing event sink for per-session event streams.

A client may subscribe to a session's stream after the engine already
produced events. Until a listener is attached the sink buffers events; on
attach the backlog is replayed in FIFO order before any live event.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable

from tz_video_host.events import SessionEvent

logger = logging.getLogger(__name__)

EventListener = Callable[[SessionEvent], Awaitable[None]]


class QueuingEventSink:
    """Delivers each event exactly once, in production order."""

    def __init__(self) -> None:
        self._delegate: EventListener | None = None
        self._queue: deque[SessionEvent] = deque()
        self._lock = asyncio.Lock()

    @property
    def attached(self) -> bool:
        return self._delegate is not None

    @property
    def pending(self) -> int:
        return len(self._queue)

    async def emit(self, event: SessionEvent) -> None:
        async with self._lock:
            if self._delegate is None:
                self._queue.append(event)
                return
            await self._delegate(event)

    async def attach(self, listener: EventListener) -> None:
        async with self._lock:
            # Pop only after delivery so a failing listener keeps the backlog.
            while self._queue:
                await listener(self._queue[0])
                self._queue.popleft()
            self._delegate = listener

    async def detach(self) -> None:
        async with self._lock:
            self._delegate = None
