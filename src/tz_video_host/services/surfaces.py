"""Render target allocation.

Each session owns one render target whose id doubles as the client-visible
session handle. Engines that draw into a native window receive the
optional `native_handle`.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class RenderTarget:
    id: int
    native_handle: int | None = None
    released: bool = field(default=False, compare=False)

    def release(self) -> None:
        if self.released:
            return
        self.released = True
        logger.debug("Released render target %s", self.id)


class SurfaceAllocator:
    """Hands out render targets with monotonically increasing ids."""

    def __init__(self, *, native_handle: int | None = None) -> None:
        self._ids = itertools.count(1)
        self._native_handle = native_handle

    def create(self) -> RenderTarget:
        return RenderTarget(id=next(self._ids), native_handle=self._native_handle)
