"""Periodic full-frame refresh, independent of incremental damage."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from inkmirror.coalesce import DamageCoalescer

logger = logging.getLogger(__name__)


class FullRefreshScheduler:
    """Owns the single full-refresh timer.

    A full refresh supersedes any queued partial damage, so running one
    abandons the coalescer's pending batch first. The timer is always
    cancelled and replaced, never left to fire alongside a manual request.
    """

    def __init__(self, refresh: Callable[[bool], Awaitable[None]],
                 coalescer: DamageCoalescer | None, interval: float | None):
        self._refresh = refresh
        self._coalescer = coalescer
        self.interval = interval
        self.handle: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()
        self._stopped = False
        self.runs = 0

    @property
    def armed(self) -> bool:
        return self.handle is not None

    def arm(self):
        """(Re)start the periodic timer."""
        self.cancel()
        if not self.interval or self._stopped:
            return
        loop = asyncio.get_running_loop()
        self.handle = loop.call_later(self.interval, self._fire)

    def cancel(self):
        if self.handle is not None:
            self.handle.cancel()
            self.handle = None

    async def request(self, force_full: bool = True):
        """On-demand full refresh; forced full fidelity unless told otherwise."""
        await self.run(force_full)

    async def run(self, force_full: bool):
        self.cancel()
        if self._coalescer is not None:
            self._coalescer.abandon()
        self.runs += 1
        try:
            await self._refresh(force_full)
        finally:
            self.arm()

    def disarm(self):
        """Cancel the timer and keep it from being armed again."""
        self._stopped = True
        self.cancel()

    async def stop(self):
        self.disarm()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

    def _fire(self):
        self.handle = None
        logger.debug("Periodic full refresh due")
        task = asyncio.get_running_loop().create_task(self.run(force_full=False))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
