"""
Damage coalescing.

Bursts of damage notifications (one visual update often touches many
DOM nodes) are collected into a pending batch and drained as a single
drawing session, so the panel wakes once per burst instead of once per
region.

State machine per drain:  IDLE -> DRAINING -> IDLE

The first region that arrives while IDLE starts a drain task: it waits
the debounce delay, then draws pending regions in arrival order until
the batch is empty. Regions arriving meanwhile join the batch; a region
identical to one still pending is dropped.
"""

from __future__ import annotations

import asyncio
import collections
import logging
from enum import Enum
from typing import AsyncContextManager, Awaitable, Callable, Optional

from inkmirror.regions import DamageRegion

logger = logging.getLogger(__name__)


class CoalescerState(Enum):
    IDLE = 'idle'
    DRAINING = 'draining'


FailureHandler = Callable[[Exception, str, Optional[DamageRegion]], None]


def _log_failure(exc: Exception, kind: str, region: DamageRegion | None) -> None:
    logger.error("%s failed for %s: %s", kind, region, exc)


class DamageCoalescer:
    """Collects damage regions and drains them one session at a time."""

    def __init__(self,
                 draw: Callable[[DamageRegion], Awaitable[None]],
                 session: Callable[[], AsyncContextManager],
                 delay: float = 0.0,
                 on_failure: FailureHandler | None = None):
        self._draw = draw
        self._session = session
        self.delay = delay
        self._on_failure = on_failure or _log_failure
        self._pending: collections.deque[DamageRegion] = collections.deque()
        self._task: asyncio.Task | None = None
        self.state = CoalescerState.IDLE
        self.drain_count = 0

    @property
    def pending(self) -> tuple[DamageRegion, ...]:
        return tuple(self._pending)

    @property
    def draining(self) -> bool:
        return self.state is CoalescerState.DRAINING

    def add(self, region: DamageRegion) -> bool:
        """Queue ``region``. Returns False when an identical region is already pending."""
        if region in self._pending:
            logger.debug("Dropping duplicate damage %s", region)
            return False
        self._pending.append(region)
        if self._task is None:
            self._start()
        return True

    def abandon(self) -> int:
        """Drop every pending region. Returns how many were dropped."""
        dropped = len(self._pending)
        self._pending.clear()
        if dropped:
            logger.debug("Abandoned %s pending damage regions", dropped)
        return dropped

    async def wait_idle(self):
        """Wait until no drain is running."""
        while self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    def cancel(self):
        self.abandon()
        if self._task is not None:
            self._task.cancel()

    def _start(self):
        self.state = CoalescerState.DRAINING
        self.drain_count += 1
        self._task = asyncio.get_running_loop().create_task(self._drain())
        self._task.add_done_callback(self._finished)

    async def _drain(self):
        region = None
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            async with self._session():
                while self._pending:
                    region = self._pending.popleft()
                    await self._draw(region)
                region = None
        except asyncio.CancelledError:
            self._pending.clear()
            raise
        except Exception as exc:
            self._pending.clear()
            self._on_failure(exc, 'drain', region)

    def _finished(self, task: asyncio.Task):
        # Runs even when the task was cancelled before it started.
        if task is not self._task:
            return
        self._task = None
        self.state = CoalescerState.IDLE
        # Regions that arrived while the session was closing get their own drain.
        if self._pending:
            self._start()
