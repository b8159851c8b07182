"""
Power state machine for the panel controller.

The IT8951 must be awake (SYS_RUN) for every write and should sleep
between sessions. Waking is expensive, so both transitions are
idempotent: a second activate() while ACTIVE does nothing, and a batch
of writes shares one activate/sleep pair via session().

Usage:
    power = PanelPowerController(panel)
    async with power.session():
        await power.write(quantized_frame)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from enum import Enum
from typing import Any, Callable

from inkmirror.display import PanelDriver
from inkmirror.errors import PanelUnavailable
from inkmirror.quantize import QuantizedFrame

logger = logging.getLogger(__name__)


class PanelPowerState(Enum):
    UNKNOWN = 'unknown'
    ACTIVE = 'active'
    SLEEPING = 'sleeping'


class PanelPowerController:
    """Tracks and drives the controller's power state.

    In mock mode transitions are only recorded; the driver is never
    asked to wait or change power.
    """

    def __init__(self, driver: PanelDriver, mock: bool = False):
        self.driver = driver
        self.mock = mock
        self.state = PanelPowerState.UNKNOWN
        self.wake_count = 0
        self.sleep_count = 0

    async def run(self, fn: Callable[..., Any], *args) -> Any:
        """Run a blocking driver call off the event loop."""
        return await asyncio.to_thread(fn, *args)

    async def activate(self):
        if self.state is PanelPowerState.ACTIVE:
            return
        if not self.mock:
            # First wait: a previous sleep may still be in flight.
            await self.run(self.driver.wait_for_ready)
            await self.run(self.driver.activate)
            # Second wait: no write before the wake has completed.
            await self.run(self.driver.wait_for_ready)
        self.wake_count += 1
        self.state = PanelPowerState.ACTIVE
        logger.debug("Panel active")

    async def sleep(self):
        if self.state is PanelPowerState.SLEEPING:
            return
        if not self.mock:
            await self.run(self.driver.wait_for_display_ready)
            await self.run(self.driver.sleep)
        self.sleep_count += 1
        self.state = PanelPowerState.SLEEPING
        logger.debug("Panel sleeping")

    async def write(self, frame: QuantizedFrame):
        """Wake the panel if needed and write one quantized frame."""
        await self.activate()
        rect = frame.rect
        await self.run(self.driver.draw, frame.packed, rect.left, rect.top,
                       rect.width, rect.height, frame.mode)

    @contextlib.asynccontextmanager
    async def session(self):
        """Bracket a batch of writes with a single activate/sleep pair.

        The panel wakes on the first write, so a session that ends up
        writing nothing never toggles power.
        """
        try:
            yield self
        except PanelUnavailable:
            # A failed controller is in an unknown state; don't talk to it again.
            self.state = PanelPowerState.UNKNOWN
            raise
        finally:
            if self.state is PanelPowerState.ACTIVE:
                await self.sleep()
