"""
Refresh coordinator: the orchestrator of the mirroring pipeline.

Wires together surface, panel driver, power controller, coalescer and
full-refresh scheduler. Everything that touches the panel runs inside
one drawing session at a time:

    capture -> classify -> quantize (release capture) -> write -> sleep

Only two operations are exposed to the outside: accept a damage
notification, and request a full refresh.
"""

from __future__ import annotations

import asyncio
import contextlib
import gc
import logging
from dataclasses import dataclass
from typing import Callable

from inkmirror.classify import resolve_full_refresh, resolve_hint, resolve_level, waveform_for
from inkmirror.coalesce import DamageCoalescer
from inkmirror.config import RefreshConfig
from inkmirror.display import PanelDriver, create_display
from inkmirror.errors import ContractViolation, PanelUnavailable, SurfaceUnavailable
from inkmirror.power import PanelPowerController
from inkmirror.quantize import Frame, Level, classify_as_few_level, quantize
from inkmirror.regions import DamageRegion, LevelHint, Rect, align
from inkmirror.scheduler import FullRefreshScheduler
from inkmirror.surface import Surface

logger = logging.getLogger(__name__)


def build_driver(config: RefreshConfig) -> PanelDriver:
    """Simulator in mock mode, the SPI HAT otherwise."""
    if config.mock:
        return create_display('sim', width=config.width, height=config.height,
                              output_dir=config.frames_dir)
    try:
        return create_display('spi', **config.driver)
    except TypeError as exc:
        raise ContractViolation(f"invalid driver settings: {exc}") from exc


@dataclass
class PanelState:
    """Everything owned once the panel is configured."""

    config: RefreshConfig
    driver: PanelDriver
    power: PanelPowerController
    coalescer: DamageCoalescer
    scheduler: FullRefreshScheduler


class RefreshCoordinator:
    """Keeps an e-ink panel in sync with a changing surface."""

    def __init__(self, surface: Surface,
                 driver_factory: Callable[[RefreshConfig], PanelDriver] = build_driver):
        self.surface = surface
        self._driver_factory = driver_factory
        self.state: PanelState | None = None
        self.accepting = False
        self.last_error: str | None = None
        self.draw_count = 0
        self._configured = False
        self._session_lock = asyncio.Lock()
        self._fast_tasks: set[asyncio.Task] = set()
        self._fatal: Exception | None = None
        self._done = asyncio.Event()

    @property
    def configured(self) -> bool:
        return self._configured

    @property
    def busy(self) -> bool:
        """True while a drawing session runs or a fast-path draw is queued."""
        return self._session_lock.locked() or bool(self._fast_tasks)

    # --- Lifecycle ---

    async def start(self, config: RefreshConfig):
        """Initialise the panel, draw one full-fidelity frame, then observe damage."""
        if self._configured:
            raise ContractViolation("configuration received twice")
        driver = self._driver_factory(config)
        self._configured = True

        power = PanelPowerController(driver, mock=config.mock)
        try:
            await power.run(driver.init)
            await power.sleep()
        except PanelUnavailable as exc:
            self._handle_failure(exc, 'panel init', None)
            raise
        logger.info("Panel initialised (%sx%s%s)", driver.width, driver.height,
                    ", mock" if config.mock else "")

        coalescer = DamageCoalescer(self._draw_region, self.session,
                                    delay=config.debounce_delay or 0.0,
                                    on_failure=self._handle_failure)
        scheduler = FullRefreshScheduler(self._full_refresh, coalescer,
                                         config.full_refresh_interval)
        self.state = PanelState(config, driver, power, coalescer, scheduler)

        await self.surface.set_viewport(driver.width, driver.height)
        await scheduler.request(force_full=True)
        self.accepting = self._fatal is None

        if config.partial_refresh and self.accepting:
            self.surface.on_damage(self.accept_damage)
            await self.surface.start_observing()

    async def run_forever(self):
        """Wait until stop() or a fatal panel error; re-raise the latter."""
        await self._done.wait()
        if self._fatal is not None:
            raise self._fatal

    async def stop(self):
        self.accepting = False
        state = self.state
        if state is not None:
            await state.scheduler.stop()
            state.coalescer.cancel()
            await state.coalescer.wait_idle()
        for task in list(self._fast_tasks):
            task.cancel()
        await asyncio.gather(*self._fast_tasks, return_exceptions=True)
        await self.surface.close()
        if state is not None:
            await self._shutdown_panel(state)
        self._done.set()

    async def wait_idle(self):
        """Wait until no fast-path draw or drain is in flight."""
        while self._fast_tasks or (self.state and self.state.coalescer.draining):
            await asyncio.gather(*self._fast_tasks, return_exceptions=True)
            if self.state is not None:
                await self.state.coalescer.wait_idle()

    async def _shutdown_panel(self, state: PanelState):
        try:
            if not state.config.mock and self._fatal is None:
                await state.power.activate()
                await state.power.run(state.driver.clear)
            await state.power.run(state.driver.close)
        except PanelUnavailable as exc:
            logger.warning("Panel shutdown incomplete: %s", exc)

    # --- Inbound operations ---

    def accept_damage(self, rect: Rect, few: bool = False, full: bool = False) -> DamageRegion | None:
        """Take one damage notification from the surface.

        Returns the queued region, or None when the notification was
        ignored (not started yet, or entirely off the panel).
        """
        state = self.state
        if state is None or not self.accepting:
            logger.debug("Ignoring damage %s before startup completed", rect.as_tuple())
            return None
        fitted = self._fit(rect, state)
        if fitted is None:
            return None
        region = DamageRegion(fitted, LevelHint.from_tags(few, full))

        fast = resolve_hint(region.hint, state.config.prefer_few_level) is Level.FEW
        if fast and not state.coalescer.draining and not self.busy:
            task = asyncio.get_running_loop().create_task(self._fast_draw(region))
            self._fast_tasks.add(task)
            task.add_done_callback(self._fast_tasks.discard)
        else:
            state.coalescer.add(region)
        return region

    async def request_full_refresh(self, force_full: bool = True):
        if self.state is None:
            raise ContractViolation("full refresh requested before configuration")
        await self.state.scheduler.request(force_full)

    def status(self) -> dict:
        state = self.state
        info = {
            'configured': self._configured,
            'accepting': self.accepting,
            'busy': self.busy,
            'draws': self.draw_count,
            'last_error': self.last_error,
        }
        if state is not None:
            info.update({
                'width': state.driver.width,
                'height': state.driver.height,
                'mock': state.config.mock,
                'power': state.power.state.value,
                'coalescer': state.coalescer.state.value,
                'pending': len(state.coalescer.pending),
                'full_refresh_armed': state.scheduler.armed,
            })
        return info

    # --- Drawing ---

    @contextlib.asynccontextmanager
    async def session(self):
        """One drawing session: exclusive, inside a single power bracket."""
        async with self._session_lock:
            async with self.state.power.session():
                yield

    async def _draw_region(self, region: DamageRegion):
        logger.debug("Drawing %s (%s)", region.rect.as_tuple(), region.hint.value)
        frame = await self.surface.capture_region(region.rect)
        level = resolve_level(region.hint, frame.pixels, self.state.config.prefer_few_level)
        await self._write(frame, level)

    async def _fast_draw(self, region: DamageRegion):
        try:
            async with self.session():
                await self._draw_region(region)
        except Exception as exc:
            self._handle_failure(exc, 'fast draw', region)

    async def _full_refresh(self, force_full: bool):
        state = self.state
        if self._fatal is not None:
            return
        logger.info("Full refresh eink (force_full=%s)", force_full)
        try:
            async with self.session():
                frame = await self.surface.capture_region(None)
                hints = await self.surface.content_hints()
                level = resolve_full_refresh(hints, state.config.prefer_few_level, force_full)
                if level is None:
                    level = Level.FEW if classify_as_few_level(frame.pixels) else Level.FULL
                await self._write(frame, level)
        except Exception as exc:
            self._handle_failure(exc, 'full refresh', None)
        finally:
            gc.collect()

    async def _write(self, frame: Frame, level: Level):
        state = self.state
        quantized = quantize(frame, level, waveform_for(level, state.config.panel_variant))
        await state.power.write(quantized)
        self.draw_count += 1

    def _fit(self, rect: Rect, state: PanelState) -> Rect | None:
        aligned = align(rect, state.config.granularity)
        try:
            return aligned.clip(state.driver.width, state.driver.height)
        except ContractViolation:
            logger.debug("Damage %s lies outside the panel", rect.as_tuple())
            return None

    # --- Failures ---

    def _handle_failure(self, exc: Exception, kind: str, region: DamageRegion | None):
        where = region.rect.as_tuple() if region is not None else 'full frame'
        self.last_error = f"{kind} {where}: {exc}"
        if isinstance(exc, SurfaceUnavailable):
            logger.warning("%s aborted for %s, surface unavailable: %s", kind, where, exc)
            return
        logger.error("%s failed for %s", kind, where, exc_info=exc)
        if self._fatal is None:
            self._fatal = exc
            self.accepting = False
            if self.state is not None:
                self.state.scheduler.disarm()
            self._done.set()
