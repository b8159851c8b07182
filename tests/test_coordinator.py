"""End-to-end tests for the refresh coordinator on the simulator panel."""

from __future__ import annotations

import asyncio
import io

import pytest
from PIL import Image

from inkmirror.classify import PanelVariant
from inkmirror.coalesce import CoalescerState
from inkmirror.coordinator import RefreshCoordinator, build_driver
from inkmirror.display import DEFAULT_MODE, MODE_DU4, MODE_GLD16
from inkmirror.display.sim import SimPanel
from inkmirror.errors import ContractViolation, PanelUnavailable
from inkmirror.power import PanelPowerState
from inkmirror.regions import LevelHint, Rect


def draws(coordinator):
    """(rect, mode) of every panel write so far."""
    log = coordinator.state.driver.log
    return [(Rect.from_size(e['x'], e['y'], e['w'], e['h']), e['mode'])
            for e in log if e['op'] == 'draw']


def block(color, size=(32, 32)):
    return Image.new('L', size, color)


def run(surface, config, scenario, driver_factory=build_driver):
    """Start a coordinator, run ``scenario`` against it, then stop it."""
    async def go():
        coordinator = RefreshCoordinator(surface, driver_factory)
        await coordinator.start(config)
        try:
            result = await scenario(coordinator)
            await coordinator.wait_idle()
        finally:
            await coordinator.stop()
        return coordinator, result

    return asyncio.run(go())


async def idle(coordinator):
    await coordinator.wait_idle()


class TestStartup:

    def test_first_frame_is_full_fidelity(self, surface, mock_config):
        surface.canvas.paste(0, (0, 0, 128, 96))  # palette-only content
        coordinator, _ = run(surface, mock_config, idle)
        assert draws(coordinator) == [(Rect(0, 0, 128, 96), DEFAULT_MODE)]
        assert surface.captures == [None]
        assert coordinator.state.driver.ops()[0] == 'init'

    def test_second_configuration_rejected(self, surface, mock_config):
        async def again(coordinator):
            with pytest.raises(ContractViolation):
                await coordinator.start(mock_config)

        coordinator, _ = run(surface, mock_config, again)
        assert len(draws(coordinator)) == 1

    def test_damage_before_start_ignored(self, surface):
        coordinator = RefreshCoordinator(surface)
        assert coordinator.accept_damage(Rect(0, 0, 32, 32)) is None

    def test_partial_refresh_disabled(self, surface, mock_config):
        config = mock_config.model_copy(update={"debounce_delay": None})

        async def scenario(coordinator):
            surface.paint(block(0), (0, 0), few=True)

        coordinator, _ = run(surface, config, scenario)
        assert len(draws(coordinator)) == 1

    def test_mock_mode_never_sleeps_the_driver(self, surface, mock_config):
        coordinator, _ = run(surface, mock_config, idle)
        ops = coordinator.state.driver.ops()
        assert 'activate' not in ops and 'sleep' not in ops
        assert coordinator.state.power.state is PanelPowerState.SLEEPING

    def test_status(self, surface, mock_config):
        async def scenario(coordinator):
            return coordinator.status()

        _, status = run(surface, mock_config, scenario)
        assert status['configured'] and status['accepting']
        assert status['draws'] == 1
        assert status['coalescer'] == 'idle'
        assert status['full_refresh_armed'] is False


class TestDamage:

    def test_few_tagged_damage_takes_fast_path(self, surface, mock_config):
        async def scenario(coordinator):
            surface.paint(block(0), (40, 40), few=True)
            return coordinator.state.coalescer.drain_count

        coordinator, drains = run(surface, mock_config, scenario)
        assert drains == 0
        assert draws(coordinator)[1:] == [(Rect(32, 32, 96, 96), MODE_DU4)]

    def test_fast_draw_writes_palette_pixels(self, surface, mock_config):
        async def scenario(coordinator):
            surface.paint(block(0x80), (0, 0), few=True)

        coordinator, _ = run(surface, mock_config, scenario)
        # 0x8 snaps to 0x6 under the 4-level palette
        assert coordinator.state.driver.framebuffer.getpixel((0, 0)) == 0x66

    def test_untagged_damage_is_coalesced_and_classified(self, surface, mock_config):
        async def scenario(coordinator):
            surface.paint(block(0x80), (0, 0))
            surface.paint(block(0x00), (64, 0))

        coordinator, _ = run(surface, mock_config, scenario)
        assert draws(coordinator)[1:] == [
            (Rect(0, 0, 32, 32), DEFAULT_MODE),
            (Rect(64, 0, 96, 32), MODE_DU4),
        ]
        assert coordinator.state.coalescer.drain_count == 1
        assert coordinator.state.driver.framebuffer.getpixel((0, 0)) == 0x88

    def test_full_tag_blocks_preference(self, surface, mock_config):
        config = mock_config.model_copy(update={"prefer_few_level": True})

        async def scenario(coordinator):
            surface.paint(block(0x80), (0, 0), full=True)
            surface.paint(block(0x00), (64, 0), full=True)

        coordinator, _ = run(surface, config, scenario)
        assert draws(coordinator)[1:] == [
            (Rect(0, 0, 32, 32), DEFAULT_MODE),
            (Rect(64, 0, 96, 32), MODE_DU4),
        ]

    def test_prefer_few_level_applies_to_untagged_damage(self, surface, mock_config):
        config = mock_config.model_copy(update={"prefer_few_level": True})

        async def scenario(coordinator):
            surface.paint(block(0x80), (0, 0))

        coordinator, _ = run(surface, config, scenario)
        assert draws(coordinator)[1:] == [(Rect(0, 0, 32, 32), MODE_DU4)]

    def test_fast_path_diverted_while_draining(self, surface, mock_config):
        config = mock_config.model_copy(update={"debounce_delay": 0.05})

        async def scenario(coordinator):
            surface.paint(block(0x80), (0, 0))
            surface.paint(block(0x00), (64, 64), few=True)
            return list(coordinator.state.coalescer.pending)

        coordinator, pending = run(surface, config, scenario)
        assert [r.hint for r in pending] == [LevelHint.UNKNOWN, LevelHint.FORCE_FEW]
        assert len(draws(coordinator)) == 3

    def test_duplicate_damage_drawn_once(self, surface, mock_config):
        config = mock_config.model_copy(update={"debounce_delay": 0.05})

        async def scenario(coordinator):
            for _ in range(3):
                surface.paint(block(0x80), (1, 1))

        coordinator, _ = run(surface, config, scenario)
        assert draws(coordinator)[1:] == [(Rect(0, 0, 64, 64), DEFAULT_MODE)]

    def test_edge_damage_clipped_to_panel(self, surface, mock_config):
        async def scenario(coordinator):
            return coordinator.accept_damage(Rect(120, 90, 140, 100), few=True)

        _, region = run(surface, mock_config, scenario)
        assert region.rect == Rect(96, 64, 128, 96)

    def test_offscreen_damage_ignored(self, surface, mock_config):
        async def scenario(coordinator):
            return coordinator.accept_damage(Rect(200, 200, 240, 240))

        coordinator, region = run(surface, mock_config, scenario)
        assert region is None
        assert len(draws(coordinator)) == 1

    def test_six_inch_waveform(self, surface, mock_config):
        config = mock_config.model_copy(update={"panel_variant": PanelVariant.SIX_INCH})

        async def scenario(coordinator):
            surface.paint(block(0), (0, 0), few=True)

        coordinator, _ = run(surface, config, scenario)
        assert draws(coordinator)[1:] == [(Rect(0, 0, 32, 32), MODE_GLD16)]


class TestFullRefresh:

    def test_forced_refresh_is_full_regardless_of_content(self, surface, mock_config):
        surface.areas = [LevelHint.FORCE_FEW]

        async def scenario(coordinator):
            await coordinator.request_full_refresh(True)

        coordinator, _ = run(surface, mock_config, scenario)
        assert [mode for _, mode in draws(coordinator)] == [DEFAULT_MODE, DEFAULT_MODE]

    def test_unforced_refresh_all_few_areas(self, surface, mock_config):
        surface.areas = [LevelHint.FORCE_FEW, LevelHint.FORCE_FEW]
        surface.canvas.paste(0x80, (0, 0, 32, 32))

        async def scenario(coordinator):
            await coordinator.request_full_refresh(False)

        coordinator, _ = run(surface, mock_config, scenario)
        assert draws(coordinator)[-1] == (Rect(0, 0, 128, 96), MODE_DU4)

    def test_unforced_refresh_falls_back_to_pixels(self, surface, mock_config):
        surface.areas = [LevelHint.FORCE_FEW, LevelHint.UNKNOWN]

        async def scenario(coordinator):
            surface.canvas.paste(0x80, (0, 0, 32, 32))
            await coordinator.request_full_refresh(False)
            surface.canvas.paste(0xFF, (0, 0, 32, 32))
            await coordinator.request_full_refresh(False)

        coordinator, _ = run(surface, mock_config, scenario)
        assert [mode for _, mode in draws(coordinator)] == [DEFAULT_MODE, DEFAULT_MODE, MODE_DU4]

    def test_full_refresh_abandons_pending_damage(self, surface, mock_config):
        config = mock_config.model_copy(update={"debounce_delay": 0.05})

        async def scenario(coordinator):
            surface.paint(block(0x80), (0, 0))
            await coordinator.request_full_refresh()
            return coordinator.state.coalescer.pending

        coordinator, pending = run(surface, config, scenario)
        assert pending == ()
        assert len(draws(coordinator)) == 2
        assert all(rect == Rect(0, 0, 128, 96) for rect, _ in draws(coordinator))

    def test_periodic_refresh(self, surface, mock_config):
        config = mock_config.model_copy(update={"full_refresh_interval": 0.01})

        async def scenario(coordinator):
            while coordinator.draw_count < 2:
                await asyncio.sleep(0.01)

        coordinator, _ = run(surface, config, scenario)
        assert len(draws(coordinator)) >= 2

    def test_request_before_configuration(self, surface):
        with pytest.raises(ContractViolation):
            asyncio.run(RefreshCoordinator(surface).request_full_refresh())


class TestFailures:

    def test_surface_failure_aborts_drain_only(self, surface, mock_config):
        async def scenario(coordinator):
            surface.available = False
            surface.paint(block(0x80), (0, 0))
            await coordinator.wait_idle()
            state = coordinator.state.coalescer.state
            surface.available = True
            surface.paint(block(0x80), (64, 0))
            return state

        coordinator, state_after_failure = run(surface, mock_config, scenario)
        assert state_after_failure is CoalescerState.IDLE
        assert coordinator.last_error.startswith('drain')
        assert draws(coordinator)[1:] == [(Rect(64, 0, 96, 32), DEFAULT_MODE)]
        assert coordinator._fatal is None

    def test_surface_failure_during_full_refresh(self, surface, mock_config):
        async def scenario(coordinator):
            surface.available = False
            await coordinator.request_full_refresh()
            surface.available = True
            return coordinator.state.scheduler.armed

        config = mock_config.model_copy(update={"full_refresh_interval": 60})
        coordinator, armed = run(surface, config, scenario)
        assert armed
        assert coordinator.last_error.startswith('full refresh')
        assert len(draws(coordinator)) == 1

    def test_panel_failure_is_fatal(self, surface, mock_config):
        class FlakyPanel(SimPanel):
            fail = False

            def draw(self, *args, **kwargs):
                if self.fail:
                    raise PanelUnavailable("spi write failed")
                super().draw(*args, **kwargs)

        panels = []

        def factory(config):
            panels.append(FlakyPanel(config.width, config.height))
            return panels[0]

        async def go():
            coordinator = RefreshCoordinator(surface, factory)
            await coordinator.start(mock_config)
            panels[0].fail = True
            surface.paint(block(0), (0, 0), few=True)
            with pytest.raises(PanelUnavailable):
                await asyncio.wait_for(coordinator.run_forever(), 1)
            accepting = coordinator.accepting
            assert coordinator.accept_damage(Rect(0, 0, 32, 32)) is None
            await coordinator.stop()
            return coordinator, accepting

        coordinator, accepting = asyncio.run(go())
        assert not accepting
        assert coordinator.state.power.state is PanelPowerState.UNKNOWN

    def test_panel_failure_stops_periodic_refresh(self, surface, mock_config):
        class FlakyPanel(SimPanel):
            fail = False

            def draw(self, *args, **kwargs):
                if self.fail:
                    raise PanelUnavailable("spi write failed")
                super().draw(*args, **kwargs)

        panels = []

        def factory(config):
            panels.append(FlakyPanel(config.width, config.height))
            return panels[0]

        config = mock_config.model_copy(update={"full_refresh_interval": 60})

        async def go():
            coordinator = RefreshCoordinator(surface, factory)
            await coordinator.start(config)
            armed_before = coordinator.state.scheduler.armed
            panels[0].fail = True
            await coordinator.request_full_refresh()
            armed_after = coordinator.state.scheduler.armed
            await coordinator.stop()
            return coordinator, armed_before, armed_after

        coordinator, armed_before, armed_after = asyncio.run(go())
        assert armed_before
        assert not armed_after
        assert isinstance(coordinator._fatal, PanelUnavailable)

    def test_browser_timeout_aborts_drain_only(self, mock_config):
        from unittest.mock import AsyncMock

        from pyppeteer.errors import TimeoutError as PyppeteerTimeoutError

        from inkmirror.surface.browser import BrowserSurface

        buf = io.BytesIO()
        Image.new('L', (128, 96), 0xFF).save(buf, format='PNG')
        browser = BrowserSurface('http://localhost:8080', settle_delay=0)
        browser._page = AsyncMock()
        browser._page.screenshot.return_value = buf.getvalue()
        browser._page.evaluate.return_value = []

        async def scenario(coordinator):
            browser._page.screenshot.side_effect = PyppeteerTimeoutError("Navigation timeout")
            coordinator.accept_damage(Rect(0, 0, 32, 32))
            await coordinator.wait_idle()
            return coordinator.accepting

        coordinator, accepting = run(browser, mock_config, scenario)
        assert accepting
        assert coordinator._fatal is None
        assert coordinator.last_error.startswith('drain')
        assert len(draws(coordinator)) == 1

    def test_panel_init_failure(self, surface, mock_config):
        class DeadPanel(SimPanel):
            def init(self):
                raise PanelUnavailable("no HAT")

        async def go():
            coordinator = RefreshCoordinator(surface, lambda c: DeadPanel(c.width, c.height))
            with pytest.raises(PanelUnavailable):
                await coordinator.start(mock_config)
            return coordinator

        coordinator = asyncio.run(go())
        assert coordinator.configured
        assert coordinator.last_error.startswith('panel init')


class TestShutdown:

    def test_stop_closes_surface_and_driver(self, surface, mock_config):
        coordinator, _ = run(surface, mock_config, idle)
        assert coordinator.state.driver.ops()[-1] == 'close'
        assert not surface._observing

    def test_hardware_shutdown_clears_panel(self, surface, mock_config, hw_driver):
        config = mock_config.model_copy(update={"mock": False})
        coordinator, _ = run(surface, config, idle, driver_factory=lambda c: hw_driver)
        names = [c[0] for c in hw_driver.method_calls]
        assert names[-2:] == ['clear', 'close']
        assert names[0] == 'init'
