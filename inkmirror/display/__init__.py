"""
Panel driver abstraction for IT8951 e-ink controllers.

The PanelDriver protocol defines the interface the refresh pipeline
depends on. Concrete implementations:
  - SpiPanel: IT8951 HAT over SPI + GPIO (lgpio)
  - SimPanel: PIL-based simulator for mock mode and tests

Usage:
    from inkmirror.display import create_display, MODE_DU4

    panel = create_display('spi', vcom_mv=1800)
    panel = create_display('sim', width=1872, height=1404, output_dir='./frames')
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

# Display update modes (IT8951 waveform table)
MODE_INIT = 0    # Full clear (slow, removes ghosting)
MODE_DU = 1      # Fast, black/white only, no flash
MODE_GC16 = 2    # High quality, 16 grays, flashy
MODE_GL16 = 3    # 16 grays, little ghosting
MODE_GLR16 = 4   # 16 grays, heavy ghosting
MODE_GLD16 = 5   # 16 grays, tuned for 6" panels
MODE_A2 = 6      # Fast animation, 2 grays, flashy
MODE_DU4 = 7     # Fast, 4 grays, rare ghosting

DEFAULT_MODE = MODE_GC16  # Used when draw() gets mode=None


@runtime_checkable
class PanelDriver(Protocol):
    """Interface for e-ink panel backends. Every call may block."""

    width: int
    height: int

    def init(self) -> None:
        """Open the transport and query the panel geometry."""
        ...

    def wait_for_ready(self) -> None:
        """Block until the controller accepts a new command."""
        ...

    def wait_for_display_ready(self) -> None:
        """Block until the last waveform finished on the glass."""
        ...

    def activate(self) -> None:
        """Wake the controller (SYS_RUN)."""
        ...

    def sleep(self) -> None:
        """Put the controller to sleep."""
        ...

    def draw(self, packed: bytes, x: int, y: int, w: int, h: int,
             mode: int | None = None) -> None:
        """Write packed 4bpp pixels to a region and refresh it."""
        ...

    def clear(self) -> None:
        """Clear the panel to white."""
        ...

    def close(self) -> None:
        """Release resources."""
        ...


def create_display(backend: str = 'spi', **kwargs) -> PanelDriver:
    """
    Factory for panel backends.

    Args:
        backend: 'spi' for the IT8951 HAT, 'sim' for the simulator
        **kwargs: Passed to the backend constructor.
            spi: any SpiConfig field (vcom_mv=1800, spi_hz=24000000, ...)
            sim: width=1872, height=1404, output_dir=None
    """
    if backend == 'spi':
        from inkmirror.display.spi import SpiConfig, SpiPanel
        return SpiPanel(SpiConfig(**kwargs))
    elif backend == 'sim':
        from inkmirror.display.sim import SimPanel
        return SimPanel(**kwargs)
    else:
        raise ValueError(f"Unknown display backend: {backend!r}")
