"""
IT8951 e-ink driver for the Waveshare HAT over SPI, using lgpio for
GPIO + SPI access.

Follows the public Waveshare IT8951 command set, trimmed to what the
refresh pipeline needs: power transitions, packed 4bpp area writes and
area refreshes with a selectable waveform.

Requires: Raspberry Pi with SPI enabled and python3-lgpio.

Usage:
    from inkmirror.display.spi import SpiConfig, SpiPanel

    panel = SpiPanel(SpiConfig(vcom_mv=1800))
    panel.init()
    panel.draw(packed, 0, 0, panel.width, panel.height)
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from inkmirror.display import DEFAULT_MODE, MODE_INIT
from inkmirror.errors import PanelUnavailable

logger = logging.getLogger(__name__)

# IT8951 command/register constants (subset)
TCON_SYS_RUN = 0x0001
TCON_SLEEP = 0x0003
TCON_REG_RD = 0x0010
TCON_REG_WR = 0x0011
TCON_LD_IMG_AREA = 0x0021
TCON_LD_IMG_END = 0x0022
I80_CMD_DPY_AREA = 0x0034
I80_CMD_VCOM = 0x0039
I80_CMD_GET_DEV_INFO = 0x0302

DISPLAY_REG_BASE = 0x1000
LUTAFSR = DISPLAY_REG_BASE + 0x224   # LUT engine status, 0 when idle
I80CPCR = 0x0004                     # Packed write enable
LISAR = 0x0208                       # Image buffer target address

PREAMBLE_COMMAND = 0x6000
PREAMBLE_WRITE = 0x0000
PREAMBLE_READ = 0x1000

LDIMG_L_ENDIAN = 0
PIXEL_4BPP = 2
ROTATE_0 = 0

WRITE_CHUNK = 4096  # Bytes per spi_write call


@dataclass(frozen=True)
class SpiConfig:
    """Pin + timing configuration for the display HAT."""

    spi_device: int = 0  # /dev/spidev<device>.<channel>
    spi_channel: int = 0
    spi_hz: int = 24_000_000
    gpio_chip: int = 0
    rst_pin: int = 17
    busy_pin: int = 24
    cs_pin: int = 8
    vcom_mv: int | None = 1800
    rotate: int = ROTATE_0


class SpiPanel:
    """IT8951 HAT driven over SPI."""

    def __init__(self, config: SpiConfig | None = None):
        self.config = config or SpiConfig()
        self._lgpio = None
        self._gpio_handle = None
        self._spi_handle = None
        self._claimed_pins: set[int] = set()
        self._frame_addr = 0
        self.width = 0
        self.height = 0

    # --- PanelDriver protocol ---

    def init(self) -> None:
        self._lgpio = self._import_lgpio()
        try:
            self._setup_gpio()
            self._setup_spi()
            self._reset()
            self._write_command(TCON_SYS_RUN)
            self._read_dev_info()
            self._write_register(I80CPCR, 0x0001)
            if self.config.vcom_mv is not None:
                self._set_vcom(self.config.vcom_mv)
        except PanelUnavailable:
            self.close()
            raise
        except Exception as exc:
            self.close()
            raise PanelUnavailable(f"failed to initialise IT8951 HAT: {exc}") from exc

    def wait_for_ready(self) -> None:
        self._guarded(self._wait_busy)

    def wait_for_display_ready(self) -> None:
        self._guarded(self._wait_lut_idle)

    def activate(self) -> None:
        self._guarded(self._write_command, TCON_SYS_RUN)

    def sleep(self) -> None:
        self._guarded(self._write_command, TCON_SLEEP)

    def draw(self, packed: bytes, x: int, y: int, w: int, h: int,
             mode: int | None = None) -> None:
        self._guarded(self._draw, packed, x, y, w, h,
                      DEFAULT_MODE if mode is None else mode)

    def clear(self) -> None:
        white = bytes([0xFF]) * (self.width * self.height // 2)
        self.draw(white, 0, 0, self.width, self.height, MODE_INIT)
        self.wait_for_display_ready()

    def close(self) -> None:
        """Release GPIO/SPI handles to leave the bus in a clean state."""
        if self._lgpio is None:
            return
        if self._spi_handle is not None:
            try:
                self._lgpio.spi_close(self._spi_handle)
            except self._lgpio.error:  # pragma: no cover - best-effort cleanup
                logger.debug("spi_close failed", exc_info=True)
            self._spi_handle = None
        if self._gpio_handle is not None:
            for pin in list(self._claimed_pins):
                try:
                    self._lgpio.gpio_free(self._gpio_handle, pin)
                except self._lgpio.error:  # pragma: no cover - best-effort cleanup
                    logger.debug("gpio_free(%s) failed", pin, exc_info=True)
            self._claimed_pins.clear()
            try:
                self._lgpio.gpiochip_close(self._gpio_handle)
            except self._lgpio.error:  # pragma: no cover - best-effort cleanup
                logger.debug("gpiochip_close failed", exc_info=True)
            self._gpio_handle = None

    # --- Setup ---

    @staticmethod
    def _import_lgpio():
        try:
            import lgpio
        except ImportError as exc:
            raise PanelUnavailable("lgpio module missing; install python3-lgpio") from exc
        return lgpio

    def _setup_gpio(self):
        cfg = self.config
        handle = self._lgpio.gpiochip_open(cfg.gpio_chip)
        if handle < 0:
            raise PanelUnavailable(f"Unable to open GPIO chip {cfg.gpio_chip}")
        self._gpio_handle = handle
        self._lgpio.gpio_claim_input(handle, cfg.busy_pin)
        self._claimed_pins.add(cfg.busy_pin)
        for pin in (cfg.rst_pin, cfg.cs_pin):
            self._lgpio.gpio_claim_output(handle, pin, level=1)
            self._claimed_pins.add(pin)

    def _setup_spi(self):
        cfg = self.config
        handle = self._lgpio.spi_open(cfg.spi_device, cfg.spi_channel, cfg.spi_hz, 0)
        if handle < 0:
            raise PanelUnavailable(f"Unable to open SPI device {cfg.spi_device}.{cfg.spi_channel}")
        self._spi_handle = handle

    def _reset(self):
        self._digital_write(self.config.rst_pin, 1)
        time.sleep(0.2)
        self._digital_write(self.config.rst_pin, 0)
        time.sleep(0.01)
        self._digital_write(self.config.rst_pin, 1)
        time.sleep(0.2)

    def _read_dev_info(self):
        self._write_command(I80_CMD_GET_DEV_INFO)
        words = self._read_words(20)
        self.width, self.height = words[0], words[1]
        self._frame_addr = (words[3] << 16) | words[2]
        firmware = ''.join(chr(w >> 8) + chr(w & 0xFF) for w in words[4:12]).strip('\x00')
        logger.info("IT8951 panel detected: %sx%s px, FW=%s", self.width, self.height, firmware)

    def _set_vcom(self, millivolts: int):
        self._write_command(I80_CMD_VCOM)
        self._write_data(0x0001)
        self._write_data(abs(millivolts))
        logger.info("Configured e-ink VCOM to -%.02fV", abs(millivolts) / 1000)

    # --- Primitives ---

    def _require_open(self):
        if self._spi_handle is None or self._gpio_handle is None:
            raise PanelUnavailable("display driver not initialised")

    def _guarded(self, fn, *args):
        """Run a bus transaction, surfacing transport errors as PanelUnavailable."""
        self._require_open()
        try:
            fn(*args)
        except (OSError, self._lgpio.error) as exc:
            raise PanelUnavailable(f"IT8951 transfer failed: {exc}") from exc

    def _wait_busy(self):
        while self._digital_read(self.config.busy_pin) == 0:
            time.sleep(0.001)

    def _wait_lut_idle(self):
        while self._read_register(LUTAFSR) != 0:
            time.sleep(0.01)

    def _digital_write(self, pin, value):
        self._lgpio.gpio_write(self._gpio_handle, pin, value)

    def _digital_read(self, pin):
        return self._lgpio.gpio_read(self._gpio_handle, pin)

    def _spi_write_word(self, value):
        self._lgpio.spi_write(self._spi_handle, bytes([(value >> 8) & 0xFF, value & 0xFF]))

    def _spi_read_word(self):
        _, data = self._lgpio.spi_read(self._spi_handle, 2)
        return (data[0] << 8) | data[1]

    def _transfer_word(self, preamble, value):
        self._wait_busy()
        self._digital_write(self.config.cs_pin, 0)
        self._spi_write_word(preamble)
        self._wait_busy()
        self._spi_write_word(value)
        self._digital_write(self.config.cs_pin, 1)

    def _write_command(self, command):
        self._transfer_word(PREAMBLE_COMMAND, command)

    def _write_data(self, value):
        self._transfer_word(PREAMBLE_WRITE, value)

    def _write_args(self, command, values):
        self._write_command(command)
        for value in values:
            self._write_data(value)

    def _read_words(self, count):
        self._wait_busy()
        self._digital_write(self.config.cs_pin, 0)
        self._spi_write_word(PREAMBLE_READ)
        self._wait_busy()
        self._spi_read_word()  # dummy
        self._wait_busy()
        words = [self._spi_read_word() for _ in range(count)]
        self._digital_write(self.config.cs_pin, 1)
        return words

    def _write_register(self, address, value):
        self._write_args(TCON_REG_WR, [address, value])

    def _read_register(self, address):
        self._write_args(TCON_REG_RD, [address])
        return self._read_words(1)[0]

    def _draw(self, packed, x, y, w, h, mode):
        self._write_register(LISAR + 2, (self._frame_addr >> 16) & 0xFFFF)
        self._write_register(LISAR, self._frame_addr & 0xFFFF)
        self._write_args(TCON_LD_IMG_AREA, [
            (LDIMG_L_ENDIAN << 8) | (PIXEL_4BPP << 4) | self.config.rotate,
            x, y, w, h,
        ])
        self._wait_busy()
        self._digital_write(self.config.cs_pin, 0)
        self._spi_write_word(PREAMBLE_WRITE)
        self._wait_busy()
        for offset in range(0, len(packed), WRITE_CHUNK):
            self._lgpio.spi_write(self._spi_handle, packed[offset:offset + WRITE_CHUNK])
        self._digital_write(self.config.cs_pin, 1)
        self._write_command(TCON_LD_IMG_END)
        self._write_args(I80_CMD_DPY_AREA, [x, y, w, h, mode])
