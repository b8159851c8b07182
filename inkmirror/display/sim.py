"""
Panel simulator for mock mode and development without hardware.

Renders packed 4bpp writes into an in-memory PIL framebuffer, so the
framebuffer only ever holds the gray levels the real panel would show.
Optionally saves each write to disk in a rolling window of files.

Usage:
    from inkmirror.display import create_display

    panel = create_display('sim', output_dir='./frames')
    panel.draw(packed, 0, 0, 64, 64)
    panel.framebuffer.show()  # Open in system viewer
"""

from __future__ import annotations

import logging
import os

from PIL import Image

from inkmirror.display import DEFAULT_MODE, MODE_INIT
from inkmirror.quantize import unpack

logger = logging.getLogger(__name__)

FRAME_ROLLOVER = 200  # Saved frames wrap around after this many writes


class SimPanel:
    """E-ink panel simulator backed by a PIL Image framebuffer."""

    def __init__(self, width=1872, height=1404, output_dir=None):
        self.width = width
        self.height = height
        self.output_dir = output_dir
        self.framebuffer = Image.new('L', (width, height), 255)
        self.frame_count = 0
        self.awake = False
        self.log: list[dict] = []  # Operation log for testing

        if output_dir:
            os.makedirs(output_dir, exist_ok=True)

        logger.info("SimPanel: %sx%s%s", width, height,
                    f", saving to {output_dir}" if output_dir else "")

    def init(self):
        self._record('init')

    def wait_for_ready(self):
        self._record('wait_for_ready')

    def wait_for_display_ready(self):
        self._record('wait_for_display_ready')

    def activate(self):
        self.awake = True
        self._record('activate')

    def sleep(self):
        self.awake = False
        self._record('sleep')

    def draw(self, packed, x, y, w, h, mode=None):
        """Unpack 4bpp pixels into a region of the framebuffer."""
        region = Image.frombytes('L', (w, h), unpack(packed))
        self.framebuffer.paste(region, (x, y))
        self._record('draw', x=x, y=y, w=w, h=h,
                     mode=DEFAULT_MODE if mode is None else mode)
        self._save_frame()

    def clear(self):
        """Clear framebuffer to white."""
        self.framebuffer = Image.new('L', (self.width, self.height), 255)
        self._record('clear', mode=MODE_INIT)

    def close(self):
        self._record('close')

    def ops(self) -> list[str]:
        """Operation names in call order."""
        return [entry['op'] for entry in self.log]

    def _record(self, operation, **kwargs):
        self.log.append({'op': operation, 'frame': self.frame_count, **kwargs})

    def _save_frame(self):
        if self.output_dir:
            index = self.frame_count % FRAME_ROLLOVER
            path = os.path.join(self.output_dir, f'frame_{index:04d}.png')
            self.framebuffer.save(path)
        self.frame_count += 1

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
