"""
In-memory surface backed by a PIL canvas.

Painting into the canvas reports damage the same way a browser page
would, which makes it the surface of choice for tests and for driving
the simulator panel without Chromium.

Usage:
    surface = ImageSurface(800, 600)
    surface.on_damage(coordinator.accept_damage)
    surface.paint(Image.new('L', (64, 32), 0), (10, 10), few=True)
"""

from __future__ import annotations

from PIL import Image

from inkmirror.errors import SurfaceUnavailable
from inkmirror.quantize import Frame
from inkmirror.regions import LevelHint, Rect


class ImageSurface:
    """Surface protocol over a mutable grayscale canvas."""

    def __init__(self, width=1872, height=1404, color=255):
        self.canvas = Image.new('L', (width, height), color)
        self.areas: list[LevelHint] = []  # Visible content areas, by tag
        self.available = True
        self.captures: list[Rect | None] = []
        self._callback = None
        self._observing = False

    async def set_viewport(self, width, height):
        if self.canvas.size != (width, height):
            resized = Image.new('L', (width, height), 255)
            resized.paste(self.canvas, (0, 0))
            self.canvas = resized

    async def capture_region(self, rect=None):
        if not self.available:
            raise SurfaceUnavailable("surface not ready")
        self.captures.append(rect)
        if rect is None:
            rect = Rect(0, 0, *self.canvas.size)
        return Frame(self.canvas.crop(rect.as_tuple()).tobytes(), rect)

    def on_damage(self, callback):
        self._callback = callback

    async def start_observing(self):
        self._observing = True

    async def content_hints(self):
        return list(self.areas)

    async def close(self):
        self._observing = False

    def paint(self, image: Image.Image, position: tuple[int, int] = (0, 0),
              few: bool = False, full: bool = False):
        """Paste ``image`` at ``position`` and report the damage."""
        self.canvas.paste(image.convert('L'), position)
        x, y = position
        rect = Rect(x, y, x + image.width, y + image.height)
        if self._observing and self._callback is not None:
            self._callback(rect, few, full)
        return rect
