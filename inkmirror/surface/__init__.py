"""
Visual surface abstraction: the thing being mirrored onto the panel.

The Surface protocol defines what the refresh pipeline needs from it:
grayscale captures, damage notifications and per-area level tags.
Concrete implementations:
  - BrowserSurface: a web page in headless Chromium (pyppeteer)
  - ImageSurface: an in-memory PIL canvas for development and tests

How damage is detected is the surface's business; the pipeline only
ever sees device-pixel rectangles.
"""

from __future__ import annotations

import io
import math
from typing import Callable, Iterable, Protocol, runtime_checkable

from PIL import Image

from inkmirror.errors import SurfaceUnavailable
from inkmirror.quantize import Frame
from inkmirror.regions import LevelHint, Rect, union

# callback(rect, force_few_level, force_full_level)
DamageCallback = Callable[[Rect, bool, bool], None]


@runtime_checkable
class Surface(Protocol):
    """Interface for capturable, observable surfaces."""

    async def set_viewport(self, width: int, height: int) -> None:
        ...

    async def capture_region(self, rect: Rect | None = None) -> Frame:
        """Capture ``rect`` (None = full frame) as 8-bit grayscale."""
        ...

    def on_damage(self, callback: DamageCallback) -> None:
        """Register the damage callback. Called once, at startup."""
        ...

    async def start_observing(self) -> None:
        ...

    async def content_hints(self) -> list[LevelHint]:
        """Level tag of every visible content area."""
        ...

    async def close(self) -> None:
        ...


def merge_mutations(boxes: Iterable[tuple[float, float, float, float, bool, bool]]
                    ) -> tuple[Rect, bool, bool] | None:
    """Fold one batch of mutation records into a single damage notification.

    Each record is (left, top, right, bottom, few_tag, full_tag) in
    fractional CSS pixels. Zero-area records carry no visible change and
    are skipped. Returns None when nothing visible changed.
    """
    merged: Rect | None = None
    few = full = False
    for left, top, right, bottom, is_few, is_full in boxes:
        if right <= left or bottom <= top:
            continue
        rect = Rect(math.floor(left), math.floor(top),
                    math.ceil(right), math.ceil(bottom))
        merged = rect if merged is None else union(merged, rect)
        few = few or bool(is_few)
        full = full or bool(is_full)
    if merged is None:
        return None
    return merged, few, full


def decode_grayscale(data: bytes) -> tuple[bytes, int, int]:
    """Decode an encoded image (PNG, JPEG) to raw 8-bit grayscale.

    Raises SurfaceUnavailable if the bytes are not a readable image.
    """
    try:
        with Image.open(io.BytesIO(data)) as img:
            gray = img.convert('L')
    except (OSError, SyntaxError, ValueError) as exc:
        raise SurfaceUnavailable(f"undecodable capture: {exc}") from exc
    return gray.tobytes(), gray.width, gray.height
