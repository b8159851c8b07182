"""
Pixel-depth conversion from captured 8-bit grayscale to the panel's
packed 4bpp format.

Two policies:
  - FULL: keep the high nibble of every pixel (16 gray levels)
  - FEW:  snap the high nibble to the 4-level palette 0x0/0x6/0xA/0xF,
          which is what the panel's fast waveforms can render cleanly

Two source pixels share one output byte: the even pixel goes in the
low nibble, the odd pixel in the high nibble.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from inkmirror.errors import ContractViolation
from inkmirror.regions import Rect

FEW_LEVEL_PALETTE = (0x0, 0x6, 0xA, 0xF)


class Level(Enum):
    FEW = 'few'
    FULL = 'full'


def _nearest_code(nibble: int) -> int:
    # Ties go to the darker code.
    return min(FEW_LEVEL_PALETTE, key=lambda code: (abs(code - nibble), code))


FEW_LEVEL_SNAP = tuple(_nearest_code(n) for n in range(16))

# Per-byte lookup tables: source byte -> nibble already shifted into place.
_FULL_LOW = bytes(b >> 4 for b in range(256))
_FULL_HIGH = bytes(b & 0xF0 for b in range(256))
_FEW_LOW = bytes(FEW_LEVEL_SNAP[b >> 4] for b in range(256))
_FEW_HIGH = bytes(FEW_LEVEL_SNAP[b >> 4] << 4 for b in range(256))

_OFF_PALETTE = re.compile(
    b'[' + b''.join(re.escape(bytes([b])) for b in range(256)
                    if b >> 4 not in FEW_LEVEL_PALETTE) + b']')


@dataclass
class Frame:
    """Captured 8-bit grayscale pixels of ``rect``. Released after quantization."""

    pixels: bytes
    rect: Rect

    @property
    def width(self) -> int:
        return self.rect.width

    @property
    def height(self) -> int:
        return self.rect.height

    def release(self):
        self.pixels = b''


@dataclass(frozen=True)
class QuantizedFrame:
    """Packed 4bpp pixels ready for exactly one panel write."""

    packed: bytes
    rect: Rect
    level: Level
    mode: int | None


def pack(buffer: bytes, level: Level) -> bytes:
    """Pack 8-bit grayscale into 4bpp under the given policy."""
    if len(buffer) % 2:
        raise ContractViolation(f"quantizer input must hold pixel pairs, got {len(buffer)} bytes")
    if level is Level.FEW:
        low_table, high_table = _FEW_LOW, _FEW_HIGH
    else:
        low_table, high_table = _FULL_LOW, _FULL_HIGH
    count = len(buffer) // 2
    if not count:
        return b''
    low = bytes(buffer[0::2]).translate(low_table)
    high = bytes(buffer[1::2]).translate(high_table)
    # Nibbles never overlap, so a bitwise OR over the whole buffer merges them.
    merged = int.from_bytes(low, 'big') | int.from_bytes(high, 'big')
    return merged.to_bytes(count, 'big')


def unpack(packed: bytes) -> bytes:
    """Expand packed 4bpp back to 8-bit grayscale (nibble replicated)."""
    out = bytearray(len(packed) * 2)
    low = bytes(packed).translate(bytes((b & 0x0F) * 0x11 for b in range(256)))
    high = bytes(packed).translate(bytes((b >> 4) * 0x11 for b in range(256)))
    out[0::2] = low
    out[1::2] = high
    return bytes(out)


def classify_as_few_level(buffer: bytes) -> bool:
    """True when every pixel's high nibble already sits on the 4-level palette."""
    return _OFF_PALETTE.search(buffer) is None


def quantize(frame: Frame, level: Level, mode: int | None) -> QuantizedFrame:
    """Pack ``frame`` and drop its capture buffer."""
    try:
        packed = pack(frame.pixels, level)
    finally:
        frame.release()
    return QuantizedFrame(packed=packed, rect=frame.rect, level=level, mode=mode)
