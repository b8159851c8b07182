"""
Rectangle geometry for damage regions.

The IT8951 writes in fixed-size blocks, so every region is snapped
outward to the write granularity before it is captured and drawn.

Usage:
    from inkmirror.regions import Rect, align

    rect = align(Rect(0, 0, 40, 40), 32)   # Rect(0, 0, 64, 64)
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from inkmirror.errors import ContractViolation

GRANULARITY = 32  # Panel write block size in pixels


@dataclass(frozen=True)
class Rect:
    """Half-open box in surface pixel coordinates."""

    left: int
    top: int
    right: int
    bottom: int

    def __post_init__(self):
        if self.left >= self.right or self.top >= self.bottom:
            raise ContractViolation(f"degenerate rectangle: {self.as_tuple()}")

    @classmethod
    def from_size(cls, x: int, y: int, width: int, height: int) -> Rect:
        return cls(x, y, x + width, y + height)

    @property
    def width(self) -> int:
        return self.right - self.left

    @property
    def height(self) -> int:
        return self.bottom - self.top

    def as_tuple(self) -> tuple[int, int, int, int]:
        return (self.left, self.top, self.right, self.bottom)

    def clip(self, width: int, height: int) -> Rect:
        """Clamp to a ``width`` x ``height`` surface. Raises if nothing is left."""
        return Rect(max(0, self.left), max(0, self.top),
                    min(width, self.right), min(height, self.bottom))


class LevelHint(Enum):
    """Authoring-level tag carried by a damage notification."""

    UNKNOWN = 'unknown'
    FORCE_FEW = 'force_few'
    FORCE_FULL = 'force_full'

    @classmethod
    def from_tags(cls, few: bool, full: bool) -> LevelHint:
        # A few-level tag wins when an element sits under both markers.
        if few:
            return cls.FORCE_FEW
        if full:
            return cls.FORCE_FULL
        return cls.UNKNOWN


@dataclass(frozen=True)
class DamageRegion:
    rect: Rect
    hint: LevelHint = LevelHint.UNKNOWN


def align_down(rect: Rect, granularity: int = GRANULARITY) -> Rect:
    """Round left/top down to a multiple of ``granularity``."""
    return Rect(rect.left // granularity * granularity,
                rect.top // granularity * granularity,
                rect.right, rect.bottom)


def align_up(rect: Rect, granularity: int = GRANULARITY) -> Rect:
    """Round right/bottom up to a multiple of ``granularity``."""
    return Rect(rect.left, rect.top,
                -(-rect.right // granularity) * granularity,
                -(-rect.bottom // granularity) * granularity)


def align(rect: Rect, granularity: int = GRANULARITY) -> Rect:
    """Expand ``rect`` outward so all four bounds sit on the block grid."""
    return align_up(align_down(rect, granularity), granularity)


def union(a: Rect, b: Rect) -> Rect:
    """Smallest rectangle containing both ``a`` and ``b``."""
    return Rect(min(a.left, b.left), min(a.top, b.top),
                max(a.right, b.right), max(a.bottom, b.bottom))
