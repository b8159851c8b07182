"""
Refresh-mode classification.

Decides, per region, whether it is drawn with the 4-level palette and a
fast waveform or with all 16 gray levels and the driver's default
waveform. Authoring tags decide first; pixel content decides last.
"""

from __future__ import annotations

from enum import Enum
from typing import Iterable

from inkmirror.display import MODE_DU4, MODE_GLD16
from inkmirror.quantize import Level, classify_as_few_level
from inkmirror.regions import LevelHint


class PanelVariant(str, Enum):
    STANDARD = 'standard'   # 7.8"/10.3" Waveshare HATs
    SIX_INCH = 'six_inch'   # 6" Kindle-class glass


# Waveform per (panel variant, level). None = driver default.
WAVEFORMS: dict[PanelVariant, dict[Level, int | None]] = {
    PanelVariant.STANDARD: {Level.FEW: MODE_DU4, Level.FULL: None},
    PanelVariant.SIX_INCH: {Level.FEW: MODE_GLD16, Level.FULL: None},
}


def resolve_hint(hint: LevelHint, prefer_few_level: bool) -> Level | None:
    """Resolve a level from tags alone; None means "look at the pixels"."""
    if hint is LevelHint.FORCE_FEW:
        return Level.FEW
    if prefer_few_level and hint is not LevelHint.FORCE_FULL:
        return Level.FEW
    return None


def resolve_level(hint: LevelHint, pixels: bytes, prefer_few_level: bool) -> Level:
    level = resolve_hint(hint, prefer_few_level)
    if level is not None:
        return level
    return Level.FEW if classify_as_few_level(pixels) else Level.FULL


def area_is_few_level(hint: LevelHint, prefer_few_level: bool) -> bool:
    return resolve_hint(hint, prefer_few_level) is Level.FEW


def resolve_full_refresh(hints: Iterable[LevelHint], prefer_few_level: bool,
                         force_full: bool) -> Level | None:
    """Level for a full-frame refresh.

    FEW only when every visible content area is few-level eligible on
    its own; a page with no visible areas counts as eligible. Returns
    None when the frame's pixels should decide.
    """
    if force_full:
        return Level.FULL
    if all(area_is_few_level(hint, prefer_few_level) for hint in hints):
        return Level.FEW
    return None


def waveform_for(level: Level, variant: PanelVariant = PanelVariant.STANDARD) -> int | None:
    return WAVEFORMS[variant][level]
