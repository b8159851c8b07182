"""Exception types shared across the refresh pipeline."""

from __future__ import annotations


class ContractViolation(ValueError):
    """An integration error: bad input that must be rejected before any state changes."""


class PanelUnavailable(RuntimeError):
    """The panel driver could not be initialised or a write failed.

    Fatal for the running session. Nothing retries a half-written frame;
    the process supervisor decides whether to restart.
    """


class SurfaceUnavailable(RuntimeError):
    """The visual surface could not be captured (page not ready, browser gone)."""
