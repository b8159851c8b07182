"""Shared test fixtures."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from inkmirror.config import RefreshConfig
from inkmirror.display.sim import SimPanel
from inkmirror.surface.image import ImageSurface


@pytest.fixture
def sim_panel():
    """SimPanel with no file output (fast, in-memory only)."""
    return SimPanel(width=128, height=96)


@pytest.fixture
def surface():
    """Small white canvas matching the mock config geometry."""
    return ImageSurface(128, 96)


@pytest.fixture
def mock_config():
    """Mock-mode config with no debounce and no periodic refresh."""
    return RefreshConfig(mock=True, width=128, height=96,
                         debounce_delay=0.0, full_refresh_interval=None)


@pytest.fixture
def hw_driver():
    """MagicMock standing in for a real panel driver."""
    d = MagicMock()
    d.width = 128
    d.height = 96
    return d

