"""
Host application channel.

The host talks to the mirror through two inbound messages:
  - CONFIG:       delivered once, carries every tunable (see config.py)
  - FULL_REFRESH: optional boolean payload; true or absent forces full
                  fidelity, false lets the few-level shortcut apply

The transport (HTTP, a socket, a CLI flag) lives elsewhere; this class
only gives the messages their meaning.
"""

from __future__ import annotations

import logging
from typing import Any

from inkmirror.config import RefreshConfig
from inkmirror.coordinator import RefreshCoordinator
from inkmirror.errors import ContractViolation

logger = logging.getLogger(__name__)

CONFIG = 'CONFIG'
FULL_REFRESH = 'FULL_REFRESH'


def full_refresh_forced(payload: Any) -> bool:
    """Anything but an explicit ``False`` asks for full fidelity."""
    return payload if isinstance(payload, bool) else True


class HostChannel:
    """Dispatches host messages to the coordinator."""

    def __init__(self, coordinator: RefreshCoordinator):
        self.coordinator = coordinator

    async def receive(self, notification: str, payload: Any = None) -> None:
        if notification == CONFIG:
            await self.configure(payload)
        elif notification == FULL_REFRESH:
            await self.full_refresh(payload)
        else:
            raise ContractViolation(f"unknown notification: {notification!r}")

    async def configure(self, payload: Any) -> RefreshConfig:
        if self.coordinator.configured:
            raise ContractViolation("configuration received twice")
        if isinstance(payload, RefreshConfig):
            config = payload
        else:
            config = RefreshConfig.from_payload(payload)
        logger.info("Configuration received (mock=%s, debounce=%s, interval=%s)",
                    config.mock, config.debounce_delay, config.full_refresh_interval)
        await self.coordinator.start(config)
        return config

    async def full_refresh(self, payload: Any = None) -> bool:
        """Run a full refresh. Returns False when the panel is not configured yet."""
        if self.coordinator.state is None:
            logger.warning("Full refresh requested before configuration; ignored")
            return False
        await self.coordinator.request_full_refresh(full_refresh_forced(payload))
        return True
