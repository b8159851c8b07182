"""HTTP transport for the host channel.

Serves the FastAPI app from the same event loop as the coordinator so
requests can await refresh operations directly.
"""

from __future__ import annotations

import asyncio
import logging
import socket
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from inkmirror.host import HostChannel

logger = logging.getLogger(__name__)


def get_local_ip() -> str:
    """Get the Pi's local network IP address."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.connect(("8.8.8.8", 80))
            return s.getsockname()[0]
    except OSError:
        return "127.0.0.1"


def get_web_url(port: int = 8000) -> str:
    return f"http://{get_local_ip()}:{port}"


def start_server(channel: HostChannel, host: str = "0.0.0.0",
                 port: int = 8000) -> asyncio.Task:
    """Start uvicorn as a task on the running loop."""
    import uvicorn

    from inkmirror.web.server import create_app

    app = create_app(channel)
    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="warning"))
    # The coordinator owns signal handling.
    server.install_signal_handlers = lambda: None
    task = asyncio.get_running_loop().create_task(server.serve())
    logger.info("Host channel listening on %s", get_web_url(port))
    return task
