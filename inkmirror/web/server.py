"""FastAPI server exposing the host channel over HTTP."""

from __future__ import annotations

import asyncio
import io
from typing import TYPE_CHECKING, Optional

from fastapi import Body, FastAPI, HTTPException
from fastapi.responses import Response

from inkmirror.config import RefreshConfig
from inkmirror.errors import ContractViolation, PanelUnavailable

if TYPE_CHECKING:
    from inkmirror.host import HostChannel


def create_app(channel: HostChannel) -> FastAPI:
    app = FastAPI(title="inkmirror")
    coordinator = channel.coordinator
    background: set[asyncio.Task] = set()

    @app.get("/api/status")
    def get_status():
        return coordinator.status()

    @app.post("/api/config")
    async def post_config(config: RefreshConfig):
        # Startup draws the first full frame before this returns.
        try:
            await channel.configure(config)
        except ContractViolation as e:
            status = 409 if coordinator.configured else 422
            raise HTTPException(status, str(e))
        except PanelUnavailable as e:
            raise HTTPException(503, str(e))
        return {"ok": True, "mock": config.mock}

    @app.post("/api/refresh", status_code=202)
    async def post_refresh(force_full: Optional[bool] = Body(None)):
        if coordinator.state is None:
            raise HTTPException(409, "Not configured")
        task = asyncio.create_task(channel.full_refresh(force_full))
        background.add(task)
        task.add_done_callback(background.discard)
        return {"ok": True, "force_full": force_full is not False}

    @app.get("/api/preview")
    def get_preview():
        state = coordinator.state
        framebuffer = getattr(state.driver, "framebuffer", None) if state else None
        if framebuffer is None:
            raise HTTPException(501, "Preview not available (no simulator panel)")
        buf = io.BytesIO()
        framebuffer.save(buf, format="PNG")
        return Response(
            content=buf.getvalue(),
            media_type="image/png",
            headers={"Cache-Control": "no-cache"},
        )

    return app
