"""
Standalone FastAPI app wiring for OpsMemory.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI

import core.config as config
from core.db import DB, init_db
from core.mcp import mcp_stream_app, MCPRouteNormalizerASGI
from core.services.notifications import NtfyNotifier
from core.services.refresh_service import knowledge_refresh_loop
from core.services.state_aggregator import StateAggregator
from app.middleware import configure_middleware
from app.routes.health import router as health_router
from app.routes.investigations import router as investigations_router
from app.routes.knowledge import router as knowledge_router
from app.routes.root import router as root_router


refresh_task = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize on startup, cleanup on shutdown."""
    global refresh_task
    init_db()
    refresh_task = asyncio.create_task(
        knowledge_refresh_loop(StateAggregator(), NtfyNotifier())
    )
    try:
        async with mcp_stream_app.lifespan(mcp_stream_app):
            yield
    finally:
        if refresh_task:
            refresh_task.cancel()
            try:
                await refresh_task
            except asyncio.CancelledError:
                pass
        if DB.engine:
            DB.engine.dispose()
        config.logger.info("OpsMemory shut down")


app = FastAPI(title="OpsMemory", redirect_slashes=False, lifespan=lifespan)
configure_middleware(app)

# Health and root endpoints
app.include_router(health_router)
app.include_router(root_router)

# Administrative API
app.include_router(knowledge_router)
app.include_router(investigations_router)

app.mount("/mcp/", mcp_stream_app)


# =============================================================================
# ASGI Application (module-level for production deployment)
# =============================================================================

asgi_app = MCPRouteNormalizerASGI(app)
