"""
Root endpoint with service metadata.
"""

from __future__ import annotations

from fastapi import APIRouter

import core.config as config


router = APIRouter()


@router.get("/")
async def root():
    """Root endpoint with service info."""
    return {
        "service": "OpsMemory",
        "version": "0.1.0",
        "description": "Operational memory for a homelab assistant",
        "db_backend": config.DB_BACKEND,
        "endpoints": {
            "health": "/health",
            "health_tools": "/health/tools",
            "mcp": "/mcp",
            "knowledge": "/api/knowledge",
            "investigations": "/api/investigations",
            "patterns": "/api/patterns",
        },
    }
