"""
Health endpoints: database reachability, schema revision, store counts and
the MCP tool inventory.
"""

from __future__ import annotations

import os

from fastapi import APIRouter, HTTPException
from sqlalchemy import func, text
from sqlalchemy.exc import SQLAlchemyError

import core.config as config
from core.db import DB, _get_schema_revisions
from core.mcp import tool_inventory_status
from core.models import Fact, Investigation, Pattern
from core.services.refresh_service import load_refresh_settings


router = APIRouter()


def _check_db_health(check_schema: bool = True) -> dict:
    if DB.engine is None:
        return {"ok": False, "error": "db_not_initialized"}

    try:
        with DB.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        return {"ok": False, "error": str(exc)}

    status = {"ok": True, "backend": config.DB_BACKEND}
    if check_schema:
        current_rev, head_rev = _get_schema_revisions(DB.engine)
        status["schema_revision"] = current_rev
        status["schema_expected"] = head_rev
        status["ok"] = head_rev is None or current_rev == head_rev
    return status


def _store_counts() -> dict:
    db = DB.SessionLocal()
    try:
        return {
            "valid_facts": db.query(func.count(Fact.id)).filter(Fact.is_valid.is_(True)).scalar(),
            "active_investigations": db.query(func.count(Investigation.id))
            .filter(Investigation.resolved.is_(False))
            .scalar(),
            "patterns": db.query(func.count(Pattern.id)).scalar(),
        }
    finally:
        db.close()


def _refresh_status() -> dict:
    settings = load_refresh_settings()
    return {
        "enabled": settings.enabled,
        "schedule_time": settings.schedule_time.strftime("%H:%M"),
        "timezone": str(settings.timezone),
        "notify_on_changes": settings.notify_on_changes,
    }


@router.get("/health")
async def health():
    db_health = _check_db_health(check_schema=config.HEALTH_CHECK_SCHEMA)
    if not db_health.get("ok"):
        raise HTTPException(status_code=503, detail={"database": db_health})

    return {
        "status": "healthy",
        "service": "OpsMemory",
        "version": "0.1.0",
        "instance_id": os.environ.get("OPSMEMORY_INSTANCE_ID", "opsmemory-1"),
        "database": db_health,
        "store": _store_counts(),
        "knowledge_refresh": _refresh_status(),
    }


@router.get("/health/tools")
async def health_tools():
    """Report the registered MCP tools; 503 when none are registered."""
    tool_inventory = await tool_inventory_status(refresh_if_empty=True, reason="health_check")
    if tool_inventory.get("tool_count", 0) == 0:
        raise HTTPException(status_code=503, detail={"tool_inventory": tool_inventory})

    return {
        "status": "healthy",
        "service": "OpsMemory",
        "tool_inventory": tool_inventory,
    }
