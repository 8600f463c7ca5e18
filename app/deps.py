"""
Dependency helpers for the standalone FastAPI app.
"""

from __future__ import annotations

from fastapi import HTTPException

from core.db import DB

ERROR_STATUS_CODES = {
    "not_found": 404,
    "invalid_state": 400,
    "persistence_error": 500,
}


def require_db() -> None:
    if DB.SessionLocal is None:
        raise HTTPException(status_code=503, detail={"error": "db_not_initialized"})


def raise_for_payload(payload: dict) -> dict:
    """Turn a service error payload into an HTTP error; pass results through."""
    if payload.get("status") != "error":
        return payload
    status_code = ERROR_STATUS_CODES.get(payload.get("error_type"), 422)
    raise HTTPException(
        status_code=status_code,
        detail={
            "error_type": payload.get("error_type"),
            "field": payload.get("field"),
            "message": payload.get("message"),
        },
    )
