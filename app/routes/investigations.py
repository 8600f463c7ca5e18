"""
Administrative endpoints for investigations and troubleshooting patterns.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

import core.config as config
from app.deps import raise_for_payload, require_db
from core.services import investigation_service, pattern_service


router = APIRouter(prefix="/api", dependencies=[Depends(require_db)])


class InvestigationCreate(BaseModel):
    thread_id: int
    symptom: str


class StepCreate(BaseModel):
    action: str
    plugin: Optional[str] = None
    result_summary: Optional[str] = None


class ResolveRequest(BaseModel):
    resolution: str


@router.get("/investigations")
def list_investigations(page: int = 1, page_size: int = 20, resolved: Optional[bool] = None):
    return raise_for_payload(
        investigation_service.list_investigations(page=page, page_size=page_size, resolved=resolved)
    )


@router.get("/investigations/search")
def search_investigations(symptom: str, limit: int = config.INCIDENT_SEARCH_LIMIT):
    return raise_for_payload(investigation_service.search_past_incidents(symptom, limit=limit))


@router.get("/investigations/{investigation_id}")
def get_investigation(investigation_id: int):
    return raise_for_payload(investigation_service.get_investigation(investigation_id))["investigation"]


@router.post("/investigations", status_code=201)
def start_investigation(body: InvestigationCreate):
    payload = raise_for_payload(investigation_service.start_investigation(body.thread_id, body.symptom))
    return {"created": payload["created"], "investigation": payload["investigation"]}


@router.post("/investigations/{investigation_id}/steps", status_code=201)
def add_step(investigation_id: int, body: StepCreate):
    payload = investigation_service.record_step(
        investigation_id,
        body.action,
        plugin=body.plugin,
        result_summary=body.result_summary,
    )
    return raise_for_payload(payload)["step"]


@router.post("/investigations/{investigation_id}/resolve")
def resolve_investigation(investigation_id: int, body: ResolveRequest):
    payload = investigation_service.resolve_investigation(investigation_id, body.resolution)
    return raise_for_payload(payload)["investigation"]


@router.get("/patterns")
def list_patterns(limit: int = 50):
    return raise_for_payload(pattern_service.list_patterns(limit=limit))
