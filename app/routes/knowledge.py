"""
Administrative endpoints for the fact store.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel

from app.deps import raise_for_payload, require_db
from core.services import knowledge_service


router = APIRouter(prefix="/api/knowledge", dependencies=[Depends(require_db)])


class FactCreate(BaseModel):
    topic: str
    fact: str
    context: Optional[str] = None
    confidence: Optional[float] = None
    source: Optional[str] = None


class FactUpdate(BaseModel):
    topic: Optional[str] = None
    fact: Optional[str] = None
    context: Optional[str] = None
    confidence: Optional[float] = None
    is_valid: Optional[bool] = None


@router.get("")
def list_knowledge(
    page: int = 1,
    page_size: int = 20,
    topic: Optional[str] = None,
    is_valid: Optional[bool] = None,
):
    return raise_for_payload(
        knowledge_service.list_facts(page=page, page_size=page_size, topic=topic, is_valid=is_valid)
    )


@router.get("/topics")
def list_topics():
    return raise_for_payload(knowledge_service.get_all_topics())


@router.get("/{fact_id}")
def get_knowledge(fact_id: int):
    return raise_for_payload(knowledge_service.get_fact(fact_id))["fact"]


@router.get("/{fact_id}/chain")
def get_correction_chain(fact_id: int):
    return raise_for_payload(knowledge_service.get_correction_chain(fact_id))


@router.post("", status_code=201)
def create_knowledge(body: FactCreate):
    payload = knowledge_service.create_fact(
        topic=body.topic,
        fact=body.fact,
        context=body.context,
        confidence=body.confidence,
        source=body.source,
    )
    return raise_for_payload(payload)["fact"]


@router.put("/{fact_id}")
def update_knowledge(fact_id: int, body: FactUpdate):
    payload = knowledge_service.update_fact(
        fact_id,
        topic=body.topic,
        fact=body.fact,
        context=body.context,
        confidence=body.confidence,
        is_valid=body.is_valid,
    )
    return raise_for_payload(payload)["fact"]


@router.delete("/{fact_id}", status_code=204)
def delete_knowledge(fact_id: int):
    raise_for_payload(knowledge_service.soft_delete_fact(fact_id))
    return Response(status_code=204)
