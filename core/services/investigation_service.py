"""
Incident tracker: per-thread diagnostic sessions, their steps, and
keyword search over past resolutions.

An investigation moves one way, from active to resolved. A thread holds at
most one active investigation at a time.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from core.db import DB
from core.errors import ActiveInvestigationError, InvalidStateIssue, NotFoundIssue
from core.models import Investigation, InvestigationStep, utcnow
import core.config as config
from core.services.pattern_service import find_relevant_patterns, record_resolution_pattern
from core.services.shared import (
    _validate_limit,
    _validate_optional_text,
    _validate_page,
    _validate_required_text,
    _validate_thread_id,
    format_age,
    logger,
    paged_result,
    serialize_investigation,
    serialize_step,
    service_tool,
    tokenize_query,
    MAX_PAGE_SIZE,
    MAX_RESULT_LIMIT,
    MAX_SHORT_TEXT_LENGTH,
    MAX_TEXT_LENGTH,
)


def _active_for_thread(db, thread_id: int) -> Optional[Investigation]:
    return (
        db.query(Investigation)
        .filter(Investigation.thread_id == thread_id, Investigation.resolved.is_(False))
        .order_by(Investigation.started_at.desc(), Investigation.id.desc())
        .first()
    )


def _load_investigation(db, investigation_id: int) -> Investigation:
    investigation = db.get(Investigation, investigation_id)
    if investigation is None:
        raise NotFoundIssue(
            f"investigation {investigation_id} not found",
            field="investigation_id",
        )
    return investigation


def _score_incident(investigation: Investigation, tokens: list[str]) -> int:
    trigger = investigation.trigger.lower()
    resolution = (investigation.resolution or "").lower()
    return sum(1 for token in tokens if token in trigger or token in resolution)


def find_past_incidents(db, symptom_query: str, limit: int) -> list[Investigation]:
    tokens = tokenize_query(symptom_query)
    if not tokens:
        return []

    recent = (
        db.query(Investigation)
        .filter(Investigation.resolved.is_(True))
        .order_by(Investigation.started_at.desc(), Investigation.id.desc())
        .limit(config.INCIDENT_SEARCH_POOL)
        .all()
    )
    # `recent` is already newest-first, so a stable sort on score keeps recency as tiebreak.
    scored = [(inv, _score_incident(inv, tokens)) for inv in recent]
    scored = [item for item in scored if item[1] > 0]
    scored.sort(key=lambda item: item[1], reverse=True)
    return [inv for inv, _ in scored[:limit]]


# =============================================================================
# Lifecycle
# =============================================================================

@service_tool
def start_investigation(thread_id: int, symptom: str) -> dict:
    """
    Open an investigation for a thread, or return the one already active.

    Returns:
        ``{"status": "active" | "started", "created": bool, "investigation": {...}}``

    Raises:
        ActiveInvestigationError: the store could not be read or written.
    """
    _validate_thread_id(thread_id)
    _validate_required_text(symptom, "symptom", MAX_TEXT_LENGTH)

    db = DB.SessionLocal()
    try:
        existing = _active_for_thread(db, thread_id)
        if existing:
            return {
                "status": "active",
                "created": False,
                "investigation": serialize_investigation(existing),
            }

        investigation = Investigation(
            thread_id=thread_id,
            trigger=symptom,
            started_at=utcnow(),
            resolved=False,
        )
        db.add(investigation)
        db.commit()
        logger.info(
            "Started investigation",
            extra={"investigation_id": investigation.id, "thread_id": thread_id},
        )
        return {
            "status": "started",
            "created": True,
            "investigation": serialize_investigation(investigation),
        }
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Failed to start investigation", extra={"thread_id": thread_id}, exc_info=exc)
        raise ActiveInvestigationError(
            f"could not start investigation for thread {thread_id}"
        ) from exc
    finally:
        db.close()


@service_tool
def get_active_investigation(thread_id: int) -> dict:
    _validate_thread_id(thread_id)

    db = DB.SessionLocal()
    try:
        investigation = _active_for_thread(db, thread_id)
        if investigation is None:
            return {"status": "none", "investigation": None}
        return {"status": "active", "investigation": serialize_investigation(investigation)}
    finally:
        db.close()


@service_tool
def record_step(
    investigation_id: int,
    action: str,
    plugin: Optional[str] = None,
    result_summary: Optional[str] = None,
) -> dict:
    _validate_required_text(action, "action", MAX_TEXT_LENGTH)
    _validate_optional_text(plugin, "plugin", MAX_SHORT_TEXT_LENGTH)
    _validate_optional_text(result_summary, "result_summary", MAX_TEXT_LENGTH)

    db = DB.SessionLocal()
    try:
        investigation = _load_investigation(db, investigation_id)
        if investigation.resolved:
            raise InvalidStateIssue(
                f"investigation {investigation_id} is already resolved",
                field="investigation_id",
            )

        step = InvestigationStep(
            investigation_id=investigation.id,
            action=action,
            plugin=plugin,
            result_summary=result_summary,
            timestamp=utcnow(),
        )
        db.add(step)
        db.commit()
        logger.debug("Recorded step for investigation %s: %s", investigation_id, action)
        return {"status": "recorded", "investigation_id": investigation_id, "step": serialize_step(step)}
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@service_tool
def resolve_investigation(investigation_id: int, resolution: str) -> dict:
    """
    Close an investigation. When steps were recorded, the pattern index is
    updated in the same transaction.
    """
    _validate_optional_text(resolution, "resolution", MAX_TEXT_LENGTH)

    db = DB.SessionLocal()
    try:
        investigation = _load_investigation(db, investigation_id)
        if investigation.resolved:
            raise InvalidStateIssue(
                f"investigation {investigation_id} is already resolved",
                field="investigation_id",
            )

        investigation.resolved = True
        investigation.resolution = resolution
        if investigation.steps:
            record_resolution_pattern(db, investigation)
        db.commit()
        logger.info("Resolved investigation", extra={"investigation_id": investigation_id})
        return {"status": "resolved", "investigation": serialize_investigation(investigation)}
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


# =============================================================================
# Search and context
# =============================================================================

@service_tool
def search_past_incidents(symptom_query: str, limit: int = config.INCIDENT_SEARCH_LIMIT) -> dict:
    _validate_optional_text(symptom_query, "symptom_query", MAX_TEXT_LENGTH)
    _validate_limit(limit, "limit", MAX_RESULT_LIMIT)

    db = DB.SessionLocal()
    try:
        incidents = find_past_incidents(db, symptom_query or "", limit)
        return {
            "count": len(incidents),
            "query": symptom_query,
            "results": [serialize_investigation(inv) for inv in incidents],
        }
    finally:
        db.close()


def generate_incident_context(symptom: str) -> str:
    """Markdown digest of known patterns and similar resolved incidents."""
    db = DB.SessionLocal()
    try:
        patterns = find_relevant_patterns(db, symptom, config.PATTERN_MATCH_LIMIT)
        incidents = find_past_incidents(db, symptom, config.INCIDENT_SEARCH_LIMIT)

        if not patterns and not incidents:
            return ""

        lines = ["", "## Relevant Past Incidents"]
        if patterns:
            lines.extend(["", "### Known Patterns"])
            for pattern in patterns:
                lines.append(f"- **{pattern.symptom}**: Usually caused by {pattern.common_cause}")
                if pattern.resolution:
                    lines.append(f"  Fix: {pattern.resolution}")

        if incidents:
            now = utcnow()
            lines.extend(["", "### Similar Past Issues"])
            for incident in incidents:
                lines.append(f"- [{format_age(incident.started_at, now)}] {incident.trigger}")
                if incident.resolution:
                    lines.append(f"  Resolved: {incident.resolution}")
        return "\n".join(lines) + "\n"
    finally:
        db.close()


# =============================================================================
# Administrative operations
# =============================================================================

@service_tool
def list_investigations(
    page: int = 1,
    page_size: int = 20,
    resolved: Optional[bool] = None,
) -> dict:
    _validate_page(page, page_size, MAX_PAGE_SIZE)

    db = DB.SessionLocal()
    try:
        query = db.query(Investigation)
        if resolved is not None:
            query = query.filter(Investigation.resolved.is_(resolved))

        total_count = query.with_entities(func.count(Investigation.id)).scalar()
        investigations = (
            query.order_by(Investigation.started_at.desc(), Investigation.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )
        items = [serialize_investigation(inv, include_steps=False) for inv in investigations]
        return paged_result(items, total_count, page, page_size)
    finally:
        db.close()


@service_tool
def get_investigation(investigation_id: int) -> dict:
    db = DB.SessionLocal()
    try:
        investigation = _load_investigation(db, investigation_id)
        return {"status": "found", "investigation": serialize_investigation(investigation)}
    finally:
        db.close()
