"""
Pattern index: recurring symptom → cause → resolution triples distilled
from resolved investigations.
"""

from __future__ import annotations

from core.db import DB
from core.models import Investigation, Pattern, utcnow
import core.config as config
from core.services.shared import (
    _validate_limit,
    _validate_required_text,
    logger,
    serialize_pattern,
    service_tool,
    tokenize_query,
    MAX_RESULT_LIMIT,
    MAX_TEXT_LENGTH,
)


def _summarize_cause(investigation: Investigation) -> str:
    summaries = [
        step.result_summary
        for step in investigation.steps
        if step.result_summary and step.result_summary.strip()
    ]
    cause = "; ".join(summaries)
    max_len = config.PATTERN_CAUSE_MAX_LENGTH
    if len(cause) > max_len:
        cause = cause[: max_len - 3] + "..."
    return cause


def record_resolution_pattern(db, investigation: Investigation) -> Pattern | None:
    """
    Fold a just-resolved investigation into the pattern index.

    Runs inside the caller's session; the caller commits. An existing
    pattern with the exact trigger text is bumped, otherwise a new one is
    created when there is a resolution to remember.
    """
    existing = (
        db.query(Pattern)
        .filter(Pattern.symptom == investigation.trigger)
        .order_by(Pattern.id.asc())
        .first()
    )
    resolution = investigation.resolution

    if existing:
        existing.occurrence_count += 1
        existing.last_seen = utcnow()
        if resolution:
            existing.resolution = resolution
        logger.info(
            "Pattern occurrence recorded",
            extra={"pattern_id": existing.id, "occurrence_count": existing.occurrence_count},
        )
        return existing

    if not resolution:
        return None

    pattern = Pattern(
        symptom=investigation.trigger,
        common_cause=_summarize_cause(investigation),
        resolution=resolution,
        occurrence_count=1,
        last_seen=utcnow(),
    )
    db.add(pattern)
    logger.info("New pattern extracted", extra={"investigation_id": investigation.id})
    return pattern


def find_relevant_patterns(db, symptom_query: str, limit: int) -> list[Pattern]:
    # Only the most frequent candidates are considered, then filtered.
    tokens = tokenize_query(symptom_query)
    candidates = (
        db.query(Pattern)
        .order_by(Pattern.occurrence_count.desc(), Pattern.id.asc())
        .limit(config.PATTERN_CANDIDATE_POOL)
        .all()
    )
    matches = [
        pattern for pattern in candidates
        if any(token in pattern.symptom.lower() for token in tokens)
    ]
    return matches[:limit]


@service_tool
def get_relevant_patterns(symptom_query: str, limit: int = config.PATTERN_MATCH_LIMIT) -> dict:
    _validate_required_text(symptom_query, "symptom_query", MAX_TEXT_LENGTH)
    _validate_limit(limit, "limit", MAX_RESULT_LIMIT)

    db = DB.SessionLocal()
    try:
        patterns = find_relevant_patterns(db, symptom_query, limit)
        return {
            "count": len(patterns),
            "query": symptom_query,
            "results": [serialize_pattern(pattern) for pattern in patterns],
        }
    finally:
        db.close()


@service_tool
def list_patterns(limit: int = 50) -> dict:
    _validate_limit(limit, "limit", MAX_RESULT_LIMIT)

    db = DB.SessionLocal()
    try:
        patterns = (
            db.query(Pattern)
            .order_by(Pattern.occurrence_count.desc(), Pattern.last_seen.desc(), Pattern.id.asc())
            .limit(limit)
            .all()
        )
        return {"count": len(patterns), "results": [serialize_pattern(p) for p in patterns]}
    finally:
        db.close()
