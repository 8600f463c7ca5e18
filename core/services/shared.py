"""
Shared helpers and configuration for knowledge and incident services.
"""

from __future__ import annotations

from datetime import datetime
from functools import wraps
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

import core.config as config
from core.errors import ValidationIssue
from core.models import Fact, Investigation, InvestigationStep, Pattern, as_utc, utcnow
from core.validators import (
    validate_required_text as _validate_required_text,
    validate_optional_text as _validate_optional_text,
    validate_limit as _validate_limit,
    validate_page as _validate_page,
    validate_number as _validate_number,
    validate_source as _validate_source,
    validate_thread_id as _validate_thread_id,
)

# =============================================================================
# Configuration
# =============================================================================

logger = config.logger

MAX_RESULT_LIMIT = config.MAX_RESULT_LIMIT
MAX_PAGE_SIZE = config.MAX_PAGE_SIZE
MAX_TOPIC_LENGTH = config.MAX_TOPIC_LENGTH
MAX_TEXT_LENGTH = config.MAX_TEXT_LENGTH
MAX_SHORT_TEXT_LENGTH = config.MAX_SHORT_TEXT_LENGTH

DEFAULT_FACT_CONFIDENCE = config.DEFAULT_FACT_CONFIDENCE
STALE_CONFIDENCE_THRESHOLD = config.STALE_CONFIDENCE_THRESHOLD

SECONDS_PER_DAY = 86400.0


# =============================================================================
# Helper Functions
# =============================================================================

def _tool_error_payload(tool_name: str, exc: ValidationIssue) -> dict:
    return {
        "status": "error",
        "error_type": exc.error_type,
        "tool": tool_name,
        "field": exc.field,
        "message": str(exc),
    }


def _log_validation_issue(tool_name: str, exc: ValidationIssue, warn: bool = False) -> None:
    payload = {
        "tool": tool_name,
        "field": exc.field,
        "error_type": exc.error_type,
        "detail": str(exc),
    }
    if warn:
        logger.warning("tool_validation_error", extra=payload)
    else:
        logger.info("tool_validation_error", extra=payload)


def _tool_error_handler(fn: Callable[..., dict]) -> Callable[..., dict]:
    @wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except ValidationIssue as exc:
            _log_validation_issue(fn.__name__, exc, warn=False)
            return _tool_error_payload(fn.__name__, exc)
        except ValueError as exc:
            issue = ValidationIssue(str(exc), field="unknown", error_type="value_error")
            _log_validation_issue(fn.__name__, issue, warn=True)
            return _tool_error_payload(fn.__name__, issue)
        except SQLAlchemyError as exc:
            logger.error(
                "tool_persistence_error",
                extra={"tool": fn.__name__, "arguments": _describe_arguments(args, kwargs)},
                exc_info=exc,
            )
            issue = ValidationIssue(
                f"{fn.__name__} could not be persisted",
                field="database",
                error_type="persistence_error",
            )
            return _tool_error_payload(fn.__name__, issue)
    return wrapper


def service_tool(fn: Callable[..., dict]) -> Callable[..., dict]:
    return _tool_error_handler(fn)


def _describe_arguments(args: tuple, kwargs: dict) -> dict:
    described = {f"arg{index}": _short_repr(value) for index, value in enumerate(args)}
    described.update({key: _short_repr(value) for key, value in kwargs.items()})
    return described


def _short_repr(value, max_len: int = 120) -> str:
    text = repr(value)
    return text if len(text) <= max_len else text[: max_len - 3] + "..."


def clamp_confidence(value: float) -> float:
    if value < 0.0:
        return 0.0
    if value > 1.0:
        return 1.0
    return value


def days_since(timestamp: Optional[datetime], now: Optional[datetime] = None) -> Optional[float]:
    if timestamp is None:
        return None
    reference = as_utc(now) if now is not None else utcnow()
    return (reference - as_utc(timestamp)).total_seconds() / SECONDS_PER_DAY


def tokenize_query(query: str) -> list[str]:
    """Lower-cased whitespace tokens used by every keyword match."""
    return query.lower().split()


def topic_category(topic: str) -> str:
    return topic.split(":", 1)[0]


def format_age(timestamp: datetime, now: Optional[datetime] = None, long_units: bool = False) -> str:
    age_days = days_since(timestamp, now) or 0.0
    if age_days > 1:
        return f"{int(age_days)} days ago" if long_units else f"{int(age_days)}d ago"
    hours = int(age_days * 24)
    return f"{hours} hours ago" if long_units else f"{hours}h ago"


def _iso(value: Optional[datetime]) -> Optional[str]:
    normalized = as_utc(value)
    return normalized.isoformat() if normalized else None


# =============================================================================
# Serialization
# =============================================================================

def serialize_fact(fact: Fact) -> dict:
    return {
        "id": fact.id,
        "topic": fact.topic,
        "fact": fact.fact,
        "context": fact.context,
        "confidence": fact.confidence,
        "source": fact.source,
        "is_valid": fact.is_valid,
        "last_verified": _iso(fact.last_verified),
        "contradicts_id": fact.contradicts_id,
        "created_at": _iso(fact.created_at),
        "last_used": _iso(fact.last_used),
    }


def serialize_step(step: InvestigationStep) -> dict:
    return {
        "id": step.id,
        "action": step.action,
        "plugin": step.plugin,
        "result_summary": step.result_summary,
        "timestamp": _iso(step.timestamp),
    }


def serialize_investigation(investigation: Investigation, include_steps: bool = True) -> dict:
    payload = {
        "id": investigation.id,
        "thread_id": investigation.thread_id,
        "trigger": investigation.trigger,
        "started_at": _iso(investigation.started_at),
        "resolved": investigation.resolved,
        "resolution": investigation.resolution,
        "step_count": len(investigation.steps),
    }
    if include_steps:
        payload["steps"] = [serialize_step(step) for step in investigation.steps]
    return payload


def serialize_pattern(pattern: Pattern) -> dict:
    return {
        "id": pattern.id,
        "symptom": pattern.symptom,
        "common_cause": pattern.common_cause,
        "resolution": pattern.resolution,
        "occurrence_count": pattern.occurrence_count,
        "last_seen": _iso(pattern.last_seen),
    }


def paged_result(items: list[dict], total_count: int, page: int, page_size: int) -> dict:
    return {
        "items": items,
        "total_count": total_count,
        "page": page,
        "page_size": page_size,
    }
