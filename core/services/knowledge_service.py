"""
Knowledge (fact store) services.

Facts are confidence-weighted assertions grouped by hierarchical topic
("docker:nginx", "alias:mac"). Rows are never hard-deleted: invalidation
flips ``is_valid`` so correction chains stay reconstructable.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import func, or_

from core.db import DB
from core.errors import NotFoundIssue
from core.models import Fact, FactSource, utcnow
import core.config as config
from core.services.shared import (
    _validate_number,
    _validate_optional_text,
    _validate_page,
    _validate_required_text,
    _validate_source,
    clamp_confidence,
    days_since,
    logger,
    paged_result,
    serialize_fact,
    service_tool,
    topic_category,
    DEFAULT_FACT_CONFIDENCE,
    MAX_PAGE_SIZE,
    MAX_SHORT_TEXT_LENGTH,
    MAX_TEXT_LENGTH,
    MAX_TOPIC_LENGTH,
    STALE_CONFIDENCE_THRESHOLD,
)

ALIAS_SEPARATOR = "→"
ALIAS_QUOTES = "\"'"
STALE_MARKER = " ⚠️"


def _topic_filter(topic: str):
    return or_(
        Fact.topic == topic,
        Fact.topic.startswith(topic + ":", autoescape=True),
    )


def _find_valid_fact(db, topic: str, fact: str) -> Optional[Fact]:
    return (
        db.query(Fact)
        .filter(Fact.topic == topic, Fact.fact == fact, Fact.is_valid.is_(True))
        .order_by(Fact.id.asc())
        .first()
    )


def _valid_facts_containing(db, topic: str, fragment: str) -> list[Fact]:
    # Substring matching happens in Python so it is case-sensitive on every backend.
    rows = (
        db.query(Fact)
        .filter(Fact.topic == topic, Fact.is_valid.is_(True))
        .order_by(Fact.id.asc())
        .all()
    )
    return [row for row in rows if fragment in row.fact]


def _is_stale(fact: Fact, now: Optional[datetime] = None) -> bool:
    age = days_since(fact.last_verified, now)
    return age is not None and age > config.VERIFY_DECAY_AFTER_DAYS


def parse_alias(fact_text: str) -> Optional[tuple[str, str]]:
    """Split an alias fact ``"name" → "value"`` into its name and value."""
    parts = fact_text.split(ALIAS_SEPARATOR, 1)
    if len(parts) != 2:
        return None
    name = parts[0].strip().strip(ALIAS_QUOTES)
    value = parts[1].strip().strip(ALIAS_QUOTES)
    return name, value


def format_alias(name: str, value: str) -> str:
    return f"\"{name}\" {ALIAS_SEPARATOR} \"{value}\""


# =============================================================================
# Tool-facing operations
# =============================================================================

@service_tool
def remember_fact(
    topic: str,
    fact: str,
    context: Optional[str] = None,
    source: str = FactSource.discovered.value,
    confidence: float = DEFAULT_FACT_CONFIDENCE,
) -> dict:
    """
    Store a fact, merging into an existing valid copy of the same text.

    Re-asserting a valid ``(topic, fact)`` pair raises its confidence to
    the max of old and new and refreshes ``last_verified`` instead of
    inserting a second row.

    Returns:
        ``{"status": "stored" | "merged", "fact": {...}}``
    """
    _validate_required_text(topic, "topic", MAX_TOPIC_LENGTH)
    _validate_required_text(fact, "fact", MAX_TEXT_LENGTH)
    _validate_optional_text(context, "context", MAX_TEXT_LENGTH)
    _validate_source(source)
    _validate_number(confidence, "confidence")
    confidence = clamp_confidence(float(confidence))

    db = DB.SessionLocal()
    try:
        now = utcnow()
        existing = _find_valid_fact(db, topic, fact)
        if existing:
            existing.last_verified = now
            existing.confidence = clamp_confidence(max(existing.confidence, confidence))
            db.commit()
            return {"status": "merged", "fact": serialize_fact(existing)}

        record = Fact(
            topic=topic,
            fact=fact,
            context=context,
            source=source,
            confidence=confidence,
            last_verified=now,
        )
        db.add(record)
        db.commit()
        logger.debug("Remembered: [%s] %s", topic, fact)
        return {"status": "stored", "fact": serialize_fact(record)}
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@service_tool
def recall(topic: Optional[str] = None, include_stale: bool = False) -> dict:
    """
    Return valid facts for a topic (exact or ``topic:`` prefix), most
    confident first. Every returned fact is stamped as used.
    """
    _validate_optional_text(topic, "topic", MAX_TOPIC_LENGTH)

    db = DB.SessionLocal()
    try:
        query = db.query(Fact).filter(Fact.is_valid.is_(True))
        if topic:
            query = query.filter(_topic_filter(topic))
        facts = query.order_by(Fact.confidence.desc(), Fact.id.asc()).all()

        now = utcnow()
        for fact in facts:
            fact.last_used = now
        db.commit()

        if not include_stale:
            facts = [fact for fact in facts if fact.confidence > STALE_CONFIDENCE_THRESHOLD]

        return {
            "count": len(facts),
            "filters": {"topic": topic, "include_stale": include_stale},
            "results": [serialize_fact(fact) for fact in facts],
        }
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@service_tool
def recall_by_topic_prefix(prefix: str) -> dict:
    """Valid facts whose topic starts with ``prefix``; does not count as use."""
    _validate_required_text(prefix, "prefix", MAX_TOPIC_LENGTH)

    db = DB.SessionLocal()
    try:
        facts = (
            db.query(Fact)
            .filter(Fact.is_valid.is_(True))
            .filter(Fact.topic.startswith(prefix, autoescape=True))
            .order_by(Fact.topic.asc(), Fact.id.asc())
            .all()
        )
        return {
            "count": len(facts),
            "prefix": prefix,
            "results": [serialize_fact(fact) for fact in facts],
        }
    finally:
        db.close()


@service_tool
def resolve_alias(alias_type: str, user_input: str) -> dict:
    """
    Translate a user-friendly name into its stored technical value.

    Aliases live under ``alias:{alias_type}`` as ``"name" → "value"``. A
    case-insensitive substring match in either direction wins; candidates
    are tried in confidence order.
    """
    _validate_required_text(alias_type, "alias_type", MAX_SHORT_TEXT_LENGTH)
    _validate_required_text(user_input, "user_input", MAX_TEXT_LENGTH)

    db = DB.SessionLocal()
    try:
        topic = f"alias:{alias_type}"
        aliases = (
            db.query(Fact)
            .filter(Fact.topic == topic, Fact.is_valid.is_(True))
            .order_by(Fact.confidence.desc(), Fact.id.asc())
            .all()
        )
        normalized = user_input.strip().lower()

        for alias in aliases:
            parsed = parse_alias(alias.fact)
            if parsed is None:
                continue
            name, value = parsed
            name_key = name.lower()
            if name_key in normalized or normalized in name_key:
                alias.last_used = utcnow()
                db.commit()
                return {
                    "status": "resolved",
                    "alias_type": alias_type,
                    "input": user_input,
                    "name": name,
                    "value": value,
                }

        return {
            "status": "not_found",
            "alias_type": alias_type,
            "input": user_input,
            "value": None,
        }
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def store_alias(alias_type: str, name: str, value: str) -> dict:
    """Remember a ``name → value`` alias as a user-told fact."""
    _validate_required_text(alias_type, "alias_type", MAX_SHORT_TEXT_LENGTH)
    return remember_fact(
        topic=f"alias:{alias_type}",
        fact=format_alias(name, value),
        source=FactSource.user_told.value,
        confidence=1.0,
    )


@service_tool
def learn_correction(topic: str, old_fact: str, new_fact: str) -> dict:
    """
    Replace a wrong fact with what the user said.

    The first valid fact under ``topic`` containing ``old_fact`` is
    invalidated and the new fact is linked to it through ``contradicts_id``.
    """
    _validate_required_text(topic, "topic", MAX_TOPIC_LENGTH)
    _validate_required_text(old_fact, "old_fact", MAX_TEXT_LENGTH)
    _validate_required_text(new_fact, "new_fact", MAX_TEXT_LENGTH)

    db = DB.SessionLocal()
    try:
        matches = _valid_facts_containing(db, topic, old_fact)
        existing = matches[0] if matches else None
        if existing:
            existing.is_valid = False

        corrected = Fact(
            topic=topic,
            fact=new_fact,
            source=FactSource.user_told.value,
            confidence=1.0,
            contradicts_id=existing.id if existing else None,
            last_verified=utcnow(),
        )
        db.add(corrected)
        db.commit()
        logger.info("Learned correction: [%s] %s → %s", topic, old_fact, new_fact)
        return {
            "status": "corrected",
            "invalidated_id": existing.id if existing else None,
            "fact": serialize_fact(corrected),
        }
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@service_tool
def invalidate(topic: str, fact_contains: str) -> dict:
    """Soft-delete every valid fact under ``topic`` containing ``fact_contains``."""
    _validate_required_text(topic, "topic", MAX_TOPIC_LENGTH)
    _validate_required_text(fact_contains, "fact_contains", MAX_TEXT_LENGTH)

    db = DB.SessionLocal()
    try:
        matches = _valid_facts_containing(db, topic, fact_contains)
        for match in matches:
            match.is_valid = False
        db.commit()
        return {
            "status": "ok",
            "invalidated": len(matches),
            "ids": [match.id for match in matches],
        }
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@service_tool
def set_confidence(topic: str, fact: str, confidence: float) -> dict:
    """Overwrite the confidence of one valid fact; ``last_verified`` is untouched."""
    _validate_required_text(topic, "topic", MAX_TOPIC_LENGTH)
    _validate_required_text(fact, "fact", MAX_TEXT_LENGTH)
    _validate_number(confidence, "confidence")

    db = DB.SessionLocal()
    try:
        existing = _find_valid_fact(db, topic, fact)
        if existing is None:
            return {"status": "not_found", "topic": topic, "confidence": None}
        existing.confidence = clamp_confidence(float(confidence))
        db.commit()
        return {"status": "updated", "topic": topic, "confidence": existing.confidence}
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@service_tool
def decay_confidence(now: Optional[datetime] = None) -> dict:
    """
    Age every valid fact.

    Facts unverified for more than 30 days lose ``0.1`` per 30 days since
    verification; facts unused for more than 60 days lose a flat ``0.05``.
    Confidence is clamped to [0, 1]; nothing is invalidated here.
    """
    reference = now or utcnow()

    db = DB.SessionLocal()
    try:
        facts = db.query(Fact).filter(Fact.is_valid.is_(True)).all()
        decayed = 0
        for fact in facts:
            confidence = fact.confidence

            since_verified = days_since(fact.last_verified, reference)
            if since_verified is not None and since_verified > config.VERIFY_DECAY_AFTER_DAYS:
                confidence -= config.VERIFY_DECAY_RATE * (
                    since_verified / config.VERIFY_DECAY_AFTER_DAYS
                )

            since_used = days_since(fact.last_used, reference)
            if since_used is not None and since_used > config.UNUSED_DECAY_AFTER_DAYS:
                confidence -= config.UNUSED_DECAY_PENALTY

            confidence = clamp_confidence(confidence)
            if confidence != fact.confidence:
                fact.confidence = confidence
                decayed += 1

        db.commit()
        logger.info("Confidence decay complete", extra={"scanned": len(facts), "decayed": decayed})
        return {"status": "ok", "scanned": len(facts), "decayed": decayed}
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def generate_knowledge_prompt(topics: Optional[Iterable[str]] = None) -> str:
    """Build the knowledge digest injected into the assistant's system prompt."""
    db = DB.SessionLocal()
    try:
        query = db.query(Fact).filter(
            Fact.is_valid.is_(True),
            Fact.confidence > STALE_CONFIDENCE_THRESHOLD,
        )
        if topics is not None:
            topic_list = list(topics)
            if not topic_list:
                return ""
            query = query.filter(or_(*[_topic_filter(topic) for topic in topic_list]))

        facts = (
            query.order_by(Fact.confidence.desc(), Fact.id.asc())
            .limit(config.KNOWLEDGE_PROMPT_LIMIT)
            .all()
        )
    finally:
        db.close()

    if not facts:
        return ""

    grouped: dict[str, list[Fact]] = {}
    for fact in facts:
        grouped.setdefault(topic_category(fact.topic), []).append(fact)

    lines = ["", "## Your Current Knowledge"]
    now = utcnow()
    for category, members in grouped.items():
        lines.append("")
        lines.append(f"### {category}")
        for fact in members:
            warning = STALE_MARKER if _is_stale(fact, now) else ""
            lines.append(f"- {fact.fact}{warning}")
    return "\n".join(lines) + "\n"


@service_tool
def get_all_topics() -> dict:
    db = DB.SessionLocal()
    try:
        rows = (
            db.query(Fact.topic)
            .filter(Fact.is_valid.is_(True))
            .distinct()
            .order_by(Fact.topic.asc())
            .all()
        )
        topics = [row[0] for row in rows]
        return {"count": len(topics), "topics": topics}
    finally:
        db.close()


@service_tool
def get_correction_chain(fact_id: int) -> dict:
    """Follow ``contradicts_id`` links back from a fact, newest first."""
    db = DB.SessionLocal()
    try:
        current = db.get(Fact, fact_id)
        if current is None:
            raise NotFoundIssue(f"fact {fact_id} not found", field="fact_id")

        chain = []
        seen = set()
        while current is not None and current.id not in seen:
            seen.add(current.id)
            chain.append(serialize_fact(current))
            current = db.get(Fact, current.contradicts_id) if current.contradicts_id else None
        return {"status": "found", "count": len(chain), "chain": chain}
    finally:
        db.close()


# =============================================================================
# Administrative operations
# =============================================================================

@service_tool
def list_facts(
    page: int = 1,
    page_size: int = 20,
    topic: Optional[str] = None,
    is_valid: Optional[bool] = None,
) -> dict:
    _validate_page(page, page_size, MAX_PAGE_SIZE)
    _validate_optional_text(topic, "topic", MAX_TOPIC_LENGTH)

    db = DB.SessionLocal()
    try:
        query = db.query(Fact)
        if topic:
            query = query.filter(Fact.topic.contains(topic, autoescape=True))
        if is_valid is not None:
            query = query.filter(Fact.is_valid.is_(is_valid))

        total_count = query.with_entities(func.count(Fact.id)).scalar()
        facts = (
            query.order_by(Fact.created_at.desc(), Fact.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )
        return paged_result([serialize_fact(fact) for fact in facts], total_count, page, page_size)
    finally:
        db.close()


@service_tool
def get_fact(fact_id: int) -> dict:
    db = DB.SessionLocal()
    try:
        fact = db.get(Fact, fact_id)
        if fact is None:
            raise NotFoundIssue(f"fact {fact_id} not found", field="fact_id")
        return {"status": "found", "fact": serialize_fact(fact)}
    finally:
        db.close()


@service_tool
def create_fact(
    topic: str,
    fact: str,
    context: Optional[str] = None,
    confidence: Optional[float] = None,
    source: Optional[str] = None,
) -> dict:
    """Insert a fact verbatim (no dedup), defaulting to a manual source."""
    _validate_required_text(topic, "topic", MAX_TOPIC_LENGTH)
    _validate_required_text(fact, "fact", MAX_TEXT_LENGTH)
    _validate_optional_text(context, "context", MAX_TEXT_LENGTH)
    source = source or FactSource.manual.value
    _validate_source(source)
    if confidence is None:
        confidence = DEFAULT_FACT_CONFIDENCE
    _validate_number(confidence, "confidence")

    db = DB.SessionLocal()
    try:
        record = Fact(
            topic=topic,
            fact=fact,
            context=context,
            confidence=clamp_confidence(float(confidence)),
            source=source,
            is_valid=True,
        )
        db.add(record)
        db.commit()
        return {"status": "created", "fact": serialize_fact(record)}
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@service_tool
def update_fact(
    fact_id: int,
    topic: Optional[str] = None,
    fact: Optional[str] = None,
    context: Optional[str] = None,
    confidence: Optional[float] = None,
    is_valid: Optional[bool] = None,
) -> dict:
    if topic is not None:
        _validate_required_text(topic, "topic", MAX_TOPIC_LENGTH)
    if fact is not None:
        _validate_required_text(fact, "fact", MAX_TEXT_LENGTH)
    _validate_optional_text(context, "context", MAX_TEXT_LENGTH)
    if confidence is not None:
        _validate_number(confidence, "confidence")

    db = DB.SessionLocal()
    try:
        record = db.get(Fact, fact_id)
        if record is None:
            raise NotFoundIssue(f"fact {fact_id} not found", field="fact_id")

        if topic is not None:
            record.topic = topic
        if fact is not None:
            record.fact = fact
        if context is not None:
            record.context = context
        if confidence is not None:
            record.confidence = clamp_confidence(float(confidence))
        if is_valid is not None:
            record.is_valid = is_valid

        db.commit()
        return {"status": "updated", "fact": serialize_fact(record)}
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@service_tool
def soft_delete_fact(fact_id: int) -> dict:
    db = DB.SessionLocal()
    try:
        record = db.get(Fact, fact_id)
        if record is None:
            raise NotFoundIssue(f"fact {fact_id} not found", field="fact_id")
        record.is_valid = False
        db.commit()
        return {"status": "deleted", "id": fact_id}
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
