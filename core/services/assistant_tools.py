"""
String-returning operations exposed to the assistant as tools.

These wrap the knowledge and investigation services and render their
payloads as short markdown replies. Investigations are addressed by chat
thread; the per-thread id cache below is only a hint and is always
checked against the store.
"""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Optional

from core.models import utcnow
from core.services import investigation_service, knowledge_service
from core.services.shared import days_since, format_age, logger, topic_category
import core.config as config

_ACTIVE_INVESTIGATIONS: dict[int, int] = {}
_ACTIVE_LOCK = threading.Lock()

RECENT_STEP_COUNT = 5


def _cached_investigation(thread_id: int) -> Optional[int]:
    with _ACTIVE_LOCK:
        return _ACTIVE_INVESTIGATIONS.get(thread_id)


def _cache_investigation(thread_id: int, investigation_id: int) -> None:
    with _ACTIVE_LOCK:
        _ACTIVE_INVESTIGATIONS[thread_id] = investigation_id


def _forget_investigation(thread_id: int) -> None:
    with _ACTIVE_LOCK:
        _ACTIVE_INVESTIGATIONS.pop(thread_id, None)


def clear_active_cache() -> None:
    with _ACTIVE_LOCK:
        _ACTIVE_INVESTIGATIONS.clear()


def _lookup_active(thread_id: int) -> Optional[dict]:
    payload = investigation_service.get_active_investigation(thread_id)
    if payload.get("status") == "error":
        return None
    return payload.get("investigation")


def _resolve_active_id(thread_id: int) -> Optional[int]:
    cached = _cached_investigation(thread_id)
    if cached is not None:
        return cached
    active = _lookup_active(thread_id)
    if active is None:
        return None
    _cache_investigation(thread_id, active["id"])
    return active["id"]


def _is_stale_hint(payload: dict) -> bool:
    return payload.get("status") == "error" and payload.get("error_type") in ("not_found", "invalid_state")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _error_reply(action: str, payload: dict) -> str:
    return f"Could not {action}: {payload.get('message')}"


# =============================================================================
# Knowledge tools
# =============================================================================

def remember_fact(topic: str, fact: str, context: Optional[str] = None) -> str:
    logger.debug("Remembering fact: [%s] %s", topic, fact)
    payload = knowledge_service.remember_fact(topic=topic, fact=fact, context=context)
    if payload.get("status") == "error":
        return _error_reply("remember that", payload)
    return f"Remembered: [{topic}] {fact}"


def recall_knowledge(topic: Optional[str] = None) -> str:
    payload = knowledge_service.recall(topic=topic or None, include_stale=True)
    if payload.get("status") == "error":
        return _error_reply("recall knowledge", payload)

    facts = payload["results"]
    if not facts:
        if topic:
            return f"I don't have any knowledge about '{topic}' yet."
        return "I don't have any knowledge stored yet."

    grouped: dict[str, list[dict]] = {}
    for fact in facts:
        grouped.setdefault(fact["topic"], []).append(fact)

    now = utcnow()
    lines = [f"**What I know about {topic or 'the homelab'}:**", ""]
    for group_topic, members in grouped.items():
        lines.append(f"**{group_topic}**")
        for fact in members:
            uncertain = " (uncertain)" if fact["confidence"] < 0.5 else ""
            age = days_since(_parse_ts(fact["last_verified"]), now)
            warning = " ⚠️" if age is not None and age > config.VERIFY_DECAY_AFTER_DAYS else ""
            lines.append(f"- {fact['fact']}{uncertain}{warning}")
        lines.append("")
    return "\n".join(lines)


def learn_correction(topic: str, old_fact: str, new_fact: str) -> str:
    logger.info("Learning correction for %s", topic, extra={"category": topic_category(topic)})
    payload = knowledge_service.learn_correction(topic, old_fact, new_fact)
    if payload.get("status") == "error":
        return _error_reply("learn that correction", payload)
    return f"Got it, updated my knowledge: {new_fact}"


def resolve_alias(alias_type: str, user_input: str) -> str:
    payload = knowledge_service.resolve_alias(alias_type, user_input)
    if payload.get("status") == "resolved":
        return f"Resolved '{user_input}' to: {payload['value']}"
    if payload.get("status") == "error":
        return _error_reply("resolve that alias", payload)
    return f"No alias found for '{user_input}' in {alias_type} aliases."


def store_alias(alias_type: str, name: str, value: str) -> str:
    payload = knowledge_service.store_alias(alias_type, name, value)
    if payload.get("status") == "error":
        return _error_reply("store that alias", payload)
    return f"Stored alias: {name} → {value}"


def invalidate_knowledge(topic: str, fact_contains: str) -> str:
    payload = knowledge_service.invalidate(topic, fact_contains)
    if payload.get("status") == "error":
        return _error_reply("invalidate that knowledge", payload)
    return f"Marked knowledge about '{fact_contains}' in {topic} as outdated."


# =============================================================================
# Investigation tools
# =============================================================================

def start_investigation(thread_id: int, symptom: str) -> str:
    payload = investigation_service.start_investigation(thread_id, symptom)
    if payload.get("status") == "error":
        return _error_reply("start an investigation", payload)

    investigation = payload["investigation"]
    _cache_investigation(thread_id, investigation["id"])

    if not payload["created"]:
        return (
            f"Already have an active investigation (#{investigation['id']}): {investigation['trigger']}\n"
            "Use RecordStep to log findings, or ResolveInvestigation when done."
        )

    lines = [f"Started investigation #{investigation['id']}: {symptom}"]
    context = investigation_service.generate_incident_context(symptom)
    lines.append(context if context else "No similar past incidents found.")
    lines.append("")
    lines.append("Use RecordStep() to log each diagnostic action.")
    return "\n".join(lines)


def record_step(
    thread_id: int,
    action: str,
    plugin: Optional[str] = None,
    result: Optional[str] = None,
) -> str:
    investigation_id = _resolve_active_id(thread_id)
    if investigation_id is None:
        return "No active investigation. Call StartInvestigation first."

    payload = investigation_service.record_step(investigation_id, action, plugin, result)
    if _is_stale_hint(payload):
        _forget_investigation(thread_id)
        investigation_id = _resolve_active_id(thread_id)
        if investigation_id is None:
            return "No active investigation. Call StartInvestigation first."
        payload = investigation_service.record_step(investigation_id, action, plugin, result)

    if payload.get("status") == "error":
        return _error_reply("record that step", payload)
    return f"Recorded: {action}" + (f" → {result}" if result is not None else "")


def resolve_investigation(thread_id: int, resolution: str) -> str:
    investigation_id = _resolve_active_id(thread_id)
    if investigation_id is None:
        return "No active investigation to resolve."

    payload = investigation_service.resolve_investigation(investigation_id, resolution)
    if _is_stale_hint(payload):
        _forget_investigation(thread_id)
        investigation_id = _resolve_active_id(thread_id)
        if investigation_id is None:
            return "No active investigation to resolve."
        payload = investigation_service.resolve_investigation(investigation_id, resolution)

    if payload.get("status") == "error":
        return _error_reply("resolve the investigation", payload)

    _forget_investigation(thread_id)
    investigation = payload["investigation"]
    steps = investigation["steps"]

    lines = [
        f"Investigation #{investigation['id']} resolved: {resolution}",
        f"Steps taken: {len(steps)}",
    ]
    if steps:
        lines.append("Summary:")
        lines.extend(f"  - {step['action']}" for step in steps[-RECENT_STEP_COUNT:])
    lines.append("")
    lines.append("This incident has been saved for future reference.")
    return "\n".join(lines)


def search_past_incidents(symptom: str) -> str:
    payload = investigation_service.search_past_incidents(symptom)
    if payload.get("status") == "error":
        return _error_reply("search past incidents", payload)

    incidents = payload["results"]
    if not incidents:
        return f"No past incidents found matching '{symptom}'."

    now = utcnow()
    lines = [f"Found {len(incidents)} past incident(s):", ""]
    for incident in incidents:
        age = format_age(_parse_ts(incident["started_at"]), now, long_units=True)
        lines.append(f"**#{incident['id']}** ({age})")
        lines.append(f"  Problem: {incident['trigger']}")
        if incident["resolution"]:
            lines.append(f"  Resolution: {incident['resolution']}")
        if incident["step_count"]:
            lines.append(f"  Steps: {incident['step_count']}")
        lines.append("")
    return "\n".join(lines)


def get_investigation_status(thread_id: int) -> str:
    active = _lookup_active(thread_id)
    if active is None:
        _forget_investigation(thread_id)
        return "No active investigation in this thread."

    _cache_investigation(thread_id, active["id"])
    started_at = _parse_ts(active["started_at"])
    minutes = int((utcnow() - started_at).total_seconds() // 60)
    steps = active["steps"]

    lines = [
        f"**Active Investigation #{active['id']}**",
        f"Problem: {active['trigger']}",
        f"Duration: {minutes} minutes",
        f"Steps taken: {len(steps)}",
    ]
    if steps:
        lines.append("")
        lines.append("Recent steps:")
        for step in steps[-RECENT_STEP_COUNT:]:
            lines.append(f"  [{_parse_ts(step['timestamp']):%H:%M}] {step['action']}")
            if step["result_summary"]:
                lines.append(f"          → {step['result_summary']}")
    return "\n".join(lines)


__all__ = [
    "remember_fact",
    "recall_knowledge",
    "learn_correction",
    "resolve_alias",
    "store_alias",
    "invalidate_knowledge",
    "start_investigation",
    "record_step",
    "resolve_investigation",
    "search_past_incidents",
    "get_investigation_status",
    "clear_active_cache",
]
