"""
Scheduled knowledge refresh.

Once a day the live infrastructure snapshot is turned into facts and
reconciled against the fact store: rediscovered facts are verified, new
ones added, and facts that disappeared from a reachable source lose
confidence until they are invalidated.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import core.config as config
from core.models import FactSource
from core.services import knowledge_service
from core.services.notifications import NtfyNotifier
from core.services.state_aggregator import InfraSnapshot, StateAggregator

logger = config.logger

TOPIC_PREFIXES = ("docker:", "storage:", "network:", "monitoring:")


@dataclass
class RefreshSettings:
    enabled: bool
    schedule_time: time
    timezone: ZoneInfo | timezone
    notify_on_changes: bool


@dataclass
class DiscoveredFact:
    topic: str
    fact: str
    context: Optional[str] = None
    confidence: float = config.DISCOVERED_FACT_CONFIDENCE


@dataclass
class RefreshResult:
    added: int = 0
    verified: int = 0
    stale: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.added > 0 or self.stale > 0


# =============================================================================
# Settings and scheduling
# =============================================================================

def _parse_schedule_time(raw: str) -> time:
    try:
        hour, minute = raw.strip().split(":")
        return time(int(hour), int(minute))
    except ValueError:
        logger.warning(
            "Invalid schedule time %r, defaulting to %s", raw, config.REFRESH_DEFAULT_SCHEDULE_TIME
        )
        hour, minute = config.REFRESH_DEFAULT_SCHEDULE_TIME.split(":")
        return time(int(hour), int(minute))


def _parse_timezone(raw: str):
    try:
        return ZoneInfo(raw.strip())
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Invalid timezone %r, defaulting to UTC", raw)
        return timezone.utc


def load_refresh_settings() -> RefreshSettings:
    """Read the refresh settings fresh from the environment."""
    return RefreshSettings(
        enabled=config._get_bool("KNOWLEDGE_REFRESH_ENABLED", True),
        schedule_time=_parse_schedule_time(
            config._get_str("KNOWLEDGE_REFRESH_SCHEDULE_TIME", config.REFRESH_DEFAULT_SCHEDULE_TIME)
        ),
        timezone=_parse_timezone(
            config._get_str("KNOWLEDGE_REFRESH_TIMEZONE", config.REFRESH_DEFAULT_TIMEZONE)
        ),
        notify_on_changes=config._get_bool("KNOWLEDGE_REFRESH_NOTIFY_ON_CHANGES", True),
    )


def calculate_delay_until_next_run(settings: RefreshSettings, now: Optional[datetime] = None) -> timedelta:
    """Time until the next local occurrence of the schedule time, always positive."""
    now_utc = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    now_local = now_utc.astimezone(settings.timezone)
    next_run = datetime.combine(now_local.date(), settings.schedule_time, tzinfo=settings.timezone)
    if next_run <= now_local:
        next_run = datetime.combine(
            now_local.date() + timedelta(days=1), settings.schedule_time, tzinfo=settings.timezone
        )
    return next_run.astimezone(timezone.utc) - now_utc


# =============================================================================
# Reconciliation
# =============================================================================

def transform_to_facts(snapshot: InfraSnapshot) -> list[DiscoveredFact]:
    facts = []

    for container in snapshot.containers:
        health = f" ({container.health})" if container.health is not None else ""
        facts.append(DiscoveredFact(
            topic=f"docker:{container.name}",
            fact=f"Container '{container.name}' is {container.state}{health}",
        ))

    for pool in snapshot.pools:
        facts.append(DiscoveredFact(
            topic=f"storage:{pool.name}",
            fact=f"Pool '{pool.name}' is {pool.health}, {pool.used_percent:.0f}% used",
        ))

    if snapshot.router is not None:
        router = snapshot.router
        facts.append(DiscoveredFact(
            topic="network:router",
            fact=(
                f"Router uptime {router.uptime_days}d, CPU {router.cpu_percent:.0f}%, "
                f"memory {router.memory_percent:.0f}%"
            ),
        ))

    if snapshot.monitoring is not None:
        monitoring = snapshot.monitoring
        facts.append(DiscoveredFact(
            topic="monitoring:summary",
            fact=(
                f"Prometheus: {monitoring.up_targets}/{monitoring.total_targets} targets up, "
                f"{monitoring.down_targets} down"
            ),
        ))

    return facts


def _is_error(payload: dict) -> bool:
    return payload.get("status") == "error"


def _load_existing(result: RefreshResult) -> dict[str, list[dict]]:
    existing: dict[str, list[dict]] = {}
    for prefix in TOPIC_PREFIXES:
        payload = knowledge_service.recall_by_topic_prefix(prefix)
        if _is_error(payload):
            logger.warning("Failed to load existing facts", extra={"prefix": prefix})
            result.errors.append(f"load {prefix}: {payload.get('message')}")
            continue
        for fact in payload["results"]:
            existing.setdefault(fact["topic"], []).append(fact)
    return existing


def _mark_stale(fact: dict) -> dict:
    confidence = fact["confidence"] - config.STALE_FACT_PENALTY
    if confidence <= 0:
        return knowledge_service.soft_delete_fact(fact["id"])
    return knowledge_service.update_fact(fact["id"], confidence=confidence)


def reconcile(discovered: list[DiscoveredFact]) -> RefreshResult:
    """
    Merge discovered facts into the store.

    Only prefixes that produced at least one discovered fact are treated as
    reachable; facts under unreachable prefixes and user-told facts are
    never penalised.
    """
    result = RefreshResult()
    existing_by_topic = _load_existing(result)
    discovered_topics = set()

    for item in discovered:
        discovered_topics.add(item.topic)
        try:
            payload = knowledge_service.remember_fact(
                topic=item.topic,
                fact=item.fact,
                context=item.context,
                source=FactSource.auto_refresh.value,
                confidence=item.confidence,
            )
        except Exception as exc:
            logger.warning("Failed to reconcile fact", extra={"topic": item.topic}, exc_info=exc)
            result.errors.append(f"{item.topic}: {exc}")
            continue
        if _is_error(payload):
            logger.warning("Failed to reconcile fact", extra={"topic": item.topic})
            result.errors.append(f"{item.topic}: {payload.get('message')}")
        elif item.topic in existing_by_topic:
            result.verified += 1
        else:
            result.added += 1

    active_prefixes = {
        prefix for prefix in TOPIC_PREFIXES
        if any(item.topic.startswith(prefix) for item in discovered)
    }

    for topic, facts in existing_by_topic.items():
        if topic in discovered_topics:
            continue
        if not any(topic.startswith(prefix) for prefix in active_prefixes):
            continue
        for fact in facts:
            if fact["source"] == FactSource.user_told.value:
                continue
            try:
                payload = _mark_stale(fact)
            except Exception as exc:
                logger.warning("Failed to mark stale fact", extra={"topic": topic}, exc_info=exc)
                result.errors.append(f"stale {topic}: {exc}")
                continue
            if _is_error(payload):
                logger.warning("Failed to mark stale fact", extra={"topic": topic})
                result.errors.append(f"stale {topic}: {payload.get('message')}")
            else:
                result.stale += 1

    return result


def format_refresh_summary(result: RefreshResult) -> str:
    lines = ["**Knowledge Refresh Summary**"]
    if result.added:
        lines.append(f"+ {result.added} new facts discovered")
    if result.verified:
        lines.append(f"~ {result.verified} facts verified")
    if result.stale:
        lines.append(f"- {result.stale} facts went stale")
    if result.errors:
        lines.append(f"! {len(result.errors)} errors")
    return "\n".join(lines)


# =============================================================================
# Cycle and loop
# =============================================================================

async def run_refresh_cycle(
    aggregator: StateAggregator,
    notifier: Optional[NtfyNotifier] = None,
    settings: Optional[RefreshSettings] = None,
) -> Optional[RefreshResult]:
    """
    Run one refresh. Returns None when no source was reachable and nothing
    was written.
    """
    settings = settings or load_refresh_settings()
    logger.info("Starting knowledge refresh cycle")

    snapshot = await aggregator.aggregate()
    if snapshot.is_empty():
        logger.error("Knowledge refresh: no data sources were reachable, skipping reconciliation")
        return None

    discovered = transform_to_facts(snapshot)
    result = await asyncio.to_thread(reconcile, discovered)

    try:
        decay = await asyncio.to_thread(knowledge_service.decay_confidence)
    except Exception as exc:
        logger.warning("Confidence decay failed (reconciliation was successful)", exc_info=exc)
    else:
        if _is_error(decay):
            logger.warning("Confidence decay failed (reconciliation was successful)")

    logger.info(
        "Knowledge refresh complete: %d added, %d verified, %d stale, %d errors",
        result.added, result.verified, result.stale, len(result.errors),
        extra={
            "added": result.added,
            "verified": result.verified,
            "stale": result.stale,
            "errors": len(result.errors),
        },
    )

    if notifier is not None and settings.notify_on_changes and result.changed:
        await notifier.send(format_refresh_summary(result), title="OpsMemory")

    return result


async def knowledge_refresh_loop(
    aggregator: StateAggregator,
    notifier: Optional[NtfyNotifier] = None,
) -> None:
    """Background loop started from the application lifespan."""
    logger.info("Knowledge refresh loop started")
    while True:
        try:
            settings = load_refresh_settings()
            if not settings.enabled:
                logger.debug("Knowledge refresh disabled, rechecking later")
                await asyncio.sleep(config.REFRESH_DISABLED_RECHECK_SECONDS)
                continue

            delay = calculate_delay_until_next_run(settings)
            logger.info("Next knowledge refresh in %s", delay)
            await asyncio.sleep(delay.total_seconds())

            await run_refresh_cycle(aggregator, notifier)
        except asyncio.CancelledError:
            logger.info("Knowledge refresh loop stopped")
            raise
        except Exception as exc:
            logger.error("Error in knowledge refresh loop", exc_info=exc)
            await asyncio.sleep(config.REFRESH_ERROR_BACKOFF_SECONDS)
