"""
Shared configuration for OpsMemory core.
"""

from __future__ import annotations

import logging
import os

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("opsmemory")


def _get_bool(env_name: str, default: bool) -> bool:
    value = os.environ.get(env_name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int(env_name: str, default: int) -> int:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_float(env_name: str, default: float) -> float:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _get_str(env_name: str, default: str) -> str:
    return os.environ.get(env_name, default).strip()


# Database settings
DB_BACKEND = os.environ.get("DB_BACKEND", "sqlite").strip().lower()
SQLITE_PATH = os.environ.get("SQLITE_PATH", "/data/opsmemory.db")
DATABASE_URL = os.environ.get("DATABASE_URL")

# Database initialization controls
AUTO_MIGRATE_ON_STARTUP = _get_bool("AUTO_MIGRATE_ON_STARTUP", True)
HEALTH_CHECK_SCHEMA = _get_bool("HEALTH_CHECK_SCHEMA", True)

# Request/input limits
MAX_RESULT_LIMIT = _get_int("OPSMEMORY_MAX_RESULT_LIMIT", 100)
MAX_PAGE_SIZE = _get_int("OPSMEMORY_MAX_PAGE_SIZE", 100)
MAX_TOPIC_LENGTH = _get_int("OPSMEMORY_MAX_TOPIC_LENGTH", 200)
MAX_TEXT_LENGTH = _get_int("OPSMEMORY_MAX_TEXT_LENGTH", 4000)
MAX_SHORT_TEXT_LENGTH = _get_int("OPSMEMORY_MAX_SHORT_TEXT_LENGTH", 255)

# Knowledge confidence policy
DEFAULT_FACT_CONFIDENCE = _get_float("DEFAULT_FACT_CONFIDENCE", 0.8)
STALE_CONFIDENCE_THRESHOLD = _get_float("STALE_CONFIDENCE_THRESHOLD", 0.3)
VERIFY_DECAY_AFTER_DAYS = _get_float("VERIFY_DECAY_AFTER_DAYS", 30.0)
VERIFY_DECAY_RATE = _get_float("VERIFY_DECAY_RATE", 0.1)
UNUSED_DECAY_AFTER_DAYS = _get_float("UNUSED_DECAY_AFTER_DAYS", 60.0)
UNUSED_DECAY_PENALTY = _get_float("UNUSED_DECAY_PENALTY", 0.05)
KNOWLEDGE_PROMPT_LIMIT = _get_int("KNOWLEDGE_PROMPT_LIMIT", 50)

# Incident memory
INCIDENT_SEARCH_POOL = _get_int("INCIDENT_SEARCH_POOL", 50)
INCIDENT_SEARCH_LIMIT = _get_int("INCIDENT_SEARCH_LIMIT", 5)
PATTERN_CANDIDATE_POOL = _get_int("PATTERN_CANDIDATE_POOL", 20)
PATTERN_MATCH_LIMIT = _get_int("PATTERN_MATCH_LIMIT", 3)
PATTERN_CAUSE_MAX_LENGTH = _get_int("PATTERN_CAUSE_MAX_LENGTH", 200)

# Knowledge refresh (reconciliation)
DISCOVERED_FACT_CONFIDENCE = _get_float("DISCOVERED_FACT_CONFIDENCE", 0.9)
STALE_FACT_PENALTY = _get_float("STALE_FACT_PENALTY", 0.3)
REFRESH_DEFAULT_SCHEDULE_TIME = "03:00"
REFRESH_DEFAULT_TIMEZONE = "UTC"
REFRESH_DISABLED_RECHECK_SECONDS = _get_int("REFRESH_DISABLED_RECHECK_SECONDS", 60)
REFRESH_ERROR_BACKOFF_SECONDS = _get_int("REFRESH_ERROR_BACKOFF_SECONDS", 300)

# Infrastructure sources
AGGREGATOR_TIMEOUT_SECONDS = _get_float("AGGREGATOR_TIMEOUT_SECONDS", 10.0)
DOCKER_SOCKET_PATH = os.environ.get("DOCKER_SOCKET_PATH", "/var/run/docker.sock")
PROMETHEUS_URL = os.environ.get("PROMETHEUS_URL", "http://prometheus:9090").rstrip("/")
TRUENAS_URL = os.environ.get("TRUENAS_URL", "http://truenas").rstrip("/")
TRUENAS_API_KEY = os.environ.get("TRUENAS_API_KEY")

# Notifications
NTFY_URL = os.environ.get("NTFY_URL", "http://ntfy:80").rstrip("/")
NTFY_TOPIC = os.environ.get("NTFY_TOPIC", "opsmemory")
NTFY_TIMEOUT_SECONDS = _get_float("NTFY_TIMEOUT_SECONDS", 10.0)


def validate_and_prepare_config() -> None:
    """Validate configuration and apply derived settings at startup."""
    global DATABASE_URL

    errors = []
    if DB_BACKEND not in {"postgres", "sqlite"}:
        errors.append("DB_BACKEND must be 'postgres' or 'sqlite'")

    if not DATABASE_URL:
        if DB_BACKEND == "sqlite":
            if not SQLITE_PATH:
                errors.append("SQLITE_PATH environment variable is required for sqlite")
            else:
                DATABASE_URL = f"sqlite:///{SQLITE_PATH}"
        else:
            errors.append("DATABASE_URL environment variable is required")
    else:
        url_lower = DATABASE_URL.lower()
        is_sqlite_url = url_lower.startswith("sqlite")
        if DB_BACKEND == "sqlite" and not is_sqlite_url:
            errors.append("DATABASE_URL must be a sqlite URL when DB_BACKEND=sqlite")
        if DB_BACKEND == "postgres" and is_sqlite_url:
            errors.append("DATABASE_URL must be a postgres URL when DB_BACKEND=postgres")

    if not 0.0 <= STALE_CONFIDENCE_THRESHOLD <= 1.0:
        errors.append("STALE_CONFIDENCE_THRESHOLD must be between 0.0 and 1.0")
    if STALE_FACT_PENALTY <= 0:
        errors.append("STALE_FACT_PENALTY must be positive")

    if errors:
        raise RuntimeError("Configuration invalid: " + "; ".join(errors))
