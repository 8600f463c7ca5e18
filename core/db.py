"""
Engine/session wiring for the OpsMemory store and Alembic schema checks.
"""

from __future__ import annotations

import os
from typing import Optional

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

import core.config as config

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


class DB:
    """Process-wide engine and session factory."""

    engine: Optional[Engine] = None
    SessionLocal = None


def _get_alembic_config() -> Config:
    alembic_cfg = Config(os.path.join(PROJECT_ROOT, "alembic.ini"))
    alembic_cfg.set_main_option("script_location", os.path.join(PROJECT_ROOT, "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", config.DATABASE_URL)
    return alembic_cfg


def _get_schema_revisions(engine: Engine) -> tuple[Optional[str], Optional[str]]:
    """Return (applied revision, newest revision shipped in alembic/versions)."""
    head = ScriptDirectory.from_config(_get_alembic_config()).get_current_head()
    with engine.connect() as conn:
        current = MigrationContext.configure(conn).get_current_revision()
    return current, head


def _migrate_to_head(engine: Engine) -> None:
    current, head = _get_schema_revisions(engine)
    if current == head:
        return

    if not config.AUTO_MIGRATE_ON_STARTUP:
        raise RuntimeError(
            f"OpsMemory schema is at {current}, expected {head}. "
            "Run 'alembic upgrade head' or set AUTO_MIGRATE_ON_STARTUP=true."
        )

    config.logger.info("Migrating schema", extra={"from_revision": current, "to_revision": head})
    command.upgrade(_get_alembic_config(), "head")
    current, _ = _get_schema_revisions(engine)
    if current != head:
        raise RuntimeError(f"Schema migration stopped at {current}, expected {head}")


def build_engine(database_url: str) -> Engine:
    kwargs = {"pool_pre_ping": True}
    if database_url.startswith("sqlite"):
        # The refresh loop and the API handlers share the engine across threads.
        kwargs["connect_args"] = {"check_same_thread": False}
    return create_engine(database_url, **kwargs)


def bind_engine(engine: Engine) -> None:
    """Point the session factory at an engine (used by init_db and tests)."""
    DB.engine = engine
    DB.SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)


def init_db() -> None:
    config.validate_and_prepare_config()
    config.logger.info("Connecting to database", extra={"db_backend": config.DB_BACKEND})
    bind_engine(build_engine(config.DATABASE_URL))
    _migrate_to_head(DB.engine)
    config.logger.info("Database initialized")
