import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("KNOWLEDGE_REFRESH_ENABLED", "false")

import pytest

from core.db import DB, bind_engine, build_engine
from core.models import Base
from core.services import assistant_tools


@pytest.fixture
def server_db(tmp_path):
    """Bind the services to a fresh SQLite database for one test."""
    db_path = tmp_path / "opsmemory.sqlite"
    engine = build_engine(f"sqlite:///{db_path}")
    Base.metadata.create_all(engine)
    previous_engine = DB.engine
    previous_session = DB.SessionLocal
    bind_engine(engine)
    assistant_tools.clear_active_cache()
    try:
        yield engine
    finally:
        assistant_tools.clear_active_cache()
        DB.engine = previous_engine
        DB.SessionLocal = previous_session
        engine.dispose()


@pytest.fixture
def db_session(server_db):
    session = DB.SessionLocal()
    try:
        yield session
    finally:
        session.close()
