from concurrent.futures import ThreadPoolExecutor

from core.db import DB, bind_engine, build_engine
from core.models import Base
from core.services import investigation_service, knowledge_service


def _remember(text: str) -> dict:
    return knowledge_service.remember_fact(topic="concurrency", fact=text, confidence=0.9)


def _record(args) -> dict:
    investigation_id, action = args
    return investigation_service.record_step(investigation_id, action)


def test_knowledge_store_concurrency(tmp_path):
    db_path = tmp_path / "concurrency.sqlite"
    engine = build_engine(f"sqlite:///{db_path}")
    Base.metadata.create_all(engine)
    previous_engine = DB.engine
    previous_session = DB.SessionLocal
    bind_engine(engine)
    try:
        texts = [f"Concurrent fact {index}" for index in range(4)]
        with ThreadPoolExecutor(max_workers=2) as executor:
            results = list(executor.map(_remember, texts))

        assert all(result["status"] == "stored" for result in results)
        assert knowledge_service.recall(topic="concurrency")["count"] == 4

        started = investigation_service.start_investigation(1, "concurrent steps")
        investigation_id = started["investigation"]["id"]
        actions = [(investigation_id, f"step {index}") for index in range(4)]
        with ThreadPoolExecutor(max_workers=2) as executor:
            recorded = list(executor.map(_record, actions))

        assert all(result["status"] == "recorded" for result in recorded)
        detail = investigation_service.get_investigation(investigation_id)
        assert detail["investigation"]["step_count"] == 4
    finally:
        DB.engine = previous_engine
        DB.SessionLocal = previous_session
        engine.dispose()
