from datetime import timedelta

import pytest

from core.models import Fact, utcnow
from core.services import knowledge_service


def _set_fields(db_session, fact_id, **fields):
    fact = db_session.get(Fact, fact_id)
    for key, value in fields.items():
        setattr(fact, key, value)
    db_session.commit()


def test_remember_fact_merges_same_text(server_db):
    first = knowledge_service.remember_fact(topic="docker:nginx", fact="nginx serves the dashboard", confidence=0.6)
    assert first["status"] == "stored"

    second = knowledge_service.remember_fact(topic="docker:nginx", fact="nginx serves the dashboard", confidence=0.9)
    assert second["status"] == "merged"
    assert second["fact"]["id"] == first["fact"]["id"]
    assert second["fact"]["confidence"] == pytest.approx(0.9)

    lower = knowledge_service.remember_fact(topic="docker:nginx", fact="nginx serves the dashboard", confidence=0.2)
    assert lower["fact"]["confidence"] == pytest.approx(0.9)

    recall = knowledge_service.recall(topic="docker:nginx")
    assert recall["count"] == 1


def test_remember_fact_clamps_confidence(server_db):
    result = knowledge_service.remember_fact(topic="host", fact="runs debian", confidence=1.7)
    assert result["fact"]["confidence"] == 1.0


def test_remember_fact_rejects_bad_input(server_db):
    result = knowledge_service.remember_fact(topic="", fact="anything")
    assert result["status"] == "error"
    assert result["field"] == "topic"

    result = knowledge_service.remember_fact(topic="host", fact="x", source="rumour")
    assert result["status"] == "error"
    assert result["error_type"] == "invalid_choice"


def test_recall_matches_topic_and_children_only(server_db):
    knowledge_service.remember_fact(topic="docker", fact="docker runs on the nas")
    knowledge_service.remember_fact(topic="docker:nginx", fact="nginx is the proxy", confidence=0.95)
    knowledge_service.remember_fact(topic="dockerfile", fact="unrelated")

    recall = knowledge_service.recall(topic="docker")
    topics = [item["topic"] for item in recall["results"]]
    assert topics == ["docker:nginx", "docker"]


def test_recall_filters_stale_but_stamps_all(server_db, db_session):
    kept = knowledge_service.remember_fact(topic="network", fact="router is 10.0.0.1", confidence=0.9)
    stale = knowledge_service.remember_fact(topic="network", fact="old vlan layout", confidence=0.3)

    recall = knowledge_service.recall(topic="network")
    assert [item["id"] for item in recall["results"]] == [kept["fact"]["id"]]

    stale_row = db_session.get(Fact, stale["fact"]["id"])
    assert stale_row.last_used is not None

    with_stale = knowledge_service.recall(topic="network", include_stale=True)
    assert with_stale["count"] == 2


def test_recall_skips_invalidated(server_db):
    knowledge_service.remember_fact(topic="loki", fact="loki retention is 7 days")
    knowledge_service.invalidate("loki", "retention")
    assert knowledge_service.recall(topic="loki")["count"] == 0


def test_alias_store_and_resolve(server_db):
    stored = knowledge_service.store_alias("mac", "my PC", "AA:BB:CC:DD:EE:FF")
    assert stored["fact"]["source"] == "user_told"
    assert stored["fact"]["confidence"] == 1.0

    resolved = knowledge_service.resolve_alias("mac", "wake up My PC please")
    assert resolved["status"] == "resolved"
    assert resolved["value"] == "AA:BB:CC:DD:EE:FF"

    partial = knowledge_service.resolve_alias("mac", "pc")
    assert partial["status"] == "resolved"

    missing = knowledge_service.resolve_alias("mac", "the toaster")
    assert missing["status"] == "not_found"
    assert missing["value"] is None


def test_parse_alias_strips_quotes():
    assert knowledge_service.parse_alias('"media server" → "plex"') == ("media server", "plex")
    assert knowledge_service.parse_alias("'nas' → truenas") == ("nas", "truenas")
    assert knowledge_service.parse_alias("no arrow here") is None


def test_learn_correction_links_chain(server_db):
    original = knowledge_service.remember_fact(topic="host", fact="the nas has 16GB of RAM")
    corrected = knowledge_service.learn_correction("host", "16GB", "the nas has 32GB of RAM")

    assert corrected["invalidated_id"] == original["fact"]["id"]
    assert corrected["fact"]["contradicts_id"] == original["fact"]["id"]
    assert corrected["fact"]["source"] == "user_told"
    assert corrected["fact"]["confidence"] == 1.0

    chain = knowledge_service.get_correction_chain(corrected["fact"]["id"])
    assert [item["id"] for item in chain["chain"]] == [corrected["fact"]["id"], original["fact"]["id"]]
    assert chain["chain"][1]["is_valid"] is False


def test_learn_correction_without_match_still_inserts(server_db):
    corrected = knowledge_service.learn_correction("host", "nothing like this", "the nas is called vault")
    assert corrected["invalidated_id"] is None
    assert corrected["fact"]["contradicts_id"] is None


def test_invalidate_is_case_sensitive_substring(server_db):
    knowledge_service.remember_fact(topic="docker:plex", fact="Plex uses port 32400")
    knowledge_service.remember_fact(topic="docker:plex", fact="plex transcodes on the GPU")

    result = knowledge_service.invalidate("docker:plex", "Plex")
    assert result["invalidated"] == 1
    assert knowledge_service.recall(topic="docker:plex")["count"] == 1


def test_set_confidence_missing_fact_is_noop(server_db):
    result = knowledge_service.set_confidence("nothing", "nowhere", 0.5)
    assert result["status"] == "not_found"


def test_decay_confidence(server_db, db_session):
    now = utcnow()
    old = knowledge_service.remember_fact(topic="storage:tank", fact="tank is ONLINE")
    unused = knowledge_service.remember_fact(topic="storage:tank", fact="tank has 4 disks")
    fresh = knowledge_service.remember_fact(topic="storage:tank", fact="tank is 40% used")

    _set_fields(db_session, old["fact"]["id"], last_verified=now - timedelta(days=90))
    _set_fields(db_session, unused["fact"]["id"], last_used=now - timedelta(days=61))

    result = knowledge_service.decay_confidence(now=now)
    assert result["scanned"] == 3
    assert result["decayed"] == 2

    db_session.expire_all()
    assert db_session.get(Fact, old["fact"]["id"]).confidence == pytest.approx(0.5)
    assert db_session.get(Fact, unused["fact"]["id"]).confidence == pytest.approx(0.75)
    assert db_session.get(Fact, fresh["fact"]["id"]).confidence == pytest.approx(0.8)


def test_decay_never_goes_negative(server_db, db_session):
    now = utcnow()
    fact = knowledge_service.remember_fact(topic="host", fact="ancient", confidence=0.1)
    _set_fields(db_session, fact["fact"]["id"], last_verified=now - timedelta(days=400))

    knowledge_service.decay_confidence(now=now)
    db_session.expire_all()
    row = db_session.get(Fact, fact["fact"]["id"])
    assert row.confidence == 0.0
    assert row.is_valid is True


def test_generate_knowledge_prompt(server_db, db_session):
    knowledge_service.remember_fact(topic="docker:nginx", fact="nginx is the proxy", confidence=0.9)
    old = knowledge_service.remember_fact(topic="network:router", fact="router runs RouterOS 7")
    knowledge_service.remember_fact(topic="network:vlan", fact="too uncertain", confidence=0.2)
    _set_fields(db_session, old["fact"]["id"], last_verified=utcnow() - timedelta(days=45))

    prompt = knowledge_service.generate_knowledge_prompt()
    assert prompt.startswith("\n## Your Current Knowledge\n")
    assert "\n### docker\n- nginx is the proxy\n" in prompt
    assert "- router runs RouterOS 7 ⚠️" in prompt
    assert "too uncertain" not in prompt

    scoped = knowledge_service.generate_knowledge_prompt(["docker"])
    assert "router" not in scoped


def test_generate_knowledge_prompt_empty(server_db):
    assert knowledge_service.generate_knowledge_prompt() == ""


def test_get_all_topics(server_db):
    knowledge_service.remember_fact(topic="b", fact="one")
    knowledge_service.remember_fact(topic="a", fact="two")
    knowledge_service.remember_fact(topic="a", fact="three")
    assert knowledge_service.get_all_topics()["topics"] == ["a", "b"]


def test_admin_fact_lifecycle(server_db):
    created = knowledge_service.create_fact(topic="grafana", fact="dashboards live in git")
    assert created["fact"]["source"] == "manual"
    assert created["fact"]["confidence"] == pytest.approx(0.8)
    fact_id = created["fact"]["id"]

    updated = knowledge_service.update_fact(fact_id, confidence=3.0, context="from the wiki")
    assert updated["fact"]["confidence"] == 1.0
    assert updated["fact"]["context"] == "from the wiki"
    assert updated["fact"]["fact"] == "dashboards live in git"

    deleted = knowledge_service.soft_delete_fact(fact_id)
    assert deleted["status"] == "deleted"
    assert knowledge_service.get_fact(fact_id)["fact"]["is_valid"] is False

    missing = knowledge_service.get_fact(9999)
    assert missing["status"] == "error"
    assert missing["error_type"] == "not_found"


def test_list_facts_filters_and_pages(server_db):
    for index in range(5):
        knowledge_service.create_fact(topic=f"docker:app{index}", fact=f"app {index}")
    knowledge_service.create_fact(topic="storage:tank", fact="tank")
    knowledge_service.soft_delete_fact(1)

    page = knowledge_service.list_facts(page=1, page_size=2, topic="docker")
    assert page["total_count"] == 5
    assert len(page["items"]) == 2

    valid_docker = knowledge_service.list_facts(topic="docker", is_valid=True)
    assert valid_docker["total_count"] == 4

    bad_page = knowledge_service.list_facts(page=0)
    assert bad_page["status"] == "error"


def test_decay_applies_both_penalties_to_one_fact(server_db, db_session):
    now = utcnow()
    fact = knowledge_service.remember_fact(topic="docker:plex", fact="plex uses the GPU")
    _set_fields(
        db_session,
        fact["fact"]["id"],
        last_verified=now - timedelta(days=40),
        last_used=now - timedelta(days=61),
    )

    result = knowledge_service.decay_confidence(now=now)
    assert result["decayed"] == 1

    db_session.expire_all()
    expected = 0.8 - 0.1 * (40 / 30) - 0.05
    assert db_session.get(Fact, fact["fact"]["id"]).confidence == pytest.approx(expected)
