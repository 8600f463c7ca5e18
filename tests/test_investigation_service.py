from datetime import timedelta

import pytest

from core.errors import ActiveInvestigationError
from core.models import Investigation, Pattern, utcnow
from core.services import investigation_service, pattern_service


def _resolved_incident(thread_id, trigger, resolution, steps=()):
    started = investigation_service.start_investigation(thread_id, trigger)
    investigation_id = started["investigation"]["id"]
    for action, summary in steps:
        investigation_service.record_step(investigation_id, action, result_summary=summary)
    investigation_service.resolve_investigation(investigation_id, resolution)
    return investigation_id


def test_start_investigation_is_idempotent_per_thread(server_db):
    first = investigation_service.start_investigation(42, "grafana is slow")
    assert first["created"] is True
    assert first["status"] == "started"

    second = investigation_service.start_investigation(42, "something else")
    assert second["created"] is False
    assert second["investigation"]["id"] == first["investigation"]["id"]
    assert second["investigation"]["trigger"] == "grafana is slow"

    other_thread = investigation_service.start_investigation(43, "grafana is slow")
    assert other_thread["created"] is True


def test_start_investigation_after_resolve_creates_new(server_db):
    first = investigation_service.start_investigation(7, "disk full")
    investigation_service.resolve_investigation(first["investigation"]["id"], "pruned images")
    second = investigation_service.start_investigation(7, "disk full again")
    assert second["created"] is True
    assert second["investigation"]["id"] != first["investigation"]["id"]


def test_start_investigation_store_failure_is_loud(server_db):
    server_db.dispose()
    with server_db.begin() as conn:
        conn.exec_driver_sql("DROP TABLE investigation_steps")
        conn.exec_driver_sql("DROP TABLE investigations")
    with pytest.raises(ActiveInvestigationError):
        investigation_service.start_investigation(1, "anything")


def test_get_active_investigation(server_db):
    assert investigation_service.get_active_investigation(5)["investigation"] is None
    started = investigation_service.start_investigation(5, "wifi drops")
    active = investigation_service.get_active_investigation(5)
    assert active["investigation"]["id"] == started["investigation"]["id"]
    assert active["investigation"]["steps"] == []


def test_record_step_rules(server_db):
    started = investigation_service.start_investigation(1, "nas unreachable")
    investigation_id = started["investigation"]["id"]

    step = investigation_service.record_step(investigation_id, "pinged nas", plugin="Network", result_summary="no reply")
    assert step["status"] == "recorded"
    assert step["step"]["plugin"] == "Network"

    missing = investigation_service.record_step(9999, "anything")
    assert missing["error_type"] == "not_found"

    investigation_service.resolve_investigation(investigation_id, "power cycled switch")
    closed = investigation_service.record_step(investigation_id, "too late")
    assert closed["status"] == "error"
    assert closed["error_type"] == "invalid_state"


def test_resolve_twice_is_error(server_db):
    started = investigation_service.start_investigation(1, "cpu spike")
    investigation_id = started["investigation"]["id"]
    assert investigation_service.resolve_investigation(investigation_id, "killed job")["status"] == "resolved"

    again = investigation_service.resolve_investigation(investigation_id, "again")
    assert again["error_type"] == "invalid_state"

    assert investigation_service.resolve_investigation(12345, "nope")["error_type"] == "not_found"


def test_resolve_without_steps_creates_no_pattern(server_db, db_session):
    _resolved_incident(1, "plex buffering", "restarted plex")
    assert db_session.query(Pattern).count() == 0


def test_resolve_with_steps_creates_then_bumps_pattern(server_db, db_session):
    _resolved_incident(
        1,
        "plex buffering",
        "restarted plex",
        steps=[("checked cpu", "CPU at 95%"), ("checked logs", ""), ("listed containers", "transcoder stuck")],
    )
    pattern = db_session.query(Pattern).one()
    assert pattern.symptom == "plex buffering"
    assert pattern.common_cause == "CPU at 95%; transcoder stuck"
    assert pattern.occurrence_count == 1

    _resolved_incident(2, "plex buffering", "moved transcode to GPU", steps=[("checked gpu", "idle")])
    db_session.expire_all()
    pattern = db_session.query(Pattern).one()
    assert pattern.occurrence_count == 2
    assert pattern.resolution == "moved transcode to GPU"


def test_pattern_cause_truncated(server_db, db_session):
    long_summary = "x" * 250
    _resolved_incident(1, "long symptom", "fixed", steps=[("step", long_summary)])
    pattern = db_session.query(Pattern).one()
    assert len(pattern.common_cause) == 200
    assert pattern.common_cause.endswith("...")


def test_search_past_incidents_scores_and_orders(server_db, db_session):
    older = _resolved_incident(1, "grafana dashboard slow", "restarted prometheus")
    newer = _resolved_incident(2, "grafana login fails", "reset admin password")
    best = _resolved_incident(3, "dashboard slow in grafana", "tuned queries")
    investigation_service.start_investigation(4, "grafana slow but still open")

    db_session.get(Investigation, older).started_at = utcnow() - timedelta(days=3)
    db_session.get(Investigation, newer).started_at = utcnow() - timedelta(days=1)
    db_session.get(Investigation, best).started_at = utcnow() - timedelta(days=2)
    db_session.commit()

    result = investigation_service.search_past_incidents("Grafana SLOW dashboard")
    assert [item["id"] for item in result["results"]] == [best, older, newer]

    tied = investigation_service.search_past_incidents("grafana")
    assert [item["id"] for item in tied["results"]] == [newer, best, older]


def test_search_past_incidents_no_match(server_db):
    _resolved_incident(1, "dns broken", "fixed pihole")
    assert investigation_service.search_past_incidents("zfs scrub")["count"] == 0
    assert investigation_service.search_past_incidents("   ")["count"] == 0


def test_relevant_patterns_top_frequency_then_filter(server_db, db_session):
    for index in range(21):
        db_session.add(Pattern(symptom=f"common issue {index}", resolution="fix", occurrence_count=100 - index))
    db_session.add(Pattern(symptom="rare plex issue", resolution="fix", occurrence_count=1))
    db_session.commit()

    result = pattern_service.get_relevant_patterns("plex")
    assert result["count"] == 0

    result = pattern_service.get_relevant_patterns("COMMON")
    assert result["count"] == 3
    assert [item["occurrence_count"] for item in result["results"]] == [100, 99, 98]


def test_generate_incident_context(server_db, db_session):
    assert investigation_service.generate_incident_context("plex buffering") == ""

    _resolved_incident(1, "plex buffering", "restarted plex", steps=[("checked cpu", "CPU at 95%")])
    context = investigation_service.generate_incident_context("plex buffering")

    assert context.startswith("\n## Relevant Past Incidents\n")
    assert "### Known Patterns" in context
    assert "- **plex buffering**: Usually caused by CPU at 95%" in context
    assert "  Fix: restarted plex" in context
    assert "### Similar Past Issues" in context
    assert "h ago] plex buffering" in context
    assert "  Resolved: restarted plex" in context


def test_list_and_get_investigations(server_db):
    _resolved_incident(1, "first", "done", steps=[("a", "b")])
    investigation_service.start_investigation(2, "second")

    page = investigation_service.list_investigations(page=1, page_size=10)
    assert page["total_count"] == 2
    assert page["items"][0]["trigger"] == "second"
    assert page["items"][1]["step_count"] == 1
    assert "steps" not in page["items"][0]

    resolved_only = investigation_service.list_investigations(resolved=True)
    assert [item["trigger"] for item in resolved_only["items"]] == ["first"]

    detail = investigation_service.get_investigation(page["items"][1]["id"])
    assert detail["investigation"]["steps"][0]["action"] == "a"

    assert investigation_service.get_investigation(999)["error_type"] == "not_found"
