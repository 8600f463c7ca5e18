from datetime import timedelta

from core.models import Fact, utcnow
from core.services import assistant_tools, investigation_service, knowledge_service


def test_remember_and_recall(server_db, db_session):
    assert assistant_tools.remember_fact("docker:nginx", "nginx is the proxy") == "Remembered: [docker:nginx] nginx is the proxy"
    knowledge_service.remember_fact(topic="docker:plex", fact="plex might use the GPU", confidence=0.4)
    old = knowledge_service.remember_fact(topic="docker:plex", fact="plex lives on the nas", confidence=0.7)
    fact = db_session.get(Fact, old["fact"]["id"])
    fact.last_verified = utcnow() - timedelta(days=40)
    db_session.commit()

    reply = assistant_tools.recall_knowledge("docker")
    assert reply.startswith("**What I know about docker:**\n")
    assert "**docker:nginx**\n- nginx is the proxy\n" in reply
    assert "- plex might use the GPU (uncertain)" in reply
    assert "- plex lives on the nas ⚠️" in reply


def test_recall_empty_messages(server_db):
    assert assistant_tools.recall_knowledge("zfs") == "I don't have any knowledge about 'zfs' yet."
    assert assistant_tools.recall_knowledge() == "I don't have any knowledge stored yet."


def test_recall_includes_low_confidence(server_db):
    knowledge_service.remember_fact(topic="host", fact="barely known", confidence=0.1)
    assert "barely known (uncertain)" in assistant_tools.recall_knowledge("host")


def test_alias_tools(server_db):
    assert assistant_tools.store_alias("container", "media server", "plex") == "Stored alias: media server → plex"
    assert assistant_tools.resolve_alias("container", "restart the media server") == "Resolved 'restart the media server' to: plex"
    assert assistant_tools.resolve_alias("container", "toaster") == "No alias found for 'toaster' in container aliases."


def test_correction_and_invalidate(server_db):
    assistant_tools.remember_fact("host", "nas has 16GB")
    assert assistant_tools.learn_correction("host", "16GB", "nas has 32GB") == "Got it, updated my knowledge: nas has 32GB"
    assert assistant_tools.invalidate_knowledge("host", "32GB") == "Marked knowledge about '32GB' in host as outdated."
    assert knowledge_service.recall(topic="host")["count"] == 0


def test_investigation_flow(server_db):
    reply = assistant_tools.start_investigation(100, "grafana is slow")
    assert reply.startswith("Started investigation #1: grafana is slow\nNo similar past incidents found.")
    assert reply.endswith("Use RecordStep() to log each diagnostic action.")

    again = assistant_tools.start_investigation(100, "other")
    assert again.startswith("Already have an active investigation (#1): grafana is slow\n")

    assert assistant_tools.record_step(100, "checked prometheus", "Prometheus", "scrape lag 30s") == (
        "Recorded: checked prometheus → scrape lag 30s"
    )
    assert assistant_tools.record_step(100, "checked disk") == "Recorded: checked disk"

    status = assistant_tools.get_investigation_status(100)
    assert status.startswith("**Active Investigation #1**\nProblem: grafana is slow\nDuration: 0 minutes\nSteps taken: 2")
    assert "] checked prometheus\n          → scrape lag 30s" in status

    resolved = assistant_tools.resolve_investigation(100, "restarted prometheus")
    assert resolved.startswith("Investigation #1 resolved: restarted prometheus\nSteps taken: 2\nSummary:\n  - checked prometheus")
    assert resolved.endswith("This incident has been saved for future reference.")

    assert assistant_tools.get_investigation_status(100) == "No active investigation in this thread."
    assert assistant_tools.record_step(100, "late") == "No active investigation. Call StartInvestigation first."
    assert assistant_tools.resolve_investigation(100, "again") == "No active investigation to resolve."


def test_new_investigation_shows_past_context(server_db):
    assistant_tools.start_investigation(1, "plex buffering")
    assistant_tools.record_step(1, "checked cpu", result="CPU pegged")
    assistant_tools.resolve_investigation(1, "restarted transcoder")

    reply = assistant_tools.start_investigation(2, "plex buffering again")
    assert "## Relevant Past Incidents" in reply
    assert "- **plex buffering**: Usually caused by CPU pegged" in reply


def test_stale_cache_falls_back_to_store(server_db):
    assistant_tools.start_investigation(9, "dns broken")
    active_id = investigation_service.get_active_investigation(9)["investigation"]["id"]
    # Resolved behind the assistant's back, e.g. from the admin API.
    investigation_service.resolve_investigation(active_id, "fixed elsewhere")

    assert assistant_tools.record_step(9, "dig example.com") == "No active investigation. Call StartInvestigation first."

    assistant_tools.start_investigation(9, "dns broken again")
    assert assistant_tools.record_step(9, "dig example.com") == "Recorded: dig example.com"


def test_search_past_incidents_reply(server_db):
    assert assistant_tools.search_past_incidents("zfs") == "No past incidents found matching 'zfs'."

    assistant_tools.start_investigation(1, "zfs scrub slow")
    assistant_tools.record_step(1, "zpool status")
    assistant_tools.resolve_investigation(1, "replaced disk")

    reply = assistant_tools.search_past_incidents("zfs")
    assert reply.startswith("Found 1 past incident(s):\n\n**#1** (0 hours ago)\n  Problem: zfs scrub slow\n")
    assert "  Resolution: replaced disk\n  Steps: 1" in reply
