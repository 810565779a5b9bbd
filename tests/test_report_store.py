"""Tests for latest-report lookup and stored payload upgrades."""

from datetime import datetime, timedelta

import pytest

from database import Report, WorkflowRun, dump_json, load_json
from report_store import CURRENT_VERSION, delete_reports, get_latest_report, upgrade_payload

LEGACY_PAYLOAD = {
    "overview": {
        "id": "legacy-1",
        "generated_at": "2025-01-01T00:00:00",
        "summary": "Legacy narrative",
        "recommendations": [{"title": "Old idea", "description": "d", "confidence": 75}],
    },
    "keywordOpportunities": [{"keyword": "crm", "volume": 10, "difficulty": 20, "ctrPotential": 0.1}],
}


def _run(db, run_id, status, user_id="user-1", minutes_ago=0):
    run = WorkflowRun(
        id=run_id,
        user_id=user_id,
        website_url="https://example.com",
        status=status,
        triggered_at=datetime.utcnow() - timedelta(minutes=minutes_ago),
    )
    if status in ("completed", "failed"):
        run.completed_at = run.triggered_at + timedelta(seconds=30)
    db.add(run)
    db.commit()
    return run


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


class TestUpgradePayload:
    def test_v1_reshaped_without_mutating_input(self):
        upgraded = upgrade_payload(LEGACY_PAYLOAD, None)

        assert "overview" not in upgraded
        assert upgraded["summary"]["id"] == "legacy-1"
        assert upgraded["summary"]["captured_at"] == "2025-01-01T00:00:00"
        assert upgraded["summary"]["executive_summary"] == "Legacy narrative"
        assert upgraded["summary"]["recommendations"][0]["confidence"] == 0.75
        assert upgraded["serpTimeline"] == []
        assert upgraded["keywordOpportunities"] == LEGACY_PAYLOAD["keywordOpportunities"]
        assert "overview" in LEGACY_PAYLOAD

    def test_current_version_untouched(self):
        payload = {"summary": {"executive_summary": "x", "recommendations": []}}
        assert upgrade_payload(payload, CURRENT_VERSION) == payload


class TestGetLatestReport:
    def test_not_found_without_runs(self, db):
        lookup = get_latest_report(db, "user-1")
        assert lookup.status == "not_found"
        assert "lastRunStatus" not in lookup.body()

    def test_processing_while_run_active(self, db):
        _run(db, "wf-1", "running")
        lookup = get_latest_report(db, "user-1")
        body = lookup.body()
        assert lookup.status == "processing"
        assert body["workflowId"] == "wf-1"
        assert body["workflowStatus"] == "running"
        assert "error" not in body

    def test_failed_only_run_reports_last_status(self, db):
        _run(db, "wf-1", "failed")
        body = get_latest_report(db, "user-1").body()
        assert body["status"] == "not_found"
        assert body["lastRunStatus"] == "failed"
        assert body["occurredAt"]

    def test_newest_report_wins_and_legacy_rows_stay_put(self, db):
        _run(db, "wf-old", "completed", minutes_ago=60)
        _run(db, "wf-new", "completed", minutes_ago=5)
        db.add(Report(
            workflow_id="wf-old",
            payload=dump_json({"summary": {"executive_summary": "old", "recommendations": []}}),
            payload_version=CURRENT_VERSION,
            captured_at=datetime.utcnow() - timedelta(minutes=59),
        ))
        db.add(Report(
            workflow_id="wf-new",
            payload=dump_json(LEGACY_PAYLOAD),
            payload_version=None,
            captured_at=datetime.utcnow() - timedelta(minutes=4),
        ))
        db.commit()

        lookup = get_latest_report(db, "user-1")

        assert lookup.status == "ready"
        assert lookup.workflow_id == "wf-new"
        assert lookup.body()["summary"]["executive_summary"] == "Legacy narrative"
        stored = db.query(Report).filter(Report.workflow_id == "wf-new").one()
        assert stored.payload_version is None
        assert "overview" in load_json(stored.payload, {})

    def test_report_beats_active_run(self, db):
        _run(db, "wf-1", "completed", minutes_ago=10)
        db.add(Report(workflow_id="wf-1", payload=dump_json({"summary": {}}), payload_version=CURRENT_VERSION,
                      captured_at=datetime.utcnow()))
        _run(db, "wf-2", "queued")
        db.commit()
        assert get_latest_report(db, "user-1").status == "ready"

    def test_other_users_reports_invisible(self, db):
        _run(db, "wf-1", "completed", user_id="someone-else")
        db.add(Report(workflow_id="wf-1", payload="{}", payload_version=CURRENT_VERSION, captured_at=datetime.utcnow()))
        db.commit()
        assert get_latest_report(db, "user-1").status == "not_found"


def test_delete_reports(db):
    _run(db, "wf-1", "completed")
    db.add(Report(workflow_id="wf-1", payload="{}", payload_version=CURRENT_VERSION, captured_at=datetime.utcnow()))
    db.commit()

    assert delete_reports(db, "user-1") == 1
    assert get_latest_report(db, "user-1").status == "not_found"
    assert delete_reports(db, "nobody") == 0
