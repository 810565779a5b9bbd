"""End-to-end tests for the HTTP API."""

import inspect
import threading
import time
from datetime import datetime

import pytest
from fastapi.testclient import TestClient

import main
from config import get_settings
from conftest import FakeAdapter, FakeClaude, fake_adapters, make_token
from database import Report, WorkflowRun, dump_json, get_db
from main import app

JANE = {
    "fullName": "Jane Doe",
    "websiteUrl": "https://example.com",
    "industry": "SaaS",
    "location": "United States",
}

SERP_ROWS = [
    {"search_engine": "google", "keyword": "saas crm", "position": 3, "url": "https://example.com/", "domain": "example.com", "is_target": True},
    {"search_engine": "google", "keyword": "saas crm", "position": 1, "url": "https://rival.com/", "domain": "rival.com", "is_target": False},
]


def _auth(user_id: str = "user-1") -> dict:
    return {"Authorization": f"Bearer {make_token(user_id)}"}


def _wait_for_report(client, user_id: str = "user-1", timeout: float = 10.0):
    deadline = time.monotonic() + timeout
    while True:
        resp = client.get("/reports/latest", headers=_auth(user_id))
        if resp.status_code != 202 or time.monotonic() > deadline:
            return resp
        time.sleep(0.05)


@pytest.fixture(autouse=True)
def clear_overrides():
    app.dependency_overrides.clear()
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def api(settings, session_factory, make_orchestrator, monkeypatch):
    """Wires the app to the per-test database and fakes; tweak ``api`` before opening a client."""
    gate = threading.Event()
    wiring = {
        "adapters": fake_adapters(serp=FakeAdapter(SERP_ROWS)),
        "primary": FakeClaude(gate=gate),
        "gate": gate,
    }

    def build(cfg, http, queue):
        return make_orchestrator(adapters=wiring["adapters"], primary=wiring["primary"], queue=queue)

    def override_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    monkeypatch.setattr(main, "build_orchestrator", build)
    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_settings] = lambda: settings
    yield wiring
    gate.set()


class TestIntelligenceFlow:
    def test_trigger_poll_and_fetch(self, api):
        with TestClient(app) as client:
            resp = client.post("/workflows/intelligence", json=JANE, headers=_auth())
            assert resp.status_code == 202
            workflow_id = resp.json()["workflowId"]
            assert resp.json()["status"] == "queued"

            pending = client.get("/reports/latest", headers=_auth())
            assert pending.status_code == 202
            assert pending.json()["status"] == "processing"
            assert pending.json()["workflowId"] == workflow_id

            api["gate"].set()
            ready = _wait_for_report(client)

            assert ready.status_code == 200
            body = ready.json()
            assert set(body) >= {"summary", "serpTimeline", "keywordOpportunities", "sentiment", "backlinks", "coreWebVitals", "techStack"}
            assert body["summary"]["recommendations"]
            assert all(0 <= r["confidence"] <= 1 for r in body["summary"]["recommendations"])
            assert body["serpTimeline"][0]["keyword"] == "saas crm"

            again = client.get("/reports/latest", headers=_auth())
            assert again.content == ready.content

            status = client.get(f"/workflows/{workflow_id}", headers=_auth())
            assert status.json()["status"] == "completed"
            assert "synthesis" in status.json()["stages"]

    def test_failed_generation_is_not_found(self, api):
        from errors import LLMError

        api["primary"] = FakeClaude(error=LLMError("Anthropic API key missing"))
        with TestClient(app) as client:
            resp = client.post("/workflows/intelligence", json=JANE, headers=_auth())
            assert resp.status_code == 202

            final = _wait_for_report(client)

            assert final.status_code == 404
            assert final.json()["lastRunStatus"] == "failed"
            assert "Anthropic" not in final.text

    def test_second_trigger_while_running_is_409(self, api):
        with TestClient(app) as client:
            first = client.post("/workflows/intelligence", json=JANE, headers=_auth())
            second = client.post("/workflows/intelligence", json=JANE, headers=_auth())
            api["gate"].set()

            assert second.status_code == 409
            assert second.json()["code"] == "RUN_IN_PROGRESS"
            assert second.json()["workflowId"] == first.json()["workflowId"]


class TestValidation:
    @pytest.mark.parametrize("missing", ["fullName", "websiteUrl", "industry", "location"])
    def test_missing_field_is_400_and_writes_nothing(self, api, session_factory, missing):
        body = {k: v for k, v in JANE.items() if k != missing}
        with TestClient(app) as client:
            resp = client.post("/workflows/intelligence", json=body, headers=_auth())

        assert resp.status_code == 400
        assert resp.json()["code"] == "INVALID_PAYLOAD"
        assert missing in resp.json()["error"]
        db = session_factory()
        try:
            assert db.query(WorkflowRun).count() == 0
        finally:
            db.close()

    def test_body_must_be_json_object(self, api):
        with TestClient(app) as client:
            not_json = client.post(
                "/workflows/intelligence",
                content="not json",
                headers={**_auth(), "Content-Type": "application/json"},
            )
            a_list = client.post("/workflows/intelligence", json=[JANE], headers=_auth())
        assert not_json.status_code == 400
        assert a_list.status_code == 400

    @pytest.mark.parametrize("value", [5, {"a": 1}, True])
    def test_competitor_domains_of_wrong_type_is_400(self, api, session_factory, value):
        with TestClient(app) as client:
            resp = client.post("/workflows/intelligence", json={**JANE, "competitorDomains": value}, headers=_auth())

        assert resp.status_code == 400
        assert resp.json()["code"] == "INVALID_PAYLOAD"
        assert "competitorDomains" in resp.json()["error"]
        db = session_factory()
        try:
            assert db.query(WorkflowRun).count() == 0
        finally:
            db.close()

    def test_second_account_on_same_network_is_403(self, api):
        with TestClient(app) as client:
            ok = client.post("/workflows/intelligence", json=JANE, headers={**_auth("user-1"), "X-Forwarded-For": "203.0.113.9"})
            blocked = client.post("/workflows/intelligence", json=JANE, headers={**_auth("user-2"), "X-Forwarded-For": "203.0.113.9"})
            api["gate"].set()
        assert ok.status_code == 202
        assert blocked.status_code == 403
        assert blocked.json()["code"] == "IP_LIMIT_EXCEEDED"


class TestAuth:
    def test_missing_token(self, api):
        with TestClient(app) as client:
            assert client.post("/workflows/intelligence", json=JANE).status_code == 401
            assert client.get("/reports/latest").status_code == 401

    def test_bad_token(self, api):
        with TestClient(app) as client:
            resp = client.get("/reports/latest", headers={"Authorization": "Bearer not-a-jwt"})
        assert resp.status_code == 401

    def test_other_users_workflow_is_404(self, api):
        with TestClient(app) as client:
            workflow_id = client.post("/workflows/intelligence", json=JANE, headers=_auth()).json()["workflowId"]
            api["gate"].set()
            resp = client.get(f"/workflows/{workflow_id}", headers=_auth("user-2"))
        assert resp.status_code == 404


class TestReports:
    def test_no_report_yet(self, api):
        with TestClient(app) as client:
            resp = client.get("/reports/latest", headers=_auth())
        assert resp.status_code == 404
        assert resp.json()["status"] == "not_found"

    def test_legacy_report_is_served_in_current_shape(self, api, session_factory):
        db = session_factory()
        db.add(WorkflowRun(id="wf-legacy", user_id="user-1", website_url="https://example.com",
                           status="completed", triggered_at=datetime.utcnow(), completed_at=datetime.utcnow()))
        db.add(Report(workflow_id="wf-legacy", payload_version=None, captured_at=datetime.utcnow(),
                      payload=dump_json({"overview": {"summary": "Legacy narrative", "recommendations": []}})))
        db.commit()
        db.close()

        with TestClient(app) as client:
            resp = client.get("/reports/latest", headers=_auth())
            deleted = client.delete("/reports", headers=_auth())
            after = client.get("/reports/latest", headers=_auth())

        assert resp.status_code == 200
        assert resp.json()["summary"]["executive_summary"] == "Legacy narrative"
        assert resp.json()["techStack"] == []
        assert deleted.json() == {"deleted": 1}
        assert after.status_code == 404


class TestOperatorEndpoints:
    def test_scheduler_requires_secret(self, api):
        with TestClient(app) as client:
            assert client.post("/scheduler/weekly-refresh").status_code == 401
            assert client.post("/scheduler/weekly-refresh", headers={"X-Scheduler-Secret": "wrong"}).status_code == 401
            resp = client.post("/scheduler/weekly-refresh", headers={"X-Scheduler-Secret": "scheduler-secret"})
        assert resp.status_code == 200
        assert resp.json() == {"triggered": 0, "workflowIds": []}

    def test_scheduler_unconfigured_is_503(self, api, settings):
        settings.scheduler_secret = ""
        with TestClient(app) as client:
            resp = client.post("/scheduler/weekly-refresh", headers={"X-Scheduler-Secret": "anything"})
        assert resp.status_code == 503

    def test_monitor(self, api):
        with TestClient(app) as client:
            resp = client.get("/monitor/workflows?days=3", headers={"X-Scheduler-Secret": "scheduler-secret"})
        assert resp.status_code == 200
        assert resp.json()["windowDays"] == 3
        assert resp.json()["total"] == 0
        assert resp.json()["queue"]["accepting"] is True

    def test_health(self, api):
        with TestClient(app) as client:
            resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"
        assert resp.json()["dataforseo_configured"] is True


@pytest.mark.parametrize("endpoint", [main.workflow_status, main.latest_report, main.remove_reports, main.monitor_workflows])
def test_database_routes_run_in_threadpool(endpoint):
    # sync endpoints are dispatched to FastAPI's threadpool and never block the run workers
    assert not inspect.iscoroutinefunction(endpoint)
