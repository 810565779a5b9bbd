"""
report_store.py: latest-report lookup and stored payload upgrades.

Stored payloads carry a version (Report.payload_version, NULL meaning 1).
Reading a report runs it through MIGRATIONS up to CURRENT_VERSION on a copy;
the stored row is never rewritten.
"""

import copy
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from database import ACTIVE_STATUSES, Report, WorkflowRun, load_json
from insights import PAYLOAD_VERSION, clamp_confidence

logger = logging.getLogger("intel-report.reports")

CURRENT_VERSION = PAYLOAD_VERSION

REPORT_SECTIONS = ("serpTimeline", "keywordOpportunities", "sentiment", "backlinks", "coreWebVitals", "techStack")


# ---------------------------------------------------------------------------
# Migrations: each takes a payload at version N and returns version N + 1
# ---------------------------------------------------------------------------

def _v1_to_v2(payload: dict) -> dict:
    """
    v1 kept the narrative under ``overview`` with ``summary`` as the text,
    ``generated_at`` as the timestamp and recommendation confidence as 0-100.
    """
    overview = payload.pop("overview", None) or {}
    if "summary" in payload and isinstance(payload["summary"], dict):
        # already in the new layout but never tagged
        summary = payload["summary"]
    else:
        text = overview.get("executive_summary", overview.get("summary", ""))
        summary = {
            "id": overview.get("id") or payload.pop("id", None),
            "captured_at": overview.get("captured_at") or overview.get("generated_at") or payload.pop("generated_at", None),
            "executive_summary": text if isinstance(text, str) else "",
            "recommendations": overview.get("recommendations") or [],
        }
    summary["recommendations"] = [
        {
            "title": rec.get("title", ""),
            "description": rec.get("description", ""),
            "confidence": clamp_confidence(rec.get("confidence")),
        }
        for rec in summary.get("recommendations") or []
        if isinstance(rec, dict)
    ]
    payload["summary"] = summary
    for section in REPORT_SECTIONS:
        if not isinstance(payload.get(section), list):
            payload[section] = []
    return payload


MIGRATIONS: dict[int, Callable[[dict], dict]] = {
    1: _v1_to_v2,
}


def upgrade_payload(payload: dict, version: Optional[int]) -> dict:
    """Return a copy of ``payload`` upgraded to CURRENT_VERSION."""
    version = version or 1
    upgraded = copy.deepcopy(payload)
    while version < CURRENT_VERSION:
        migrate = MIGRATIONS.get(version)
        if migrate is None:
            raise ValueError(f"no migration registered for report payload v{version}")
        upgraded = migrate(upgraded)
        version += 1
    return upgraded


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------

@dataclass
class ReportLookup:
    status: str                                # "ready" | "processing" | "not_found"
    payload: Optional[dict] = None
    workflow_id: Optional[str] = None
    workflow_status: Optional[str] = None
    triggered_at: Optional[datetime] = None
    last_run_status: Optional[str] = None
    occurred_at: Optional[datetime] = None

    def body(self) -> dict:
        """JSON body for the HTTP layer. Never includes error details."""
        if self.status == "ready":
            return self.payload
        if self.status == "processing":
            return {
                "status": "processing",
                "workflowId": self.workflow_id,
                "workflowStatus": self.workflow_status,
                "triggeredAt": self.triggered_at.isoformat() if self.triggered_at else None,
            }
        body = {"status": "not_found", "message": "No report yet. Complete onboarding to generate one."}
        if self.last_run_status:
            body["lastRunStatus"] = self.last_run_status
            body["occurredAt"] = self.occurred_at.isoformat() if self.occurred_at else None
            body["message"] = "Report generation failed. Please try again."
        return body


def get_latest_report(db: Session, user_id: str) -> ReportLookup:
    report = (
        db.query(Report)
        .join(WorkflowRun, Report.workflow_id == WorkflowRun.id)
        .filter(WorkflowRun.user_id == user_id)
        .order_by(Report.captured_at.desc())
        .first()
    )
    if report is not None:
        stored = load_json(report.payload, {})
        return ReportLookup(
            status="ready",
            payload=upgrade_payload(stored, report.payload_version),
            workflow_id=report.workflow_id,
        )

    active = (
        db.query(WorkflowRun)
        .filter(WorkflowRun.user_id == user_id, WorkflowRun.status.in_(ACTIVE_STATUSES))
        .order_by(WorkflowRun.triggered_at.desc())
        .first()
    )
    if active is not None:
        return ReportLookup(
            status="processing",
            workflow_id=active.id,
            workflow_status=active.status,
            triggered_at=active.triggered_at,
        )

    last = (
        db.query(WorkflowRun)
        .filter(WorkflowRun.user_id == user_id)
        .order_by(WorkflowRun.triggered_at.desc())
        .first()
    )
    if last is not None and last.status == "failed":
        return ReportLookup(
            status="not_found",
            workflow_id=last.id,
            last_run_status=last.status,
            occurred_at=last.completed_at or last.triggered_at,
        )
    return ReportLookup(status="not_found")


def delete_reports(db: Session, user_id: str) -> int:
    run_ids = [r.id for r in db.query(WorkflowRun.id).filter(WorkflowRun.user_id == user_id).all()]
    if not run_ids:
        return 0
    deleted = (
        db.query(Report)
        .filter(Report.workflow_id.in_(run_ids))
        .delete(synchronize_session=False)
    )
    db.commit()
    logger.info(f"Deleted {deleted} report(s) for user {user_id}")
    return deleted
