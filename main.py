# =============================================================================
# Marketing Intelligence API: FastAPI Backend
# =============================================================================
# Onboarding form in, competitive intelligence report out.
#
# Flow:
#   POST /workflows/intelligence  → run queued (202), worker pool picks it up
#   GET  /reports/latest          → 202 while processing, 200 with the report
#
# Run:  python main.py
# Test: curl http://localhost:8000/health
# =============================================================================

import hmac
import logging
import os
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from jose import JWTError, jwt as jose_jwt
from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session

from adapters import DataForSEOClient, build_adapters
from competitors import CompetitorDiscovery
from config import Settings, get_settings
from database import get_db, init_db
from errors import PipelineError, RunInProgressError
from http_client import build_http_client
from insights import InsightSynthesizer
from llm import ClaudeClient, PerplexityClient
from models import OnboardingRequest
from orchestrator import Orchestrator
from report_store import delete_reports, get_latest_report
from run_queue import RunQueue

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s  %(levelname)-8s  %(message)s",
)
logger = logging.getLogger("intel-report")

# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Marketing Intelligence API",
    version="1.0.0",
    description="Competitive intelligence reports from SERP, keyword, backlink and performance data",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def build_orchestrator(settings: Settings, http, queue: RunQueue) -> Orchestrator:
    claude = ClaudeClient(settings)
    return Orchestrator(
        settings=settings,
        adapters=build_adapters(settings, http),
        synthesizer=InsightSynthesizer(claude, PerplexityClient(settings, http)),
        discovery=CompetitorDiscovery(
            DataForSEOClient(settings, http) if settings.has_dataforseo else None,
            claude,
        ),
        queue=queue,
    )


@app.on_event("startup")
async def startup_event():
    settings = get_settings()
    settings.warn_missing()
    init_db()
    logger.info("Database tables ready")

    http = build_http_client(settings.http_timeout_seconds)
    queue = RunQueue(settings.run_workers)
    orchestrator = build_orchestrator(settings, http, queue)
    queue.start(orchestrator.run_workflow)

    app.state.http = http
    app.state.queue = queue
    app.state.orchestrator = orchestrator
    orchestrator.recover_runs()


@app.on_event("shutdown")
async def shutdown_event():
    queue: Optional[RunQueue] = getattr(app.state, "queue", None)
    if queue is not None:
        await queue.stop()
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
    logger.info("Shutdown complete")


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError):
    body = {"error": exc.message, "code": exc.code}
    if isinstance(exc, RunInProgressError) and exc.workflow_id:
        body["workflowId"] = exc.workflow_id
    return JSONResponse(status_code=exc.status_code, content=body)


def get_orchestrator(request: Request) -> Orchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Service is starting up")
    return orchestrator


# =============================================================================
# Auth: bearer JWT from the identity provider
# =============================================================================

class CurrentUser(BaseModel):
    id: str
    email: Optional[str] = None


def get_current_user(
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> CurrentUser:
    """FastAPI dependency: validates Bearer JWT and returns the current user."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Not authenticated")
    token = authorization[len("Bearer "):]
    key = settings.jwt_public_key or settings.jwt_secret
    if not key:
        raise HTTPException(status_code=401, detail="Authentication is not configured")
    try:
        payload = jose_jwt.decode(
            token,
            key,
            algorithms=[settings.jwt_algorithm],
            options={"verify_aud": False},
        )
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    return CurrentUser(id=user_id, email=payload.get("email"))


def require_scheduler_secret(
    x_scheduler_secret: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    if not settings.scheduler_secret:
        raise HTTPException(status_code=503, detail="Scheduler secret is not configured")
    if not x_scheduler_secret or not hmac.compare_digest(x_scheduler_secret, settings.scheduler_secret):
        raise HTTPException(status_code=401, detail="Invalid scheduler secret")


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


# =============================================================================
# Workflow endpoints
# =============================================================================

@app.post("/workflows/intelligence", status_code=202)
async def trigger_intelligence_workflow(
    request: Request,
    current_user: CurrentUser = Depends(get_current_user),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    try:
        data = await request.json()
    except ValueError:
        return JSONResponse(status_code=400, content={"error": "Body must be JSON", "code": "INVALID_PAYLOAD"})
    if not isinstance(data, dict):
        return JSONResponse(status_code=400, content={"error": "Body must be a JSON object", "code": "INVALID_PAYLOAD"})
    try:
        onboarding = OnboardingRequest.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        field_name = ".".join(str(part) for part in first["loc"])
        return JSONResponse(status_code=400, content={"error": f"{field_name}: {first['msg']}", "code": "INVALID_PAYLOAD"})

    result = await orchestrator.trigger_workflow(current_user.id, onboarding, _client_ip(request))
    return JSONResponse(status_code=202, content=result)


@app.get("/workflows/{workflow_id}")
def workflow_status(
    workflow_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    status = orchestrator.run_status(current_user.id, workflow_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Workflow not found")
    return status


# =============================================================================
# Report endpoints
# =============================================================================

_LOOKUP_STATUS = {"ready": 200, "processing": 202, "not_found": 404}


@app.get("/reports/latest")
def latest_report(
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    lookup = get_latest_report(db, current_user.id)
    return JSONResponse(status_code=_LOOKUP_STATUS[lookup.status], content=lookup.body())


@app.delete("/reports")
def remove_reports(
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    deleted = delete_reports(db, current_user.id)
    return {"deleted": deleted}


# =============================================================================
# Operator endpoints: scheduler + monitoring
# =============================================================================

@app.post("/scheduler/weekly-refresh", dependencies=[Depends(require_scheduler_secret)])
async def weekly_refresh(orchestrator: Orchestrator = Depends(get_orchestrator)):
    triggered = await orchestrator.schedule_refresh()
    return {"triggered": len(triggered), "workflowIds": triggered}


@app.get("/monitor/workflows", dependencies=[Depends(require_scheduler_secret)])
def monitor_workflows(days: int = 7, orchestrator: Orchestrator = Depends(get_orchestrator)):
    return orchestrator.workflow_stats(days=max(1, min(days, 90)))


# =============================================================================
# Health & info
# =============================================================================

@app.get("/health")
async def health(settings: Settings = Depends(get_settings)):
    queue: Optional[RunQueue] = getattr(app.state, "queue", None)
    return {
        "status": "ok",
        "timestamp": datetime.now().isoformat(),
        "anthropic_key_set": bool(settings.anthropic_api_key),
        "dataforseo_configured": settings.has_dataforseo,
        "queue": queue.stats() if queue is not None else None,
    }


@app.get("/info")
async def info(settings: Settings = Depends(get_settings)):
    return {
        "name": "Marketing Intelligence API",
        "version": "1.0.0",
        "model": settings.claude_model,
        "endpoints": {
            "trigger": "POST /workflows/intelligence",
            "workflow_status": "GET /workflows/{workflow_id}",
            "latest_report": "GET /reports/latest",
            "delete_reports": "DELETE /reports",
            "weekly_refresh": "POST /scheduler/weekly-refresh",
            "monitor": "GET /monitor/workflows",
            "health": "GET /health",
        },
    }


# =============================================================================
# Run
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", "8000"))
    uvicorn.run(app, host="0.0.0.0", port=port)
