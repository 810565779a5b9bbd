# =============================================================================
# Workflow orchestrator: run lifecycle and stage execution
# =============================================================================
#
# queued -> running -> completed | failed      (terminal states are final)
#
# trigger_workflow()  validates, applies abuse limits, writes the queued run
#                     and hands its id to the RunQueue
# run_workflow()      executed by a queue worker: runs the stage graph,
#                     persisting each stage's rows as soon as it finishes
# recover_runs()      startup: re-queue queued runs, fail orphaned running ones
# schedule_refresh()  weekly re-run for profiles with a stale report
#
# Database work is synchronous SQLAlchemy; from async code it always goes
# through the loop's default executor.
# =============================================================================

import asyncio
import logging
import threading
import time
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.orm import Session

from adapters import AdapterSet, build_core_web_vitals
from competitors import CompetitorDiscovery, build_competitive_insights, build_serp_share_timeline
from config import Settings
from database import (
    ACTIVE_STATUSES,
    AIInsight,
    BacklinkMetric,
    BusinessProfile,
    ContentSentiment,
    KeywordMetric,
    OnboardingProfile,
    Report,
    SerpResult,
    SessionLocal,
    SignupFingerprint,
    TERMINAL_STATUSES,
    TechnicalAudit,
    WorkflowRun,
    dump_json,
    load_json,
    new_id,
)
from errors import (
    DailyLimitError,
    InvalidPayloadError,
    RunInProgressError,
    SignupLimitError,
    StageError,
    WorkflowTimeoutError,
)
from insights import PAYLOAD_VERSION, InsightSynthesizer, SynthesisInputs, SynthesisResult
from models import OnboardingRequest, WorkflowContext
from run_queue import QueueClosedError, RunQueue

logger = logging.getLogger("intel-report.orchestrator")


# ---------------------------------------------------------------------------
# Stage graph
# ---------------------------------------------------------------------------

@dataclass
class RunState:
    context: WorkflowContext
    outputs: dict = field(default_factory=dict)
    # started but not finished; what a timeout interrupted
    in_flight: set = field(default_factory=set)

    def get(self, name: str, default=None):
        value = self.outputs.get(name)
        return default if value is None else value


@dataclass
class Stage:
    name: str
    run: Callable[[RunState], Awaitable[Any]]
    depends_on: tuple = ()
    # (session, workflow_id, output) -> number of rows written
    persist: Optional[Callable[[Session, str, Any], int]] = None


def _check_graph(stages: list[Stage]) -> None:
    names = [s.name for s in stages]
    if len(set(names)) != len(names):
        raise ValueError("duplicate stage names")
    for stage in stages:
        unknown = set(stage.depends_on) - set(names)
        if unknown:
            raise ValueError(f"stage '{stage.name}' depends on unknown stage(s) {sorted(unknown)}")


def _stage_list(names) -> Optional[str]:
    return ", ".join(sorted(names)) or None


def stage_waves(stages: list[Stage]) -> list[list[Stage]]:
    """Kahn's algorithm, grouped: every stage in a wave only needs earlier waves."""
    _check_graph(stages)
    done: set[str] = set()
    remaining = list(stages)
    waves = []
    while remaining:
        wave = [s for s in remaining if set(s.depends_on) <= done]
        if not wave:
            raise ValueError(f"dependency cycle among {[s.name for s in remaining]}")
        waves.append(wave)
        done.update(s.name for s in wave)
        remaining = [s for s in remaining if s.name not in done]
    return waves


def stage_order(stages: list[Stage]) -> list[Stage]:
    """Sequential order: declaration order, with a stage pushed back until its dependencies ran."""
    _check_graph(stages)
    done: set[str] = set()
    ordered = []
    remaining = list(stages)
    while remaining:
        ready = next((s for s in remaining if set(s.depends_on) <= done), None)
        if ready is None:
            raise ValueError(f"dependency cycle among {[s.name for s in remaining]}")
        ordered.append(ready)
        done.add(ready.name)
        remaining.remove(ready)
    return ordered


# ---------------------------------------------------------------------------
# Persistence helpers: one per stage that writes rows
# ---------------------------------------------------------------------------

def _persist_serp(db: Session, workflow_id: str, rows: list[dict]) -> int:
    db.add_all([
        SerpResult(
            workflow_id=workflow_id,
            search_engine=r.get("search_engine", "google"),
            keyword=r["keyword"],
            position=r.get("position"),
            url=r.get("url"),
            domain=r.get("domain"),
            title=(r.get("title") or "")[:1024],
            is_target=1 if r.get("is_target") else 0,
        )
        for r in rows
    ])
    return len(rows)


def _persist_keywords(db: Session, workflow_id: str, rows: list[dict]) -> int:
    db.add_all([
        KeywordMetric(
            workflow_id=workflow_id,
            keyword=r["keyword"],
            volume=r.get("volume", 0),
            cpc=r.get("cpc", 0.0),
            difficulty=r.get("difficulty", 0.0),
            ctr_potential=r.get("ctr_potential", 0.0),
        )
        for r in rows
    ])
    return len(rows)


def _persist_sentiment(db: Session, workflow_id: str, rows: list[dict]) -> int:
    db.add_all([
        ContentSentiment(
            workflow_id=workflow_id,
            source=r.get("source"),
            label=r.get("label"),
            score=r.get("score"),
            sentiment=dump_json(r.get("sentiment") or {}),
        )
        for r in rows
    ])
    return len(rows)


def _persist_backlinks(db: Session, workflow_id: str, rows: list[dict]) -> int:
    db.add_all([
        BacklinkMetric(
            workflow_id=workflow_id,
            source_domain=r.get("source"),
            authority=r.get("authority", 0.0),
            anchor_text=r.get("anchor_text", ""),
        )
        for r in rows
    ])
    return len(rows)


def _audit_writer(audit_type: str):
    def persist(db: Session, workflow_id: str, rows: list[dict]) -> int:
        if not rows:
            return 0
        db.add(TechnicalAudit(workflow_id=workflow_id, audit_type=audit_type, payload=dump_json(rows)))
        return 1
    return persist


def _persist_onpage(db: Session, workflow_id: str, rows: list[dict]) -> int:
    payload = rows[0] if rows else {"status": "unavailable"}
    db.add(TechnicalAudit(workflow_id=workflow_id, audit_type="onpage", payload=dump_json(payload)))
    return len(rows)


def _persist_pagespeed(db: Session, workflow_id: str, rows: list[dict]) -> int:
    db.add_all([
        TechnicalAudit(
            workflow_id=workflow_id,
            audit_type=f"pagespeed_{r['strategy'].lower()}",
            payload=dump_json(r.get("payload") or {}),
        )
        for r in rows
    ])
    return len(rows)


def _persist_business(db: Session, workflow_id: str, rows: list[dict]) -> int:
    db.add_all([
        BusinessProfile(workflow_id=workflow_id, domain=r.get("target"), firmographics=dump_json(r))
        for r in rows
    ])
    return len(rows)


def _persist_competitive(db: Session, workflow_id: str, output: dict) -> int:
    db.add(BusinessProfile(
        workflow_id=workflow_id,
        domain="competitive_analysis",
        firmographics=dump_json(output),
    ))
    return 1


def _persist_insight(db: Session, workflow_id: str, result: SynthesisResult) -> int:
    db.add(AIInsight(workflow_id=workflow_id, provider=result.provider, summary=result.summary))
    return 1


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class Orchestrator:
    def __init__(
        self,
        settings: Settings,
        adapters: AdapterSet,
        synthesizer: InsightSynthesizer,
        discovery: CompetitorDiscovery,
        queue: Optional[RunQueue] = None,
        session_factory: Callable[[], Session] = SessionLocal,
    ):
        self.settings = settings
        self.adapters = adapters
        self.synthesizer = synthesizer
        self.discovery = discovery
        self.queue = queue
        self.session_factory = session_factory
        # serializes run-metadata writes: concurrent stages and the terminal status
        self._persist_lock = threading.Lock()

    # -- stage definitions ----------------------------------------------------

    def stages(self) -> list[Stage]:
        a = self.adapters

        async def competitors(s: RunState):
            return await self.discovery.discover(s.context)

        async def serp(s: RunState):
            return await a.serp.fetch(s.context, s.get("competitors", []))

        async def competitor_keywords(s: RunState):
            return await a.competitor_keywords.fetch(s.context, s.get("competitors", []))

        async def keywords(s: RunState):
            return await a.keywords.fetch(s.context)

        async def content_sentiment(s: RunState):
            return await a.content_sentiment.fetch(s.context, s.get("serp", []))

        async def crawl_insights(s: RunState):
            return await a.crawl.fetch(s.context, s.get("serp", []))

        async def domain_analytics(s: RunState):
            return await a.domain_analytics.fetch(s.context, s.get("serp", []), s.get("competitors", []))

        async def backlinks(s: RunState):
            return await a.backlinks.fetch(s.context)

        async def onpage(s: RunState):
            return await a.onpage.fetch(s.context)

        async def pagespeed(s: RunState):
            return await a.pagespeed.fetch(s.context)

        async def business_data(s: RunState):
            return await a.business_data.fetch(s.context, s.get("domain_analytics", []))

        async def news(s: RunState):
            return await a.news.fetch(s.context)

        async def contacts(s: RunState):
            return await a.contacts.fetch(s.context, s.get("news", []))

        async def competitive(s: RunState):
            serp_rows = s.get("serp", [])
            rivals = s.get("competitors", [])
            return {
                "competitors": rivals,
                "serp_timeline": build_serp_share_timeline(serp_rows),
                "competitive_insights": build_competitive_insights(serp_rows, rivals),
                "competitor_keywords": s.get("competitor_keywords", []),
                "newsroom": s.get("news", []),
                "contacts": s.get("contacts", []),
            }

        async def synthesis(s: RunState):
            agg = s.get("competitive", {})
            return await self.synthesizer.synthesize(SynthesisInputs(
                context=s.context,
                competitors=s.get("competitors", []),
                serp_results=s.get("serp", []),
                serp_timeline=agg.get("serp_timeline", []),
                keyword_metrics=s.get("keywords", []),
                competitor_keywords=s.get("competitor_keywords", []),
                content_sentiment=s.get("content_sentiment", []),
                crawl_insights=s.get("crawl_insights", []),
                domain_analytics=s.get("domain_analytics", []),
                backlinks=s.get("backlinks", []),
                onpage=s.get("onpage", []),
                core_web_vitals=build_core_web_vitals(s.get("pagespeed", [])),
                business_data=s.get("business_data", []),
                news=s.get("news", []),
                contacts=s.get("contacts", []),
                competitive=agg.get("competitive_insights", {}),
            ))

        graph = [
            Stage("competitors", competitors),
            Stage("serp", serp, ("competitors",), _persist_serp),
            Stage("competitor_keywords", competitor_keywords, ("competitors",)),
            Stage("keywords", keywords, (), _persist_keywords),
            Stage("content_sentiment", content_sentiment, ("serp",), _persist_sentiment),
            Stage("crawl_insights", crawl_insights, ("serp",), _audit_writer("crawl")),
            Stage("domain_analytics", domain_analytics, ("serp", "competitors"), _audit_writer("domain_analytics")),
            Stage("backlinks", backlinks, (), _persist_backlinks),
            Stage("onpage", onpage, (), _persist_onpage),
            Stage("pagespeed", pagespeed, (), _persist_pagespeed),
            Stage("business_data", business_data, ("domain_analytics",), _persist_business),
            Stage("news", news),
            Stage("contacts", contacts, ("news",)),
            Stage("competitive", competitive, ("serp", "competitors", "competitor_keywords", "news", "contacts"), _persist_competitive),
        ]
        graph.append(Stage("synthesis", synthesis, tuple(s.name for s in graph), _persist_insight))
        return graph

    # -- trigger --------------------------------------------------------------

    def create_run(
        self,
        user_id: str,
        request: OnboardingRequest,
        ip_address: Optional[str] = None,
        source: str = "user",
    ) -> str:
        """Validate and write the queued run. Raises before writing anything on rejection."""
        missing = request.missing_fields()
        if missing:
            raise InvalidPayloadError(f"{', '.join(missing)} {'is' if len(missing) == 1 else 'are'} required")

        website_url = request.normalized_url()
        db = self.session_factory()
        try:
            if source == "user":
                self._check_limits(db, user_id, ip_address)

            if self.settings.serialize_user_runs:
                active = (
                    db.query(WorkflowRun)
                    .filter(WorkflowRun.user_id == user_id, WorkflowRun.status.in_(ACTIVE_STATUSES))
                    .first()
                )
                if active is not None:
                    raise RunInProgressError("A report is already being generated", workflow_id=active.id)

            profile = db.query(OnboardingProfile).filter(OnboardingProfile.user_id == user_id).first()
            if profile is None:
                profile = OnboardingProfile(user_id=user_id)
                db.add(profile)
            profile.full_name = request.full_name
            profile.website_url = website_url
            profile.industry = request.industry
            profile.location = request.location
            profile.competitor_domains = dump_json(request.competitor_domains)
            profile.target_keywords = dump_json(request.target_keywords)
            profile.updated_at = datetime.utcnow()

            run = WorkflowRun(
                id=new_id(),
                user_id=user_id,
                website_url=website_url,
                status="queued",
                source=source,
                triggered_at=datetime.utcnow(),
            )
            run.update_meta(input={
                "full_name": request.full_name,
                "website_url": website_url,
                "industry": request.industry,
                "location": request.location,
                "competitor_domains": request.competitor_domains,
                "target_keywords": request.target_keywords,
            })
            db.add(run)

            if ip_address and source == "user":
                fingerprint = db.query(SignupFingerprint).filter(SignupFingerprint.user_id == user_id).first()
                if fingerprint is None:
                    db.add(SignupFingerprint(user_id=user_id, ip_address=ip_address))
                else:
                    fingerprint.ip_address = ip_address

            db.commit()
            return run.id
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _check_limits(self, db: Session, user_id: str, ip_address: Optional[str]) -> None:
        if self.settings.trial_ip_limit_enabled and ip_address:
            other = (
                db.query(SignupFingerprint)
                .filter(SignupFingerprint.ip_address == ip_address, SignupFingerprint.user_id != user_id)
                .first()
            )
            if other is not None:
                raise SignupLimitError("A free trial has already been used from this network")

        if self.settings.daily_run_limit:
            day_start = datetime.utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
            today = (
                db.query(WorkflowRun)
                .filter(WorkflowRun.user_id == user_id, WorkflowRun.triggered_at >= day_start)
                .count()
            )
            if today >= self.settings.daily_run_limit:
                raise DailyLimitError(f"Daily limit of {self.settings.daily_run_limit} reports reached")

    async def trigger_workflow(
        self,
        user_id: str,
        request: OnboardingRequest,
        ip_address: Optional[str] = None,
        source: str = "user",
    ) -> dict:
        loop = asyncio.get_running_loop()
        workflow_id = await loop.run_in_executor(None, self.create_run, user_id, request, ip_address, source)
        self._enqueue(workflow_id)
        logger.info(f"[{workflow_id}] Queued run for user {user_id} ({request.normalized_url()})")
        return {"workflowId": workflow_id, "status": "queued"}

    def _enqueue(self, workflow_id: str) -> None:
        if self.queue is None:
            logger.warning(f"[{workflow_id}] No run queue attached; run stays queued until recovery")
            return
        try:
            self.queue.submit(workflow_id)
        except QueueClosedError:
            logger.warning(f"[{workflow_id}] Run queue closed; run stays queued until recovery")

    # -- execution ------------------------------------------------------------

    async def run_workflow(self, workflow_id: str) -> None:
        loop = asyncio.get_running_loop()
        context = await loop.run_in_executor(None, self._start_run, workflow_id)
        if context is None:
            return

        state = RunState(context=context)
        started = time.monotonic()
        timeout = self.settings.workflow_timeout_seconds
        try:
            if timeout:
                await asyncio.wait_for(self._execute(state), timeout=timeout)
            else:
                await self._execute(state)
            await loop.run_in_executor(None, self._complete_run, workflow_id, state, time.monotonic() - started)
            logger.info(f"[{workflow_id}] Completed in {time.monotonic() - started:.1f}s")
        except asyncio.TimeoutError:
            error = WorkflowTimeoutError(f"Workflow exceeded {timeout:.0f}s (in flight: {_stage_list(state.in_flight)})")
            logger.error(f"[{workflow_id}] {error}")
            await loop.run_in_executor(None, self._fail_run, workflow_id, error, state, True)
        except Exception as e:
            logger.error(f"[{workflow_id}] Run failed: {e}", exc_info=True)
            await loop.run_in_executor(None, self._fail_run, workflow_id, e, state, False)

    async def _execute(self, state: RunState) -> None:
        stages = self.stages()
        if self.settings.parallel_stages:
            for wave in stage_waves(stages):
                tasks = [asyncio.ensure_future(self._run_stage(state, s)) for s in wave]
                try:
                    await asyncio.gather(*tasks)
                except BaseException:
                    for task in tasks:
                        task.cancel()
                    raise
        else:
            for stage in stage_order(stages):
                await self._run_stage(state, stage)

    async def _run_stage(self, state: RunState, stage: Stage) -> None:
        workflow_id = state.context.workflow_id
        state.in_flight.add(stage.name)
        t0 = time.monotonic()
        try:
            output = await stage.run(state)
        except Exception as e:
            raise StageError(stage.name, e) from e
        state.outputs[stage.name] = output
        duration = time.monotonic() - t0

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._persist_stage, workflow_id, stage, output, duration)
        except Exception as e:
            raise StageError(stage.name, e) from e
        state.in_flight.discard(stage.name)
        logger.info(f"[{workflow_id}] Stage {stage.name} done in {duration:.2f}s")

    def _persist_stage(self, workflow_id: str, stage: Stage, output: Any, duration: float) -> None:
        with self._persist_lock:
            self._write_stage(workflow_id, stage, output, duration)

    def _write_stage(self, workflow_id: str, stage: Stage, output: Any, duration: float) -> None:
        db = self.session_factory()
        try:
            run = db.get(WorkflowRun, workflow_id)
            if run is None or run.status in TERMINAL_STATUSES:
                logger.warning(f"[{workflow_id}] Run already finished; dropping late output of stage {stage.name}")
                return
            records = stage.persist(db, workflow_id, output) if stage.persist else (
                len(output) if isinstance(output, (list, dict)) else 0
            )
            stages = dict(run.meta.get("stages") or {})
            stages[stage.name] = {
                "status": "completed",
                "duration_ms": round(duration * 1000),
                "records": records,
            }
            run.update_meta(stages=stages)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _start_run(self, workflow_id: str) -> Optional[WorkflowContext]:
        db = self.session_factory()
        try:
            run = db.get(WorkflowRun, workflow_id)
            if run is None:
                logger.warning(f"[{workflow_id}] Run not found, skipping")
                return None
            if run.status != "queued":
                logger.warning(f"[{workflow_id}] Run is '{run.status}', not queued; skipping")
                return None

            snapshot = run.meta.get("input") or {}
            if not snapshot:
                profile = db.query(OnboardingProfile).filter(OnboardingProfile.user_id == run.user_id).first()
                if profile is not None:
                    snapshot = {
                        "full_name": profile.full_name,
                        "website_url": profile.website_url,
                        "industry": profile.industry,
                        "location": profile.location,
                        "competitor_domains": load_json(profile.competitor_domains, []),
                        "target_keywords": load_json(profile.target_keywords, []),
                    }

            run.status = "running"
            run.update_meta(started_at=datetime.utcnow().isoformat())
            db.commit()

            return WorkflowContext(
                workflow_id=run.id,
                user_id=run.user_id,
                full_name=snapshot.get("full_name", ""),
                website_url=snapshot.get("website_url") or run.website_url,
                industry=snapshot.get("industry", ""),
                location=snapshot.get("location", ""),
                competitor_domains=snapshot.get("competitor_domains") or [],
                target_keywords=snapshot.get("target_keywords") or [],
            )
        finally:
            db.close()

    def _complete_run(self, workflow_id: str, state: RunState, elapsed: float) -> None:
        """Report row and terminal status land in one transaction."""
        with self._persist_lock:
            self._write_completion(workflow_id, state, elapsed)

    def _write_completion(self, workflow_id: str, state: RunState, elapsed: float) -> None:
        result: SynthesisResult = state.outputs["synthesis"]
        now = datetime.utcnow()
        db = self.session_factory()
        try:
            run = db.get(WorkflowRun, workflow_id)
            db.add(Report(
                workflow_id=workflow_id,
                payload=dump_json(result.payload),
                payload_version=PAYLOAD_VERSION,
                captured_at=now,
            ))
            run.status = "completed"
            run.completed_at = now
            run.update_meta(completed_at=now.isoformat(), duration_ms=round(elapsed * 1000))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _fail_run(self, workflow_id: str, error: BaseException, state: RunState, is_timeout: bool) -> None:
        with self._persist_lock:
            self._write_failure(workflow_id, error, state, is_timeout)

    def _write_failure(self, workflow_id: str, error: BaseException, state: RunState, is_timeout: bool) -> None:
        cause = error.cause if isinstance(error, StageError) else error
        failed_stage = error.stage if isinstance(error, StageError) else _stage_list(state.in_flight)
        now = datetime.utcnow()
        db = self.session_factory()
        try:
            run = db.get(WorkflowRun, workflow_id)
            if run is None or run.status in TERMINAL_STATUSES:
                return
            run.status = "failed"
            run.completed_at = now
            run.update_meta(
                error=str(cause),
                error_type=type(cause).__name__,
                stack="".join(traceback.format_exception(type(cause), cause, cause.__traceback__)),
                failed_stage=failed_stage,
                stages_in_flight=sorted(state.in_flight),
                failed_at=now.isoformat(),
                is_timeout=is_timeout,
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # -- recovery / scheduling / monitoring ---------------------------------

    def recover_runs(self) -> dict:
        """Fail runs a dead process left 'running'; return queued ids for resubmission."""
        db = self.session_factory()
        try:
            now = datetime.utcnow()
            interrupted = db.query(WorkflowRun).filter(WorkflowRun.status == "running").all()
            for run in interrupted:
                run.status = "failed"
                run.completed_at = now
                run.update_meta(
                    error="Run interrupted by process restart",
                    error_type="Interrupted",
                    interrupted=True,
                    is_timeout=False,
                    failed_at=now.isoformat(),
                )
            queued = (
                db.query(WorkflowRun)
                .filter(WorkflowRun.status == "queued")
                .order_by(WorkflowRun.triggered_at.asc())
                .all()
            )
            db.commit()
            result = {"requeued": [r.id for r in queued], "interrupted": [r.id for r in interrupted]}
        finally:
            db.close()

        for workflow_id in result["requeued"]:
            self._enqueue(workflow_id)
        if result["requeued"] or result["interrupted"]:
            logger.info(
                f"Recovery: {len(result['requeued'])} run(s) re-queued, "
                f"{len(result['interrupted'])} interrupted run(s) marked failed"
            )
        return result

    def _stale_profiles(self) -> list[OnboardingProfile]:
        cutoff = datetime.utcnow() - timedelta(days=self.settings.refresh_interval_days)
        db = self.session_factory()
        try:
            stale = []
            for profile in db.query(OnboardingProfile).all():
                runs = db.query(WorkflowRun).filter(WorkflowRun.user_id == profile.user_id)
                if runs.filter(WorkflowRun.status.in_(ACTIVE_STATUSES)).first() is not None:
                    continue
                recent = (
                    runs.filter(WorkflowRun.status == "completed", WorkflowRun.completed_at >= cutoff)
                    .first()
                )
                if recent is None:
                    stale.append(profile)
            return stale
        finally:
            db.close()

    async def schedule_refresh(self) -> list[str]:
        loop = asyncio.get_running_loop()
        profiles = await loop.run_in_executor(None, self._stale_profiles)
        triggered = []
        for profile in profiles:
            request = OnboardingRequest(
                fullName=profile.full_name,
                websiteUrl=profile.website_url,
                industry=profile.industry,
                location=profile.location,
                competitorDomains=load_json(profile.competitor_domains, []),
                targetKeywords=load_json(profile.target_keywords, []),
            )
            try:
                result = await self.trigger_workflow(profile.user_id, request, source="scheduler")
                triggered.append(result["workflowId"])
            except (InvalidPayloadError, RunInProgressError) as e:
                logger.warning(f"Weekly refresh skipped user {profile.user_id}: {e}")
        logger.info(f"Weekly refresh: {len(triggered)} run(s) queued out of {len(profiles)} stale profile(s)")
        return triggered

    def run_status(self, user_id: str, workflow_id: str) -> Optional[dict]:
        db = self.session_factory()
        try:
            run = db.get(WorkflowRun, workflow_id)
            if run is None or run.user_id != user_id:
                return None
            meta = run.meta
            body = {
                "workflowId": run.id,
                "status": run.status,
                "triggeredAt": run.triggered_at.isoformat() if run.triggered_at else None,
                "completedAt": run.completed_at.isoformat() if run.completed_at else None,
                "stages": meta.get("stages") or {},
            }
            if run.status == "failed":
                body["error"] = "Report generation failed"
                body["timedOut"] = bool(meta.get("is_timeout"))
            return body
        finally:
            db.close()

    def workflow_stats(self, days: int = 7) -> dict:
        since = datetime.utcnow() - timedelta(days=days)
        db = self.session_factory()
        try:
            runs = db.query(WorkflowRun).filter(WorkflowRun.triggered_at >= since).all()
            by_status = {status: 0 for status in ("queued", "running", "completed", "failed")}
            durations = []
            errors = []
            for run in runs:
                by_status[run.status] = by_status.get(run.status, 0) + 1
                meta = run.meta
                if run.status == "completed" and meta.get("duration_ms") is not None:
                    durations.append(meta["duration_ms"])
                if run.status == "failed":
                    errors.append({
                        "workflowId": run.id,
                        "error": meta.get("error"),
                        "errorType": meta.get("error_type"),
                        "failedStage": meta.get("failed_stage"),
                        "isTimeout": bool(meta.get("is_timeout")),
                        "occurredAt": meta.get("failed_at"),
                    })
            finished = by_status["completed"] + by_status["failed"]
            errors.sort(key=lambda e: e["occurredAt"] or "", reverse=True)
            return {
                "windowDays": days,
                "total": len(runs),
                "byStatus": by_status,
                "successRate": round(by_status["completed"] / finished * 100, 1) if finished else None,
                "averageDurationMs": round(sum(durations) / len(durations)) if durations else None,
                "recentErrors": errors[:10],
                "queue": self.queue.stats() if self.queue is not None else None,
            }
        finally:
            db.close()
