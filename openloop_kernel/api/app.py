"""
Open Loop Kernel API: FastAPI endpoints.

Exposes the kernel via a small REST surface for:
- Open-loop refresh and the prioritized active list
- User overrides (complete, dismiss, snooze, lane)
- Orchestrator status, forced ticks and the action-plan log
- Job queue inspection

Every error response has the shape {"error": {"code": ..., "message": ...}}.
"""

import logging
import sqlite3
from datetime import timedelta
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from openloop_kernel.consolidation.prioritizer import prioritize
from openloop_kernel.cursor.store import CursorStore
from openloop_kernel.extraction.pipeline import ExtractionPipeline
from openloop_kernel.jobs.handlers import (
    METRICS_JOB,
    OPEN_LOOPS_JOB,
    make_metrics_handler,
    make_open_loops_handler,
)
from openloop_kernel.jobs.queue import JobQueue, QueueFullError
from openloop_kernel.jobs.worker import JobWorker
from openloop_kernel.models.config import KernelConfig
from openloop_kernel.models.job import JobStatus
from openloop_kernel.models.obligation import Lane, ObligationStatus
from openloop_kernel.obligations.store import ObligationNotFoundError, ObligationStore
from openloop_kernel.orchestrator.runner import OrchestratorRunner
from openloop_kernel.orchestrator.state_store import OrchestratorStateStore
from openloop_kernel.plans.store import ActionPlanStore
from openloop_kernel.timeutil import utcnow
from openloop_kernel.upstream.client import (
    Classifier,
    HttpClassifier,
    HttpMessageSource,
    MessageSource,
    UpstreamError,
)

logger = logging.getLogger(__name__)

MAX_REFRESH_HOURS = 240
MAX_SNOOZE_HOURS = 720


# --- Request Models ---

class SnoozeRequest(BaseModel):
    hours: float = Field(gt=0, le=MAX_SNOOZE_HOURS)


class LaneRequest(BaseModel):
    lane: Optional[Lane] = None   # None clears the override


class EnqueueRequest(BaseModel):
    type: str
    conversation_id: Optional[str] = None
    payload: dict = {}
    dedupe_key: Optional[str] = None


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": {"code": code, "message": message}})


# --- Application Factory ---

def create_app(
    config: Optional[KernelConfig] = None,
    source: Optional[MessageSource] = None,
    classifier: Optional[Classifier] = None,
    obligation_store: Optional[ObligationStore] = None,
    cursor_store: Optional[CursorStore] = None,
    plan_store: Optional[ActionPlanStore] = None,
    state_store: Optional[OrchestratorStateStore] = None,
    job_queue: Optional[JobQueue] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    config = config or KernelConfig()
    if config.log_level:
        configure_logging(config.log_level)

    app = FastAPI(
        title="Open Loop Kernel API",
        description="Conversation obligations, backfill orchestration and jobs",
        version="0.1.0",
    )

    # Initialize components
    src = source or HttpMessageSource(
        config.source_base_url, config.source_api_key, timeout=config.upstream_timeout_seconds
    )
    clf = classifier or HttpClassifier(config.classifier_url, timeout=config.classifier_timeout_seconds)
    obs = obligation_store or ObligationStore(config.db_path)
    cs = cursor_store or CursorStore(config.db_path)
    ps = plan_store or ActionPlanStore(config.db_path)
    ss = state_store or OrchestratorStateStore(config.db_path)
    jq = job_queue or JobQueue(config.db_path, config.jobs)

    pipeline = ExtractionPipeline(src, clf, obs, cs, config.extraction)
    worker = JobWorker(jq)
    worker.register_handler(METRICS_JOB, make_metrics_handler(src))
    worker.register_handler(OPEN_LOOPS_JOB, make_open_loops_handler(pipeline))
    runner = OrchestratorRunner(
        source=src,
        state_store=ss,
        plan_store=ps,
        obligation_store=obs,
        job_queue=jq,
        pipeline=pipeline,
        worker=worker,
        config=config.orchestrator,
    )

    # Store components on app state for access in endpoints
    app.state.config = config
    app.state.source = src
    app.state.obligation_store = obs
    app.state.cursor_store = cs
    app.state.plan_store = ps
    app.state.job_queue = jq
    app.state.pipeline = pipeline
    app.state.worker = worker
    app.state.runner = runner

    # === ERROR SHAPE ===

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        code = {404: "not_found", 400: "bad_request"}.get(exc.status_code, "http_error")
        return _error(exc.status_code, code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        return _error(422, "invalid_request", str(exc.errors()))

    @app.exception_handler(ObligationNotFoundError)
    async def not_found(request: Request, exc: ObligationNotFoundError):
        return _error(404, "not_found", f"Open loop not found: {exc}")

    @app.exception_handler(UpstreamError)
    async def upstream_error(request: Request, exc: UpstreamError):
        return _error(502, "upstream_unavailable", str(exc))

    @app.exception_handler(QueueFullError)
    async def queue_full(request: Request, exc: QueueFullError):
        return _error(503, "queue_full", str(exc))

    @app.exception_handler(sqlite3.Error)
    async def persistence_error(request: Request, exc: sqlite3.Error):
        logger.exception("Persistence failure on %s", request.url.path)
        return _error(500, "persistence_error", "storage failure")

    # === OPEN LOOPS ===

    @app.post("/open-loops/refresh")
    async def refresh_open_loops(
        hours: int = Query(48, ge=1, le=MAX_REFRESH_HOURS),
        force: bool = False,
    ):
        """Incrementally extract obligations from recently active conversations."""
        summary = await pipeline.refresh_recent(hours=hours, force=force)
        return summary.model_dump(mode="json")

    @app.get("/open-loops/active")
    def active_open_loops(
        lane: Optional[str] = Query(None, pattern="^(now|later)$"),
        limit: int = Query(50, ge=1, le=500),
    ):
        """The prioritized list of open, unsnoozed obligations."""
        now = utcnow()
        surfaced = prioritize(
            obs.list_all(),
            now=now,
            lookahead=timedelta(hours=config.extraction.now_lookahead_hours),
            tz=config.extraction.timezone,
        )
        if lane == "now":
            surfaced = [s for s in surfaced if s.lane == Lane.NOW]
        elif lane == "later":
            surfaced = [s for s in surfaced if s.lane != Lane.NOW]
        return {
            "open_loops": [s.model_dump(mode="json") for s in surfaced[:limit]],
            "total": len(surfaced),
            "generated_at": now.isoformat(),
        }

    @app.get("/open-loops/runs")
    def extraction_runs(
        conversation_id: Optional[str] = None,
        errors_only: bool = False,
        limit: int = Query(50, ge=1, le=500),
    ):
        """Per-conversation extraction runs, including drop records and errors."""
        runs = obs.recent_runs(limit=limit, conversation_id=conversation_id, errors_only=errors_only)
        return [r.model_dump(mode="json") for r in runs]

    @app.get("/open-loops/{obligation_id}")
    def get_open_loop(obligation_id: str):
        obligation = obs.get(obligation_id)
        if obligation is None:
            raise HTTPException(404, "Open loop not found")
        return obligation.model_dump(mode="json")

    @app.post("/open-loops/{obligation_id}/complete")
    def complete_open_loop(obligation_id: str):
        obligation = obs.set_status(obligation_id, ObligationStatus.DONE)
        return {"ok": True, "open_loop": obligation.model_dump(mode="json")}

    @app.post("/open-loops/{obligation_id}/dismiss")
    def dismiss_open_loop(obligation_id: str):
        obligation = obs.set_status(obligation_id, ObligationStatus.DISMISSED)
        return {"ok": True, "open_loop": obligation.model_dump(mode="json")}

    @app.post("/open-loops/{obligation_id}/snooze")
    def snooze_open_loop(obligation_id: str, req: SnoozeRequest):
        """Hide an open loop from the active list for `hours`."""
        until = utcnow() + timedelta(hours=req.hours)
        obligation = obs.snooze(obligation_id, until)
        return {"ok": True, "snooze_until": until.isoformat(), "open_loop": obligation.model_dump(mode="json")}

    @app.post("/open-loops/{obligation_id}/lane")
    def set_open_loop_lane(obligation_id: str, req: LaneRequest):
        obligation = obs.set_lane_override(obligation_id, req.lane)
        return {"ok": True, "open_loop": obligation.model_dump(mode="json")}

    # === ORCHESTRATOR ===

    @app.get("/orchestrator/status")
    def orchestrator_status():
        return runner.status()

    @app.post("/orchestrator/run")
    async def orchestrator_run(force: bool = False):
        """Run one tick now. `force` bypasses the interval and infill gates."""
        plan = await runner.tick(force=force)
        return plan.model_dump(mode="json")

    @app.get("/orchestrator/plans")
    def orchestrator_plans(
        conversation_id: Optional[str] = None,
        limit: int = Query(20, ge=1, le=200),
    ):
        if conversation_id:
            plans = ps.query_by_conversation(conversation_id)[-limit:]
        else:
            plans = ps.query_recent(limit)
        return [p.model_dump(mode="json") for p in plans]

    @app.get("/orchestrator/plans/verify")
    def verify_plans():
        return {"chain_valid": ps.verify_chain_integrity(), "count": ps.count()}

    # === JOBS ===

    @app.get("/jobs")
    def list_jobs(
        status: Optional[JobStatus] = None,
        limit: int = Query(100, ge=1, le=1000),
    ):
        return [j.model_dump(mode="json") for j in jq.list_jobs(status, limit)]

    @app.get("/jobs/stats")
    def job_stats():
        return {"counts": jq.counts(), "handlers": worker.job_types}

    @app.post("/jobs")
    def enqueue_job(req: EnqueueRequest):
        job_id = jq.enqueue(
            req.type,
            req.payload,
            conversation_id=req.conversation_id,
            dedupe_key=req.dedupe_key,
        )
        return {"id": job_id, "job": jq.get(job_id).model_dump(mode="json")}

    return app


# Default application instance
app = create_app()
