"""
Orchestrator Runner: the kernel's heartbeat.

Each tick:
  probe readiness -> (connected?) coverage + infill -> backfill plan/post
  -> open-loop refresh -> daily aggregation -> drain jobs -> persist plan

Ticks are independent. The loop starts a tick on a fixed wall-clock
interval without waiting for the previous one; every tick re-reads the
persisted state and re-derives what is due. Backfill targets are reserved
in the stored state before posting and the tick's state is folded into
the stored row on save, so overlapping ticks neither double-post nor
overwrite each other. A tick that fails part way still persists its state
and plan.
"""

import asyncio
import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Dict, Optional

from openloop_kernel.extraction.pipeline import ExtractionPipeline
from openloop_kernel.jobs.handlers import METRICS_JOB
from openloop_kernel.jobs.queue import JobQueue, QueueFullError
from openloop_kernel.jobs.worker import JobWorker
from openloop_kernel.models.message import BackfillTarget
from openloop_kernel.models.orchestrator import ConnectionState, OrchestratorConfig
from openloop_kernel.models.plan import ActionPlan, DecisionStatus, PlanOutcome, ReasonCode
from openloop_kernel.obligations.store import ObligationStore
from openloop_kernel.orchestrator import machine
from openloop_kernel.orchestrator.schedule import local_date
from openloop_kernel.orchestrator.state_store import OrchestratorStateStore
from openloop_kernel.plans.store import ActionPlanStore
from openloop_kernel.timeutil import utcnow
from openloop_kernel.upstream.client import MessageSource, UpstreamError

logger = logging.getLogger(__name__)


class OrchestratorRunner:
    def __init__(
        self,
        source: MessageSource,
        state_store: OrchestratorStateStore,
        plan_store: ActionPlanStore,
        obligation_store: ObligationStore,
        job_queue: JobQueue,
        pipeline: Optional[ExtractionPipeline] = None,
        worker: Optional[JobWorker] = None,
        config: Optional[OrchestratorConfig] = None,
    ):
        self.source = source
        self.state_store = state_store
        self.plan_store = plan_store
        self.obligation_store = obligation_store
        self.job_queue = job_queue
        self.pipeline = pipeline
        self.worker = worker
        self.config = config or OrchestratorConfig()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def tick(self, now: Optional[datetime] = None, force: bool = False) -> ActionPlan:
        """Run one tick and return the ActionPlan it recorded."""
        now = now or utcnow()
        config = self.config
        state = self.state_store.update(lambda stored: machine.start_tick(stored, now))
        tick_id = state.last_tick_id
        plan = None
        outcome = None
        families: Dict[str, str] = {}

        try:
            try:
                status = await self.source.fetch_status()
                state = machine.apply_probe(state, status, None, now, config)
            except UpstreamError as exc:
                state = machine.apply_probe(state, None, str(exc), now, config)

            coverage = None
            if state.connection != ConnectionState.CONNECTED:
                plan = machine.build_plan(tick_id, state, now, reason=ReasonCode.NOT_CONNECTED, forced=force, config=config)
            else:
                try:
                    coverage = await self.source.fetch_coverage()
                except UpstreamError as exc:
                    state = machine.push_error(state, "coverage", str(exc), now, config.error_buffer_size)
                    plan = machine.build_plan(tick_id, state, now, reason=ReasonCode.COVERAGE_UNAVAILABLE, forced=force, config=config)

            if coverage is not None:
                state = machine.apply_coverage(state, coverage, now)
                infill = machine.evaluate_infill(coverage, state, config, now)
                state = state.model_copy(update={"last_infill": infill})

                if not (infill.complete or force):
                    plan = machine.build_plan(tick_id, state, now, infill=infill, reason=ReasonCode.INFILL_INCOMPLETE, forced=force, config=config)
                elif force or machine.should_run_orchestrate(state, config, now):
                    state, plan = await self._orchestrate(tick_id, state, coverage, infill, now, force)
                else:
                    plan = machine.build_plan(tick_id, state, now, infill=infill, reason=ReasonCode.NOT_DUE, forced=force, config=config)

                state, families["open_loops"] = await self._open_loops(state, now, force)
                if infill.complete and machine.should_run_daily(state, config, now):
                    state, families["daily_aggregation"] = self._daily(state, now)
                else:
                    families["daily_aggregation"] = ReasonCode.NOT_DUE.value
                families["jobs"] = await self._drain_jobs(now)
                outcome = plan.outcome or PlanOutcome(ok=True, executed_at=now)
        except Exception as exc:
            # Whatever already happened this tick, a post included, is still recorded
            logger.exception("Orchestrator tick %d failed", tick_id)
            state = machine.push_error(state, "tick", str(exc), now, config.error_buffer_size)
            if plan is None:
                plan = machine.build_plan(tick_id, state, now, reason=ReasonCode.RUN_FAILED, forced=force, config=config)
            families["tick"] = ReasonCode.RUN_FAILED.value
            outcome = plan.outcome or PlanOutcome(ok=False, error=str(exc)[:500], executed_at=now)

        if outcome is not None:
            plan = plan.model_copy(update={
                "outcome": outcome.model_copy(update={"family_results": families})
            })
        return self._finish(state, plan)

    async def _orchestrate(self, tick_id, state, coverage, infill, now, force):
        config = self.config
        since = now - timedelta(hours=config.event_priority_lookback_hours)
        event_priority = self.obligation_store.high_signal_conversations(since)
        decisions = machine.plan_backfill(state, coverage, event_priority, config, now)

        reservation = {}

        def reserve(stored):
            stored, reservation["decisions"], reservation["previous"] = machine.reserve_targets(
                stored, decisions, config, now
            )
            return stored

        # Another tick may have posted these conversations since this one loaded the state
        self.state_store.update(reserve)
        plan = machine.build_plan(
            tick_id, state, now, decisions=reservation["decisions"], infill=infill, forced=force, config=config
        )

        planned = machine.planned_decisions(plan)
        if not planned:
            state = state.model_copy(update={"last_orchestrate_at": now})
            return machine.record_outcome(state, plan, posted_ok=True, now=now, config=config)

        targets = [
            BackfillTarget(conversation_id=d.conversation_id, target_messages=d.target_messages or 0)
            for d in planned
        ]
        try:
            await self.source.set_backfill_targets(targets)
        except UpstreamError as exc:
            logger.warning("Backfill post failed for %d targets: %s", len(targets), exc)
            self.state_store.update(lambda stored: machine.release_targets(stored, reservation["previous"], now))
            return machine.record_outcome(state, plan, posted_ok=False, error=str(exc), now=now, config=config)

        state, plan = machine.record_outcome(state, plan, posted_ok=True, now=now, config=config)
        for target in targets:
            try:
                self.job_queue.enqueue(
                    METRICS_JOB,
                    {"reason": "metrics_recompute_needed"},
                    conversation_id=target.conversation_id,
                    dedupe_key=f"backfill:{local_date(now, config.timezone)}",
                    now=now,
                )
            except (QueueFullError, sqlite3.Error) as exc:
                state = machine.push_error(state, "jobs", str(exc), now, config.error_buffer_size)
                break
        logger.info("Posted %d backfill targets (tick %d)", len(targets), tick_id)
        return state, plan

    async def _open_loops(self, state, now, force):
        if self.pipeline is None:
            return state, "disabled"
        if not (force or machine.should_run_open_loops(state, self.config, now)):
            return state, ReasonCode.NOT_DUE.value
        try:
            summary = await self.pipeline.refresh_recent(self.config.open_loops_refresh_hours, now=now)
        except Exception as exc:
            logger.exception("Open-loop refresh failed")
            state = machine.push_error(state, "open_loops", str(exc), now, self.config.error_buffer_size)
            return state, ReasonCode.RUN_FAILED.value
        state = state.model_copy(update={"last_open_loops_at": now})
        if summary.failed:
            state = machine.push_error(
                state, "open_loops", f"{summary.failed} conversations failed", now, self.config.error_buffer_size
            )
        return state, ReasonCode.OK_RAN.value

    def _daily(self, state, now):
        day = local_date(now, self.config.timezone)
        try:
            for conversation_id in self.obligation_store.active_conversations():
                self.job_queue.enqueue(
                    METRICS_JOB,
                    {"windows": [1, 7, 30]},
                    conversation_id=conversation_id,
                    dedupe_key=f"daily:{day}",
                    now=now,
                )
        except QueueFullError as exc:
            state = machine.push_error(state, "daily_aggregation", str(exc), now, self.config.error_buffer_size)
            return state, ReasonCode.RUN_FAILED.value
        logger.info("Daily aggregation enqueued for %s", day)
        return machine.mark_daily_run(state, self.config, now), ReasonCode.OK_RAN.value

    async def _drain_jobs(self, now) -> str:
        if self.worker is None or not self.config.job_worker_enabled:
            return "disabled"
        results = await self.worker.drain(self.config.job_worker_batch, now=now)
        return f"processed={len(results)}"

    def _finish(self, state, plan: ActionPlan) -> ActionPlan:
        limit = self.config.error_buffer_size
        try:
            self.state_store.update(lambda stored: machine.reconcile(stored, state, limit))
        except sqlite3.Error:
            logger.exception("Failed to persist orchestrator state for tick %d", plan.tick_id)
        try:
            plan = self.plan_store.append(plan)
        except sqlite3.Error:
            logger.exception("Failed to persist action plan %s", plan.id)
            return plan
        self._check_posted_invariant(plan)
        return plan

    def _check_posted_invariant(self, plan: ActionPlan) -> None:
        if plan.outcome is None:
            return
        persisted = self.plan_store.count_decisions(plan.id, DecisionStatus.POSTED)
        if persisted != plan.outcome.targets_posted:
            logger.error(
                "Plan %s reports %d posted targets but %d posted decisions were persisted",
                plan.id, plan.outcome.targets_posted, persisted,
            )

    def status(self, now: Optional[datetime] = None) -> dict:
        now = now or utcnow()
        state = self.state_store.load()
        return {
            "running": self._running,
            "connection": state.connection.value,
            "ready_reason": state.ready_reason,
            "infill": state.last_infill.model_dump(mode="json") if state.last_infill else None,
            "next_due": machine.next_due(state, self.config, now),
            "state": state.model_dump(mode="json"),
        }

    async def _safe_tick(self) -> None:
        try:
            await self.tick()
        except Exception as exc:
            logger.exception("Orchestrator tick failed")
            now, limit = utcnow(), self.config.error_buffer_size
            self.state_store.update(lambda stored: machine.push_error(stored, "tick", str(exc), now, limit))

    async def run_async(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Start a tick every interval until stop_event is set."""
        self._running = True
        if stop_event is None:
            stop_event = asyncio.Event()
        pending = set()

        try:
            while not stop_event.is_set():
                task = asyncio.create_task(self._safe_tick())
                pending.add(task)
                task.add_done_callback(pending.discard)
                try:
                    await asyncio.wait_for(
                        stop_event.wait(),
                        timeout=self.config.tick_interval_seconds,
                    )
                except asyncio.TimeoutError:
                    continue
        finally:
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            self._running = False
