"""
Orchestrator state machine: pure decision functions.

    Unreachable <-> Reachable/NotConnected <-> Connected

Nothing here performs I/O. The runner feeds in probe results, coverage
snapshots and the clock; these functions return new state and plans.

Behavioral Contract:
- Backfill planning happens only when connected and the initial infill is
  complete (or when forced past the infill gate).
- A conversation posted within the cooldown window is never planned again;
  it is recorded as satisfied with the cooldown as evidence.
- Plans are all-or-nothing: either every planned target posts or none does,
  and the state only remembers targets that posted.
- Targets are reserved in the stored state before the post so an
  overlapping tick cannot post them again; a failed post releases them.
- The daily action runs at most once per local calendar day.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple
from uuid import uuid4

from openloop_kernel.models.message import CoverageSnapshot, HeatTier, SourceStatus
from openloop_kernel.models.orchestrator import (
    ConnectionState,
    ErrorEntry,
    InfillReason,
    InfillResult,
    OrchestratorConfig,
    OrchestratorState,
    PostedTarget,
)
from openloop_kernel.models.plan import (
    ACTION_CONTRACTS,
    ActionPlan,
    CandidateDecision,
    DecisionStatus,
    PlanOutcome,
    ReasonCode,
    Signal,
)
from openloop_kernel.orchestrator.schedule import daily_due_at, local_date

logger = logging.getLogger(__name__)


def push_error(
    state: OrchestratorState,
    source: str,
    message: str,
    now: datetime,
    limit: int = 20,
) -> OrchestratorState:
    errors = (state.last_errors + [ErrorEntry(at=now, source=source, message=message[:500])])[-limit:]
    return state.model_copy(update={"last_errors": errors})


def apply_probe(
    state: OrchestratorState,
    status: Optional[SourceStatus],
    error: Optional[str],
    now: datetime,
    config: Optional[OrchestratorConfig] = None,
) -> OrchestratorState:
    """Readiness transition from one status probe (or its failure)."""
    config = config or OrchestratorConfig()
    updates = {"status_checked_at": now}
    if status is None:
        updates.update(connection=ConnectionState.UNREACHABLE, ready_reason="unreachable", needs_auth=False)
        new_state = state.model_copy(update=updates)
        new_state = push_error(new_state, "probe", error or "status unavailable", now, config.error_buffer_size)
    else:
        if state.first_reachable_at is None:
            updates["first_reachable_at"] = now
        if status.connected and not status.needs_auth:
            updates.update(connection=ConnectionState.CONNECTED, ready_reason="connected", needs_auth=False)
            if state.first_ready_at is None:
                updates["first_ready_at"] = now
        else:
            reason = "needs_auth" if status.needs_auth else f"state_{status.state or 'unknown'}"
            updates.update(connection=ConnectionState.NOT_CONNECTED, ready_reason=reason, needs_auth=status.needs_auth)
        new_state = state.model_copy(update=updates)

    if new_state.connection != state.connection:
        logger.info("Source readiness %s -> %s (%s)", state.connection.value, new_state.connection.value, new_state.ready_reason)
    return new_state


def apply_coverage(state: OrchestratorState, coverage: CoverageSnapshot, now: datetime) -> OrchestratorState:
    updates = {"last_coverage": coverage.model_copy(update={"checked_at": now})}
    if coverage.direct_conversations_total > 0 and state.source_first_seen_at is None:
        updates["source_first_seen_at"] = now
    return state.model_copy(update=updates)


def evaluate_infill(
    coverage: CoverageSnapshot,
    state: OrchestratorState,
    config: OrchestratorConfig,
    now: datetime,
) -> InfillResult:
    """
    Initial backfill is complete when a seed exists and either coverage meets
    the threshold or the fallback window since first sighting has elapsed.
    """
    seed_exists = coverage.direct_conversations_total >= config.min_direct_conversations
    coverage_ok = coverage.direct_coverage_pct >= config.min_direct_coverage_pct
    fallback_ok = (
        state.source_first_seen_at is not None
        and now - state.source_first_seen_at >= timedelta(seconds=config.coverage_fallback_after_seconds)
    )
    complete = seed_exists and (coverage_ok or fallback_ok)
    if complete and coverage_ok:
        reason = InfillReason.COVERAGE_OK
    elif complete:
        reason = InfillReason.FALLBACK_OK
    else:
        reason = InfillReason.NOT_READY
    return InfillResult(
        complete=complete,
        reason=reason,
        seed_exists=seed_exists,
        coverage_ok=coverage_ok,
        fallback_ok=fallback_ok,
    )


def _cooldown_until(state: OrchestratorState, conversation_id: str, config: OrchestratorConfig) -> Optional[datetime]:
    posted = state.posted_targets.get(conversation_id)
    if posted is None:
        return None
    return posted.posted_at + timedelta(seconds=config.backfill_cooldown_seconds)


def plan_backfill(
    state: OrchestratorState,
    coverage: CoverageSnapshot,
    event_priority: List[str],
    config: OrchestratorConfig,
    now: datetime,
) -> List[CandidateDecision]:
    """
    One decision per candidate conversation.

    Event-priority conversations come first, then hot conversations by heat
    score. Cooldown wins over budget; budget caps the number planned.
    """
    cap = min(config.max_target_messages, coverage.max_target_messages or config.max_target_messages)
    candidates: List[Tuple[str, Signal, int]] = []
    seen = set()
    for conversation_id in event_priority:
        if conversation_id not in seen:
            seen.add(conversation_id)
            candidates.append((conversation_id, Signal.EVENT_PRIORITY_HIGH, config.high_target_messages))

    hot = sorted(coverage.hot_conversations, key=lambda h: (-h.heat_score, h.conversation_id))
    for heat in hot:
        if heat.conversation_id in seen:
            continue
        seen.add(heat.conversation_id)
        if heat.heat_tier == HeatTier.HIGH:
            candidates.append((heat.conversation_id, Signal.HEAT_HIGH, config.high_target_messages))
        elif heat.heat_tier == HeatTier.MED:
            candidates.append((heat.conversation_id, Signal.HEAT_MED, config.med_target_messages))
        else:
            candidates.append((heat.conversation_id, Signal.HEAT_LOW, 0))

    decisions: List[CandidateDecision] = []
    planned = 0
    for conversation_id, signal, target in candidates:
        action = ACTION_CONTRACTS[signal]
        decision = CandidateDecision(
            conversation_id=conversation_id,
            signal=signal,
            action=action,
            status=DecisionStatus.SKIPPED,
            target_messages=min(target, cap) if target else None,
        )
        cooldown_until = _cooldown_until(state, conversation_id, config)
        if signal == Signal.HEAT_LOW:
            decision.reason = ReasonCode.LOW_HEAT
        elif cooldown_until is not None and now < cooldown_until:
            decision.status = DecisionStatus.SATISFIED
            decision.reason = ReasonCode.COOLDOWN_ACTIVE
            decision.evidence = {
                "posted_at": state.posted_targets[conversation_id].posted_at.isoformat(),
                "cooldown_until": cooldown_until.isoformat(),
            }
        elif planned >= config.max_targets_per_tick:
            decision.reason = ReasonCode.BUDGET_EXHAUSTED
        else:
            decision.status = DecisionStatus.PLANNED
            planned += 1
        logger.debug("Candidate %s: %s %s", conversation_id, decision.status.value, decision.reason)
        decisions.append(decision)
    return decisions


def build_plan(
    tick_id: int,
    state: OrchestratorState,
    now: datetime,
    *,
    decisions: Optional[List[CandidateDecision]] = None,
    infill: Optional[InfillResult] = None,
    reason: Optional[ReasonCode] = None,
    forced: bool = False,
    config: Optional[OrchestratorConfig] = None,
) -> ActionPlan:
    config = config or OrchestratorConfig()
    decisions = decisions or []
    if reason is None and not any(d.status == DecisionStatus.PLANNED for d in decisions):
        reason = ReasonCode.NO_PLANNED_TARGETS
    coverage = state.last_coverage
    return ActionPlan(
        id=str(uuid4()),
        tick_id=tick_id,
        created_at=now,
        forced=forced,
        connection=state.connection,
        infill=infill,
        inputs={
            "direct_conversations_total": coverage.direct_conversations_total if coverage else None,
            "direct_coverage_pct": coverage.direct_coverage_pct if coverage else None,
            "hot_conversations": len(coverage.hot_conversations) if coverage else 0,
        },
        guardrails={
            "max_targets_per_tick": config.max_targets_per_tick,
            "backfill_cooldown_seconds": config.backfill_cooldown_seconds,
            "max_target_messages": config.max_target_messages,
        },
        decisions=decisions,
        reason=reason,
    )


def planned_decisions(plan: ActionPlan) -> List[CandidateDecision]:
    return [d for d in plan.decisions if d.status == DecisionStatus.PLANNED]


def record_outcome(
    state: OrchestratorState,
    plan: ActionPlan,
    *,
    posted_ok: bool,
    now: datetime,
    error: Optional[str] = None,
    config: Optional[OrchestratorConfig] = None,
) -> Tuple[OrchestratorState, ActionPlan]:
    """Fold the post result back into both the state and a new copy of the plan."""
    config = config or OrchestratorConfig()
    planned = planned_decisions(plan)
    if not planned:
        return state, plan.model_copy(update={
            "outcome": PlanOutcome(ok=True, targets_posted=0, executed_at=now),
        })

    decisions = []
    posted: Dict[str, PostedTarget] = dict(state.posted_targets)
    for decision in plan.decisions:
        if decision.status != DecisionStatus.PLANNED:
            decisions.append(decision)
            continue
        if posted_ok:
            decisions.append(decision.model_copy(update={
                "status": DecisionStatus.POSTED, "reason": ReasonCode.OK_POSTED,
            }))
            posted[decision.conversation_id] = PostedTarget(
                conversation_id=decision.conversation_id,
                target_messages=decision.target_messages or 0,
                posted_at=now,
            )
        else:
            decisions.append(decision.model_copy(update={
                "status": DecisionStatus.FAILED, "reason": ReasonCode.POST_FAILED,
            }))

    new_plan = plan.model_copy(update={
        "decisions": decisions,
        "reason": ReasonCode.OK_POSTED if posted_ok else ReasonCode.POST_FAILED,
        "outcome": PlanOutcome(
            ok=posted_ok,
            targets_posted=len(planned) if posted_ok else 0,
            error=error,
            executed_at=now,
        ),
    })
    if posted_ok:
        new_state = state.model_copy(update={"posted_targets": posted, "last_orchestrate_at": now})
    else:
        new_state = push_error(state, "backfill_post", error or "post failed", now, config.error_buffer_size)
        new_state = new_state.model_copy(update={"last_orchestrate_at": now})
    return new_state, new_plan


def _interval_due(last: Optional[datetime], seconds: int, now: datetime) -> bool:
    return last is None or now - last >= timedelta(seconds=seconds)


def should_run_orchestrate(state: OrchestratorState, config: OrchestratorConfig, now: datetime) -> bool:
    return _interval_due(state.last_orchestrate_at, config.orchestrate_min_interval_seconds, now)


def should_run_open_loops(state: OrchestratorState, config: OrchestratorConfig, now: datetime) -> bool:
    return _interval_due(state.last_open_loops_at, config.open_loops_min_interval_seconds, now)


def should_run_daily(state: OrchestratorState, config: OrchestratorConfig, now: datetime) -> bool:
    due = daily_due_at(now, config.timezone, config.daily_hour, config.daily_minute, state.last_daily_run_date)
    return now >= due


def mark_daily_run(state: OrchestratorState, config: OrchestratorConfig, now: datetime) -> OrchestratorState:
    return state.model_copy(update={"last_daily_run_date": local_date(now, config.timezone)})


def next_due(state: OrchestratorState, config: OrchestratorConfig, now: datetime) -> Dict[str, Optional[str]]:
    """Next time each action family becomes eligible (ISO strings)."""
    def after(last: Optional[datetime], seconds: int) -> datetime:
        return now if last is None else max(now, last + timedelta(seconds=seconds))

    daily = daily_due_at(now, config.timezone, config.daily_hour, config.daily_minute, state.last_daily_run_date)
    return {
        "tick": (now if state.last_tick_at is None else state.last_tick_at + timedelta(seconds=config.tick_interval_seconds)).isoformat(),
        "orchestrate": after(state.last_orchestrate_at, config.orchestrate_min_interval_seconds).isoformat(),
        "open_loops": after(state.last_open_loops_at, config.open_loops_min_interval_seconds).isoformat(),
        "daily_aggregation": max(now, daily).isoformat(),
    }


# --- Overlapping ticks ---

def start_tick(state: OrchestratorState, now: datetime) -> OrchestratorState:
    return state.model_copy(update={"last_tick_id": state.last_tick_id + 1, "last_tick_at": now})


def reserve_targets(
    state: OrchestratorState,
    decisions: List[CandidateDecision],
    config: OrchestratorConfig,
    now: datetime,
) -> Tuple[OrchestratorState, List[CandidateDecision], Dict[str, Optional[PostedTarget]]]:
    """
    Re-check cooldown for planned decisions against the latest stored state
    and hold the ones still free by recording them as posted at `now`.

    Returns the new state, the re-checked decisions, and the entries the
    reservation replaced so a failed post can put them back.
    """
    posted: Dict[str, PostedTarget] = dict(state.posted_targets)
    previous: Dict[str, Optional[PostedTarget]] = {}
    checked = []
    for decision in decisions:
        if decision.status != DecisionStatus.PLANNED:
            checked.append(decision)
            continue
        cooldown_until = _cooldown_until(state, decision.conversation_id, config)
        if cooldown_until is not None and now < cooldown_until:
            checked.append(decision.model_copy(update={
                "status": DecisionStatus.SATISFIED,
                "reason": ReasonCode.COOLDOWN_ACTIVE,
                "evidence": {
                    "posted_at": state.posted_targets[decision.conversation_id].posted_at.isoformat(),
                    "cooldown_until": cooldown_until.isoformat(),
                    "claimed_by_overlapping_tick": True,
                },
            }))
            continue
        previous[decision.conversation_id] = state.posted_targets.get(decision.conversation_id)
        posted[decision.conversation_id] = PostedTarget(
            conversation_id=decision.conversation_id,
            target_messages=decision.target_messages or 0,
            posted_at=now,
        )
        checked.append(decision)
    return state.model_copy(update={"posted_targets": posted}), checked, previous


def release_targets(
    state: OrchestratorState,
    previous: Dict[str, Optional[PostedTarget]],
    now: datetime,
) -> OrchestratorState:
    """Undo a reservation made at `now`, restoring the entries it replaced."""
    posted: Dict[str, PostedTarget] = dict(state.posted_targets)
    for conversation_id, entry in previous.items():
        current = posted.get(conversation_id)
        if current is None or current.posted_at != now:
            continue
        if entry is None:
            del posted[conversation_id]
        else:
            posted[conversation_id] = entry
    return state.model_copy(update={"posted_targets": posted})


def _latest(a, b):
    return max((v for v in (a, b) if v is not None), default=None)


def _earliest(a, b):
    return min((v for v in (a, b) if v is not None), default=None)


def reconcile(
    stored: OrchestratorState,
    ours: OrchestratorState,
    limit: int = 20,
) -> OrchestratorState:
    """
    Fold one tick's state into whatever is persisted now.

    Another tick may have saved in between. Readiness and coverage come from
    whichever side checked last. Timestamps only move forward and errors are
    unioned. Posted targets change only through `reserve_targets` and
    `release_targets`, so the stored map is kept as is.
    Folding into an unchanged row returns `ours`.
    """
    newer_status = stored.status_checked_at is None or (
        ours.status_checked_at is not None and ours.status_checked_at >= stored.status_checked_at
    )
    readiness = ours if newer_status else stored
    ours_checked = ours.last_coverage.checked_at if ours.last_coverage else None
    stored_checked = stored.last_coverage.checked_at if stored.last_coverage else None
    scan = ours if stored_checked is None or (ours_checked is not None and ours_checked >= stored_checked) else stored

    seen = {(e.at, e.source, e.message) for e in stored.last_errors}
    errors = list(stored.last_errors) + [
        e for e in ours.last_errors if (e.at, e.source, e.message) not in seen
    ]
    errors.sort(key=lambda e: e.at)

    return OrchestratorState(
        connection=readiness.connection,
        ready_reason=readiness.ready_reason,
        needs_auth=readiness.needs_auth,
        status_checked_at=readiness.status_checked_at,
        last_coverage=scan.last_coverage,
        last_infill=scan.last_infill,
        first_reachable_at=_earliest(stored.first_reachable_at, ours.first_reachable_at),
        first_ready_at=_earliest(stored.first_ready_at, ours.first_ready_at),
        source_first_seen_at=_earliest(stored.source_first_seen_at, ours.source_first_seen_at),
        last_tick_at=_latest(stored.last_tick_at, ours.last_tick_at),
        last_tick_id=max(stored.last_tick_id, ours.last_tick_id),
        last_orchestrate_at=_latest(stored.last_orchestrate_at, ours.last_orchestrate_at),
        last_open_loops_at=_latest(stored.last_open_loops_at, ours.last_open_loops_at),
        last_daily_run_date=_latest(stored.last_daily_run_date, ours.last_daily_run_date),
        posted_targets=stored.posted_targets,
        last_errors=errors[-limit:],
    )
