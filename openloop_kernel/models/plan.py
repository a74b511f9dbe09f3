"""
ActionPlan: the audit artifact written once per orchestrator tick.

Each candidate conversation carries exactly one decision with a
machine-readable reason code, so "why did (or didn't) the kernel act"
can be answered from the log alone.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel

from openloop_kernel.models.orchestrator import ConnectionState, InfillResult


class Signal(str, Enum):
    EVENT_PRIORITY_HIGH = "event_priority_high"
    HEAT_HIGH = "heat_high"
    HEAT_MED = "heat_med"
    HEAT_LOW = "heat_low"
    MANUAL_BACKFILL_REQUEST = "manual_backfill_request"
    METRICS_RECOMPUTE_NEEDED = "metrics_recompute_needed"


class ActionKind(str, Enum):
    BACKFILL_TARGET_SET = "backfill_target_set"
    ENQUEUE_METRICS = "enqueue_metrics"
    NOOP = "noop"


# Fixed signal -> action contract
ACTION_CONTRACTS: Dict[Signal, ActionKind] = {
    Signal.EVENT_PRIORITY_HIGH: ActionKind.BACKFILL_TARGET_SET,
    Signal.HEAT_HIGH: ActionKind.BACKFILL_TARGET_SET,
    Signal.HEAT_MED: ActionKind.BACKFILL_TARGET_SET,
    Signal.HEAT_LOW: ActionKind.NOOP,
    Signal.MANUAL_BACKFILL_REQUEST: ActionKind.BACKFILL_TARGET_SET,
    Signal.METRICS_RECOMPUTE_NEEDED: ActionKind.ENQUEUE_METRICS,
}


class DecisionStatus(str, Enum):
    PLANNED = "planned"
    POSTED = "posted"
    SATISFIED = "satisfied"
    SKIPPED = "skipped"
    FAILED = "failed"


class ReasonCode(str, Enum):
    OK_POSTED = "ok_posted"
    COOLDOWN_ACTIVE = "cooldown_active"
    NO_PLANNED_TARGETS = "no_planned_targets"
    BUDGET_EXHAUSTED = "budget_exhausted"
    LOW_HEAT = "low_heat"
    POST_FAILED = "post_failed"
    NOT_CONNECTED = "not_connected"
    INFILL_INCOMPLETE = "infill_incomplete"
    COVERAGE_UNAVAILABLE = "coverage_unavailable"
    NOT_DUE = "not_due"
    OK_RAN = "ok_ran"
    RUN_FAILED = "run_failed"


class CandidateDecision(BaseModel):
    conversation_id: str
    signal: Signal
    action: ActionKind
    status: DecisionStatus
    reason: Optional[ReasonCode] = None
    target_messages: Optional[int] = None
    evidence: dict = {}


class PlanOutcome(BaseModel):
    ok: bool
    targets_posted: int = 0
    error: Optional[str] = None
    executed_at: Optional[datetime] = None
    family_results: Dict[str, str] = {}


class ActionPlan(BaseModel):
    id: str
    tick_id: int
    created_at: datetime
    forced: bool = False
    connection: ConnectionState
    infill: Optional[InfillResult] = None
    inputs: dict = {}
    guardrails: dict = {}
    decisions: List[CandidateDecision] = []
    reason: Optional[ReasonCode] = None
    outcome: Optional[PlanOutcome] = None

    # Tamper-evident chain
    signature: str = ""
    prior_plan_hash: Optional[str] = None
