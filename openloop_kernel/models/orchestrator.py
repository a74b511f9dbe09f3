"""Orchestrator configuration and persisted state."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from openloop_kernel.models.message import CoverageSnapshot


class ConnectionState(str, Enum):
    UNREACHABLE = "unreachable"
    NOT_CONNECTED = "not_connected"   # reachable, not yet ready
    CONNECTED = "connected"


class InfillReason(str, Enum):
    COVERAGE_OK = "coverage_ok"
    FALLBACK_OK = "fallback_ok"
    NOT_READY = "not_ready"


class InfillResult(BaseModel):
    complete: bool
    reason: InfillReason
    seed_exists: bool = False
    coverage_ok: bool = False
    fallback_ok: bool = False


class ErrorEntry(BaseModel):
    at: datetime
    source: str
    message: str


class PostedTarget(BaseModel):
    conversation_id: str
    target_messages: int
    posted_at: datetime


class OrchestratorConfig(BaseModel):
    tick_interval_seconds: float = 60.0
    min_direct_conversations: int = 1
    min_direct_coverage_pct: float = 70.0
    coverage_fallback_after_seconds: int = 6 * 3600
    orchestrate_min_interval_seconds: int = 15 * 60
    open_loops_min_interval_seconds: int = 30 * 60
    open_loops_refresh_hours: int = 6
    backfill_cooldown_seconds: int = 6 * 3600
    max_targets_per_tick: int = Field(default=10, ge=0)
    high_target_messages: int = 300
    med_target_messages: int = 150
    max_target_messages: int = 500
    event_priority_lookback_hours: int = 24
    timezone: str = "Europe/London"
    daily_hour: int = Field(default=4, ge=0, le=23)
    daily_minute: int = Field(default=0, ge=0, le=59)
    job_worker_enabled: bool = True
    job_worker_batch: int = 5
    error_buffer_size: int = 20


class OrchestratorState(BaseModel):
    """Single persisted row; every tick reads and rewrites it."""
    connection: ConnectionState = ConnectionState.UNREACHABLE
    ready_reason: Optional[str] = None
    needs_auth: bool = False
    first_reachable_at: Optional[datetime] = None
    first_ready_at: Optional[datetime] = None
    source_first_seen_at: Optional[datetime] = None   # first time any direct conversation existed
    status_checked_at: Optional[datetime] = None

    last_tick_at: Optional[datetime] = None
    last_tick_id: int = 0
    last_orchestrate_at: Optional[datetime] = None
    last_open_loops_at: Optional[datetime] = None
    last_daily_run_date: Optional[str] = None        # local date in the configured timezone

    posted_targets: Dict[str, PostedTarget] = {}
    last_errors: List[ErrorEntry] = []
    last_coverage: Optional[CoverageSnapshot] = None
    last_infill: Optional[InfillResult] = None
