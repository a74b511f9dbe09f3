"""Extraction configuration and run records."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from openloop_kernel.models.message import Message
from openloop_kernel.models.obligation import DropRecord


class ExtractionConfig(BaseModel):
    strict_evidence: bool = True
    capacity: int = Field(default=10, ge=1)          # obligations kept per run
    inferred_confidence_penalty: float = 0.15
    summary_max_length: int = 120
    lookback_hours: int = 48                         # first run, no cursor
    context_window_hours: int = 24                   # fetched before the cursor
    context_messages: int = 20
    max_batch_messages: int = 200
    min_batch_messages: int = 25
    fetch_limit: int = 2000
    max_conversations: int = 50
    max_concurrency: int = Field(default=4, ge=1)
    timezone: str = "UTC"
    now_lookahead_hours: int = 48


class ClassifierContext(BaseModel):
    """What the classifier sees for one conversation."""
    conversation_id: str
    context_messages: List[Message] = []
    new_messages: List[Message] = []
    existing_obligations: List[Dict[str, Any]] = []


class ExtractionRun(BaseModel):
    """One conversation refresh, kept for debugging."""
    run_id: str
    conversation_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    from_ts: Optional[datetime] = None
    to_ts: Optional[datetime] = None
    message_count: int = 0
    raw_candidates: int = 0
    obligation_ids: List[str] = []
    dropped: List[DropRecord] = []
    skipped_reason: Optional[str] = None
    error: Optional[str] = None


class RefreshSummary(BaseModel):
    conversations_processed: int = 0
    succeeded: int = 0
    failed: int = 0
    obligations_touched: int = 0
    errors: List[Dict[str, str]] = []
