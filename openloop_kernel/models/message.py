"""Conversation messages and upstream source snapshots."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, field_validator

from openloop_kernel.timeutil import ensure_utc


class Message(BaseModel):
    """One message as delivered by the message source. Read-only to the kernel."""
    id: str
    conversation_id: str
    ts: datetime
    from_me: bool = False
    body: str = ""
    sender: Optional[str] = None

    @field_validator("ts")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class FetchResult(BaseModel):
    messages: List[Message] = []
    truncated: bool = False   # more messages exist past the returned slice
    total: Optional[int] = None


class SourceStatus(BaseModel):
    """Readiness probe result from the message source."""
    connected: bool = False
    needs_auth: bool = False
    state: Optional[str] = None
    backfill: dict = {}


class HeatTier(str, Enum):
    LOW = "low"
    MED = "med"
    HIGH = "high"


class ConversationHeat(BaseModel):
    conversation_id: str
    heat_tier: HeatTier = HeatTier.LOW
    heat_score: float = 0.0
    reasons: List[str] = []


class CoverageSnapshot(BaseModel):
    """How much of the user's direct-conversation history the source holds."""
    direct_conversations_total: int = 0
    direct_coverage_pct: float = 0.0
    hot_conversations: List[ConversationHeat] = []
    max_target_messages: Optional[int] = None
    checked_at: Optional[datetime] = None


class BackfillTarget(BaseModel):
    conversation_id: str
    target_messages: int
