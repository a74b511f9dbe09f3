"""
Obligation models: the kernel's core record.

An Obligation is a trackable commitment extracted from conversation
messages, keyed by (conversation, owner, task). UntrustedCandidate is the
raw classifier shape before sanitization; nothing about it is guaranteed.
"""

from datetime import date, datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ObligationKind(str, Enum):
    REPLY_NEEDED = "reply_needed"
    DECISION_NEEDED = "decision_needed"
    TODO = "todo"
    DATED_EVENT = "dated_event"
    INFO_TO_SAVE = "info_to_save"
    FOLLOW_UP = "follow_up"


class ObligationStatus(str, Enum):
    OPEN = "open"
    DONE = "done"
    DISMISSED = "dismissed"


class Urgency(str, Enum):
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"


URGENCY_RANK = {Urgency.LOW: 1, Urgency.MODERATE: 2, Urgency.HIGH: 3}


class Lane(str, Enum):
    NOW = "now"
    LATER = "later"
    BACKLOG = "backlog"


class EvidenceRef(BaseModel):
    """Pointer to the message that justifies an obligation."""
    message_id: Optional[str] = None
    excerpt: str = ""          # literal substring of the message body
    inferred: bool = False     # resolved by lexical overlap, not by the classifier


class Obligation(BaseModel):
    id: str
    conversation_id: str
    owner: str = "me"
    kind: ObligationKind
    summary: str
    task_goal: str                          # normalized intent used for grouping
    intent_key: Optional[str] = None

    # Temporal anchor
    when: Optional[datetime] = None          # set only with an explicit time of day
    when_date: Optional[date] = None
    has_explicit_time: bool = False
    when_options: List[str] = []

    status: ObligationStatus = ObligationStatus.OPEN
    urgency: Urgency = Urgency.LOW
    importance: int = Field(default=5, ge=1, le=10)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    evidence: EvidenceRef = EvidenceRef()

    first_seen_at: datetime
    last_seen_at: datetime
    times_mentioned: int = 1
    mentions: List[str] = []                 # distinct sighting keys

    blocked: bool = False
    depends_on_task_goal: Optional[str] = None
    context: Optional[str] = None

    # User overrides
    snooze_until: Optional[datetime] = None
    lane_override: Optional[Lane] = None


class SurfacedObligation(Obligation):
    """An obligation as presented on the active list."""
    surface_type: ObligationKind
    lane: Lane
    next_actions: List[str] = []


class UntrustedCandidate(BaseModel):
    """
    Raw classifier output. Every field may be missing, mistyped or fabricated;
    the sanitizer is the only consumer.
    """
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    summary: Any = None
    what: Any = None
    type: Any = None
    category: Any = None
    intent_key: Any = Field(default=None, alias="intentKey")
    loop_key: Any = Field(default=None, alias="loopKey")
    task_goal: Any = Field(default=None, alias="taskGoal")
    evidence_message_id: Any = Field(default=None, alias="evidenceMessageId")
    message_id: Any = Field(default=None, alias="messageId")
    evidence_text: Any = Field(default=None, alias="evidenceText")
    when: Any = None
    when_date: Any = Field(default=None, alias="whenDate")
    when_options: Any = Field(default=None, alias="whenOptions")
    urgency: Any = None
    severity: Any = None
    importance: Any = None
    weight: Any = None
    confidence: Any = None
    status: Any = None
    actor: Any = None
    context: Any = None

    @classmethod
    def from_raw(cls, raw: Any) -> Optional["UntrustedCandidate"]:
        """None when the raw item is not even a mapping."""
        if not isinstance(raw, dict):
            return None
        return cls.model_validate(raw)


class DropRecord(BaseModel):
    reason: str
    original: Any = None


class SanitizeResult(BaseModel):
    obligations: List[Obligation] = []
    dropped: List[DropRecord] = []
