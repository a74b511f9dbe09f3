"""Open loop kernel data models."""

from openloop_kernel.models.config import KernelConfig
from openloop_kernel.models.cursor import Cursor
from openloop_kernel.models.extraction import (
    ClassifierContext,
    ExtractionConfig,
    ExtractionRun,
    RefreshSummary,
)
from openloop_kernel.models.job import Job, JobQueueConfig, JobStatus
from openloop_kernel.models.message import (
    BackfillTarget,
    ConversationHeat,
    CoverageSnapshot,
    FetchResult,
    HeatTier,
    Message,
    SourceStatus,
)
from openloop_kernel.models.obligation import (
    URGENCY_RANK,
    DropRecord,
    EvidenceRef,
    Lane,
    Obligation,
    ObligationKind,
    ObligationStatus,
    SanitizeResult,
    SurfacedObligation,
    UntrustedCandidate,
    Urgency,
)
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
    ActionKind,
    ActionPlan,
    CandidateDecision,
    DecisionStatus,
    PlanOutcome,
    ReasonCode,
    Signal,
)

__all__ = [
    "ACTION_CONTRACTS",
    "ActionKind",
    "ActionPlan",
    "BackfillTarget",
    "CandidateDecision",
    "ClassifierContext",
    "ConnectionState",
    "ConversationHeat",
    "CoverageSnapshot",
    "Cursor",
    "DecisionStatus",
    "DropRecord",
    "ErrorEntry",
    "EvidenceRef",
    "ExtractionConfig",
    "ExtractionRun",
    "FetchResult",
    "HeatTier",
    "InfillReason",
    "InfillResult",
    "Job",
    "JobQueueConfig",
    "JobStatus",
    "KernelConfig",
    "Lane",
    "Message",
    "Obligation",
    "ObligationKind",
    "ObligationStatus",
    "OrchestratorConfig",
    "OrchestratorState",
    "PlanOutcome",
    "PostedTarget",
    "ReasonCode",
    "RefreshSummary",
    "SanitizeResult",
    "Signal",
    "SourceStatus",
    "SurfacedObligation",
    "URGENCY_RANK",
    "UntrustedCandidate",
    "Urgency",
]
