"""
Evidence Sanitizer: the trust boundary for classifier output.

Turns an arbitrary list of untrusted candidates plus the message batch they
were extracted from into clean obligations and structured drop records.

Behavioral Contract:
- Never raises on a malformed candidate; each one is either kept or dropped
  with a reason code.
- Every kept obligation cites a message from the batch, and its evidence
  excerpt is a literal substring of that message's body (strict mode). In
  relaxed mode an unresolvable candidate is kept with inferred evidence and
  penalized confidence.
- `when` is only ever set alongside an explicit time of day.
- At most `capacity` distinct obligations per run; duplicates inside the
  batch merge instead of counting twice.
"""

import logging
import re
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from openloop_kernel.evidence.when import TemporalAnchor, normalize_when
from openloop_kernel.identity.keys import compute_task_key, stable_obligation_id
from openloop_kernel.identity.merge import merge_obligations
from openloop_kernel.models.extraction import ExtractionConfig
from openloop_kernel.models.message import Message
from openloop_kernel.models.obligation import (
    DropRecord,
    EvidenceRef,
    Obligation,
    ObligationKind,
    ObligationStatus,
    SanitizeResult,
    UntrustedCandidate,
    Urgency,
)
from openloop_kernel.timeutil import utcnow

logger = logging.getLogger(__name__)

EXCERPT_LENGTH = 140
FALLBACK_EXCERPT_LENGTH = 160
MIN_EXCERPT_CHARS = 4
MIN_INFO_CONFIDENCE = 0.5
MIN_CONFIDENCE_WITHOUT_EVIDENCE = 0.3
SOCIAL_IMPORTANCE_CAP = 7

_TOKEN = re.compile(r"[a-z0-9]+")
_SMALL_TALK = re.compile(
    r"^\s*(how are you|how r u|good (morning|night|evening)|gm|gn|hello|hi|hey|"
    r"hope (you'?re|you are) (ok|okay|well)|thanks?( you)?|thx|ok(ay)?|lol|haha)\W*$",
    re.IGNORECASE,
)
_INFO_WORTHY = re.compile(
    r"\b(remember|note|save|address|allerg(y|ic)|flight|booking|reservation|code|"
    r"tracking|number|password|birthday|passport)\b",
    re.IGNORECASE,
)
_HIGH_SIGNAL = re.compile(
    r"(love you|miss you|proud of you|congrat|sorry for your|urgent|asap|emergency|"
    r"hospital|❤|♥)",
    re.IGNORECASE,
)
_SOCIAL_SOFT = re.compile(r"\b(tea|coffee|catch ?up|dinner|lunch|drinks?|brunch)\b", re.IGNORECASE)
_BLOCKED = [
    re.compile(r"\bwaiting (for|on) (you|them|him|her|a reply|reply|the link|confirmation)\b", re.I),
    re.compile(r"\bwill send\b.*\bonce\b", re.I),
    re.compile(r"\bas soon as (you|they) (send|confirm|reply)\b", re.I),
]
_ACTION_VERB = re.compile(
    r"^\s*(i'?ll |i will |we'?ll |need to |to )?(send|call|book|pay|buy|email|text|"
    r"message|check|confirm|share|sort|fix|pick up|drop off|order|arrange|schedule|"
    r"reply|ring)\b",
    re.IGNORECASE,
)

_KIND_ALIASES = {
    "reply_needed": ObligationKind.REPLY_NEEDED,
    "reply": ObligationKind.REPLY_NEEDED,
    "question": ObligationKind.REPLY_NEEDED,
    "decision_needed": ObligationKind.DECISION_NEEDED,
    "decision": ObligationKind.DECISION_NEEDED,
    "todo": ObligationKind.TODO,
    "promise": ObligationKind.TODO,
    "task": ObligationKind.TODO,
    "dated_event": ObligationKind.DATED_EVENT,
    "event_date": ObligationKind.DATED_EVENT,
    "event": ObligationKind.DATED_EVENT,
    "time_sensitive": ObligationKind.DATED_EVENT,
    "info_to_save": ObligationKind.INFO_TO_SAVE,
    "info": ObligationKind.INFO_TO_SAVE,
    "follow_up": ObligationKind.FOLLOW_UP,
    "followup": ObligationKind.FOLLOW_UP,
}


class _Drop(Exception):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


def _text(*values: Any) -> str:
    """First non-empty string among values, stripped."""
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _plain(raw: Any) -> Any:
    """Keep JSON-shaped originals as-is; anything else is stored as its repr."""
    if raw is None or isinstance(raw, (dict, list, str, int, float, bool)):
        return raw
    return repr(raw)


def _tokens(text: str) -> set:
    return {t for t in _TOKEN.findall(text.lower()) if len(t) >= 3}


def infer_evidence(
    summary: str,
    kind: Optional[ObligationKind],
    messages: List[Message],
) -> Optional[Message]:
    """
    Best lexical match for a summary among the batch's messages.

    Scored by shared tokens; reply/decision items prefer the other party's
    messages; ties go to the most recent message. None when nothing overlaps.
    """
    wanted = _tokens(summary)
    if not wanted:
        return None
    prefer_them = kind in (ObligationKind.REPLY_NEEDED, ObligationKind.DECISION_NEEDED)
    best: Optional[Tuple[float, datetime, str]] = None
    best_message: Optional[Message] = None
    for message in messages:
        overlap = len(wanted & _tokens(message.body))
        if overlap == 0:
            continue
        score = overlap * 10.0 + (5.0 if prefer_them and not message.from_me else 0.0)
        rank = (score, message.ts, message.id)
        if best is None or rank > best:
            best, best_message = rank, message
    return best_message


def classify_kind(
    candidate: UntrustedCandidate,
    summary: str,
    anchor: TemporalAnchor,
    evidence: Optional[Message],
) -> ObligationKind:
    """Classifier hint first, then heuristics; dated events without a time become todos."""
    hint = _text(candidate.type, candidate.category).lower().replace("-", "_").replace(" ", "_")
    kind = _KIND_ALIASES.get(hint)
    if kind is None:
        if evidence is not None and not evidence.from_me and evidence.body.rstrip().endswith("?"):
            kind = ObligationKind.REPLY_NEEDED
        elif _ACTION_VERB.search(summary):
            kind = ObligationKind.TODO
        elif anchor.when_date is not None:
            kind = ObligationKind.DATED_EVENT
        else:
            kind = ObligationKind.INFO_TO_SAVE
    if kind == ObligationKind.DATED_EVENT and not anchor.has_time:
        kind = ObligationKind.TODO
    return kind


def parse_urgency(candidate: UntrustedCandidate) -> Urgency:
    raw = _text(candidate.urgency, candidate.severity).lower()
    if raw in ("high", "urgent", "critical"):
        return Urgency.HIGH
    if raw in ("moderate", "medium", "med"):
        return Urgency.MODERATE
    return Urgency.LOW


def parse_importance(candidate: UntrustedCandidate) -> int:
    value = _number(candidate.importance)
    if value is None:
        weight = _number(candidate.weight)
        value = weight * 10 if weight is not None else 5.0
    return int(min(10, max(1, round(value))))


def parse_confidence(candidate: UntrustedCandidate) -> float:
    value = _number(candidate.confidence)
    if value is None:
        return 0.5
    return min(1.0, max(0.0, value))


def detect_blocked(*texts: str) -> bool:
    joined = " ".join(t for t in texts if t)
    return any(pattern.search(joined) for pattern in _BLOCKED)


def is_small_talk(*texts: str) -> bool:
    return any(t and _SMALL_TALK.match(t) for t in texts)


def is_high_signal(*texts: str) -> bool:
    return any(t and _HIGH_SIGNAL.search(t) for t in texts)


def _when_options(candidate: UntrustedCandidate) -> List[str]:
    options: List[str] = []
    raw = candidate.when_options if isinstance(candidate.when_options, list) else []
    for value in raw + [candidate.when]:
        if isinstance(value, str) and value.strip() and value.strip() not in options:
            options.append(value.strip())
    return options[:10]


class EvidenceSanitizer:
    """Validates and normalizes classifier candidates against the message batch."""

    def __init__(self, config: Optional[ExtractionConfig] = None):
        self.config = config or ExtractionConfig()

    def sanitize(
        self,
        conversation_id: str,
        candidates: Iterable[Any],
        messages: List[Message],
        now: Optional[datetime] = None,
        cap: Optional[int] = None,
    ) -> SanitizeResult:
        now = now or utcnow()
        capacity = cap if cap is not None else self.config.capacity
        by_id: Dict[str, Message] = {m.id: m for m in messages}
        kept: Dict[str, Obligation] = {}
        dropped: List[DropRecord] = []

        if not isinstance(candidates, (list, tuple)):
            candidates = []

        for raw in candidates:
            try:
                obligation = self._clean_one(conversation_id, raw, by_id, messages, now)
            except _Drop as drop:
                logger.debug("Dropped candidate in %s: %s", conversation_id, drop.reason)
                dropped.append(DropRecord(reason=drop.reason, original=_plain(raw)))
                continue
            except (ValueError, TypeError) as exc:
                logger.debug("Malformed candidate in %s: %s", conversation_id, exc)
                dropped.append(DropRecord(reason="malformed_candidate", original=_plain(raw)))
                continue

            if obligation.id in kept:
                kept[obligation.id] = merge_obligations(kept[obligation.id], obligation)
            elif len(kept) >= capacity:
                dropped.append(DropRecord(reason="over_capacity", original=_plain(raw)))
            else:
                kept[obligation.id] = obligation

        return SanitizeResult(obligations=list(kept.values()), dropped=dropped)

    def _clean_one(
        self,
        conversation_id: str,
        raw: Any,
        by_id: Dict[str, Message],
        messages: List[Message],
        now: datetime,
    ) -> Obligation:
        candidate = UntrustedCandidate.from_raw(raw)
        if candidate is None:
            raise _Drop("malformed_candidate")

        summary = _text(candidate.summary, candidate.what)
        if not summary:
            raise _Drop("empty_summary")
        summary = summary[: self.config.summary_max_length]

        strict = self.config.strict_evidence
        anchor = normalize_when(candidate.when, candidate.when_date, tz=self.config.timezone, now=now)
        hint_kind = classify_kind(candidate, summary, anchor, None)

        # Resolve the cited message
        evidence_id = _text(candidate.evidence_message_id, candidate.message_id)
        message = by_id.get(evidence_id) if evidence_id else None
        excerpt = _text(candidate.evidence_text)
        inferred = False
        if message is None:
            message = infer_evidence(summary, hint_kind, messages)
            if message is not None:
                excerpt = message.body[:EXCERPT_LENGTH]
                inferred = True
            elif strict:
                raise _Drop("missing_evidence_message")
            else:
                excerpt = ""
                inferred = True

        if message is not None:
            if excerpt and excerpt not in message.body:
                if strict:
                    raise _Drop("evidence_text_not_in_message")
                excerpt = message.body[:FALLBACK_EXCERPT_LENGTH]
                inferred = True
            elif not excerpt:
                excerpt = message.body[:FALLBACK_EXCERPT_LENGTH]
            if len(excerpt.strip()) < MIN_EXCERPT_CHARS and not is_high_signal(summary, message.body):
                raise _Drop("thin_evidence")

        if is_small_talk(summary, excerpt):
            raise _Drop("small_talk")

        kind = classify_kind(candidate, summary, anchor, message)
        urgency = parse_urgency(candidate)
        importance = parse_importance(candidate)
        confidence = parse_confidence(candidate)
        if inferred:
            confidence = max(0.0, confidence - self.config.inferred_confidence_penalty)

        if kind == ObligationKind.INFO_TO_SAVE and (
            confidence < MIN_INFO_CONFIDENCE or not _INFO_WORTHY.search(f"{summary} {excerpt}")
        ):
            raise _Drop("info_not_worthy")
        if message is None and confidence < MIN_CONFIDENCE_WITHOUT_EVIDENCE:
            raise _Drop("low_confidence_or_empty")

        if _SOCIAL_SOFT.search(summary) and not anchor.has_time:
            importance = min(importance, SOCIAL_IMPORTANCE_CAP)

        owner = "me"
        if kind == ObligationKind.INFO_TO_SAVE:
            actor = _text(candidate.actor).lower()
            owner = "them" if actor in ("them", "other", "contact") else "me"

        task_key = compute_task_key(
            conversation_id,
            owner,
            intent_key=candidate.intent_key,
            task_goal=candidate.task_goal,
            loop_key=candidate.loop_key,
            summary=summary,
        )
        if not task_key.intent:
            raise _Drop("low_confidence_or_empty")

        seen_at = message.ts if message is not None else now
        mention = message.id if message is not None else f"{conversation_id}:{task_key.intent}:{seen_at.isoformat()}"
        context = _text(candidate.context) or None
        status = ObligationStatus.DONE if _text(candidate.status).lower() == "done" else ObligationStatus.OPEN

        return Obligation(
            id=stable_obligation_id(task_key),
            conversation_id=conversation_id,
            owner=owner,
            kind=kind,
            summary=summary,
            task_goal=task_key.intent,
            intent_key=task_key.intent if candidate.intent_key else None,
            when=anchor.when,
            when_date=anchor.when_date,
            has_explicit_time=anchor.has_time,
            when_options=_when_options(candidate),
            status=status,
            urgency=urgency,
            importance=importance,
            confidence=round(confidence, 4),
            evidence=EvidenceRef(
                message_id=message.id if message is not None else None,
                excerpt=excerpt,
                inferred=inferred,
            ),
            first_seen_at=seen_at,
            last_seen_at=seen_at,
            times_mentioned=1,
            mentions=[mention],
            blocked=detect_blocked(summary, excerpt, context or ""),
            context=context,
        )
