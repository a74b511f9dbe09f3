"""
Task identity: the (conversation, owner, intent) key every obligation is
grouped and persisted by.

Behavioral Contract:
- Pure and deterministic: the same inputs always give the same key and id.
- Key preference: explicit intent key, then task goal, then loop key, then
  a stop-word/date-stripped rendering of the summary.
- Keys longer than MAX_INTENT_LENGTH collapse to a short hash token.
"""

import hashlib
import re
from typing import Any, NamedTuple, Optional

MAX_INTENT_LENGTH = 60
HASH_TOKEN_LENGTH = 12
OBLIGATION_ID_LENGTH = 16

STOP_WORDS = frozenset({
    "a", "an", "and", "are", "as", "at", "be", "by", "can", "could", "d", "do",
    "for", "from", "get", "go", "i", "ill", "in", "into", "is", "it", "ll", "m",
    "let", "lets", "me", "my", "need", "needs", "of", "on", "or", "our",
    "please", "re", "s", "should", "so", "some", "t", "that", "the", "their", "them", "then",
    "this", "to", "up", "us", "ve", "we", "will", "with", "you", "your",
})

_DATE_WORDS = re.compile(
    r"\b("
    r"mon(day)?|tue(s(day)?)?|wed(nesday)?|thu(rs(day)?)?|fri(day)?|sat(urday)?|sun(day)?"
    r"|jan(uary)?|feb(ruary)?|mar(ch)?|apr(il)?|may|june?|july?|aug(ust)?"
    r"|sep(t(ember)?)?|oct(ober)?|nov(ember)?|dec(ember)?"
    r"|today|tonight|tomorrow|yesterday|morning|afternoon|evening|weekend|next|week"
    r"|\d{4}|\d{1,2}(st|nd|rd|th)|\d{1,2}:\d{2}|\d{1,2}\s?(am|pm)"
    r")\b",
    re.IGNORECASE,
)
_NON_WORD = re.compile(r"[^\w]+")


class TaskKey(NamedTuple):
    conversation_id: str
    owner: str
    intent: str

    def as_string(self) -> str:
        return f"{self.conversation_id}|{self.owner}|{self.intent}"


def _hash_token(text: str, length: int = HASH_TOKEN_LENGTH) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()[:length]


def _bounded(key: str) -> str:
    if len(key) > MAX_INTENT_LENGTH:
        return _hash_token(key)
    return key


def normalize_intent_key(key: Any) -> Optional[str]:
    """Lowercase; runs of non-word characters become one underscore; trimmed."""
    if not isinstance(key, str):
        return None
    cleaned = _NON_WORD.sub("_", key.lower()).strip("_")
    return cleaned or None


def normalize_loop_key(key: Any, conversation_id: Optional[str] = None) -> Optional[str]:
    """Like normalize_intent_key, also dropping a leading conversation id."""
    cleaned = normalize_intent_key(key)
    if cleaned is None:
        return None
    prefix = normalize_intent_key(conversation_id)
    if prefix and cleaned.startswith(prefix + "_"):
        cleaned = cleaned[len(prefix) + 1:]
    return cleaned or None


def normalize_summary_intent(summary: Any) -> Optional[str]:
    """Summary text with dates and stop words removed, joined by underscores."""
    if not isinstance(summary, str):
        return None
    text = _DATE_WORDS.sub(" ", summary.lower())
    tokens = [t for t in _NON_WORD.split(text) if t and t not in STOP_WORDS]
    tokens = [t.strip("_") for t in tokens if t.strip("_")]
    if not tokens:
        return normalize_intent_key(summary)
    return "_".join(tokens)


def compute_intent(
    *,
    intent_key: Any = None,
    task_goal: Any = None,
    loop_key: Any = None,
    summary: Any = None,
    conversation_id: Optional[str] = None,
) -> str:
    """First usable source wins. Empty string when nothing usable is present."""
    intent = (
        normalize_intent_key(intent_key)
        or normalize_intent_key(task_goal)
        or normalize_loop_key(loop_key, conversation_id)
        or normalize_summary_intent(summary)
        or ""
    )
    return _bounded(intent) if intent else ""


def compute_task_key(
    conversation_id: str,
    owner: str,
    *,
    intent_key: Any = None,
    task_goal: Any = None,
    loop_key: Any = None,
    summary: Any = None,
) -> TaskKey:
    intent = compute_intent(
        intent_key=intent_key,
        task_goal=task_goal,
        loop_key=loop_key,
        summary=summary,
        conversation_id=conversation_id,
    )
    return TaskKey(conversation_id, owner or "me", intent)


def stable_obligation_id(task_key: TaskKey) -> str:
    return hashlib.sha1(task_key.as_string().encode("utf-8")).hexdigest()[:OBLIGATION_ID_LENGTH]


def canonical_group_intent(task_goal: str) -> str:
    """Second-pass grouping intent: re-strips a stored task goal so near-identical goals collide."""
    if len(task_goal) == HASH_TOKEN_LENGTH and re.fullmatch(r"[0-9a-f]+", task_goal):
        return task_goal
    return _bounded(normalize_summary_intent(task_goal.replace("_", " ")) or task_goal)
