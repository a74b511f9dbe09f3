"""
Follow-up receipt obligations.

When the user has evidently sent something (a link, an invite, a file...)
as part of a todo or reply, a blocked follow-up is spawned to check it
arrived. The follow-up unblocks once the base obligation is done.
"""

import re
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from openloop_kernel.identity.keys import compute_task_key, stable_obligation_id
from openloop_kernel.models.obligation import (
    EvidenceRef,
    Obligation,
    ObligationKind,
    ObligationStatus,
)

FOLLOW_UP_PREFIX = "follow_up_receipt__"
FOLLOW_UP_DELAY = timedelta(days=1)

_SEND_TASK = re.compile(r"\b(send|share|forward|email|text|pass on)\b", re.IGNORECASE)
_SENT = re.compile(r"\b(sent|shared|forwarded|emailed|here(?:'s| is)|attached)\b|https?://", re.IGNORECASE)
_ARTIFACT = re.compile(
    r"\b(link|invite|address|doc|document|file|instructions|details|payment|calendar)\b",
    re.IGNORECASE,
)


def _artifact(obligation: Obligation) -> Optional[str]:
    match = _ARTIFACT.search(f"{obligation.summary} {obligation.task_goal.replace('_', ' ')}")
    return match.group(1).lower() if match else None


def wants_receipt_follow_up(obligation: Obligation) -> bool:
    if obligation.owner != "me" or obligation.blocked:
        return False
    if obligation.kind not in (ObligationKind.TODO, ObligationKind.REPLY_NEEDED):
        return False
    if obligation.task_goal.startswith(FOLLOW_UP_PREFIX):
        return False
    if not _SEND_TASK.search(f"{obligation.summary} {obligation.task_goal.replace('_', ' ')}"):
        return False
    sent = obligation.status == ObligationStatus.DONE or bool(_SENT.search(obligation.evidence.excerpt))
    return sent and _artifact(obligation) is not None


def build_receipt_follow_up(base: Obligation, last_message_at: datetime) -> Obligation:
    goal = f"{FOLLOW_UP_PREFIX}{base.task_goal}"
    task_key = compute_task_key(base.conversation_id, base.owner, task_goal=goal)
    artifact = _artifact(base) or "item"
    return Obligation(
        id=stable_obligation_id(task_key),
        conversation_id=base.conversation_id,
        owner=base.owner,
        kind=ObligationKind.FOLLOW_UP,
        summary=f"Follow up: did they receive the {artifact}?",
        task_goal=task_key.intent,
        when_date=(last_message_at + FOLLOW_UP_DELAY).date(),
        importance=min(10, max(1, base.importance - 1)),
        confidence=base.confidence,
        evidence=EvidenceRef(
            message_id=base.evidence.message_id,
            excerpt=base.evidence.excerpt,
            inferred=base.evidence.inferred,
        ),
        first_seen_at=base.last_seen_at,
        last_seen_at=base.last_seen_at,
        mentions=[f"follow_up:{base.id}"],
        blocked=True,
        depends_on_task_goal=base.task_goal,
    )


def derive_follow_ups(obligations: Iterable[Obligation], last_message_at: datetime) -> List[Obligation]:
    """One receipt follow-up per qualifying base goal."""
    follow_ups: Dict[str, Obligation] = {}
    for obligation in obligations:
        if wants_receipt_follow_up(obligation):
            follow_up = build_receipt_follow_up(obligation, last_message_at)
            follow_ups.setdefault(follow_up.id, follow_up)
    return list(follow_ups.values())


def follow_ups_to_unblock(obligations: Iterable[Obligation]) -> List[Obligation]:
    """Blocked follow-ups whose base obligation in the same conversation is done."""
    obligations = list(obligations)
    done_goals = {
        (o.conversation_id, o.task_goal)
        for o in obligations
        if o.status == ObligationStatus.DONE
    }
    return [
        o.model_copy(update={"blocked": False})
        for o in obligations
        if o.blocked
        and o.depends_on_task_goal
        and (o.conversation_id, o.depends_on_task_goal) in done_goals
    ]
