"""
Merge engine: folds repeated sightings of one obligation into one record.

Behavioral Contract:
- merge(a, a) == a, and merging a replayed sighting changes nothing.
- The result does not depend on the order sightings arrive in.
- done and dismissed are terminal: once either side has one, the result does.
- An explicit-time anchor is never replaced by a date-only one.
"""

from datetime import date, datetime
from functools import reduce
from typing import Iterable, List, Optional, Tuple

from openloop_kernel.models.obligation import (
    URGENCY_RANK,
    Obligation,
    ObligationKind,
    ObligationStatus,
)

MAX_WHEN_OPTIONS = 10

KIND_PRECEDENCE = (
    ObligationKind.DECISION_NEEDED,
    ObligationKind.REPLY_NEEDED,
    ObligationKind.DATED_EVENT,
    ObligationKind.TODO,
    ObligationKind.FOLLOW_UP,
    ObligationKind.INFO_TO_SAVE,
)


def kind_rank(kind: ObligationKind) -> int:
    return KIND_PRECEDENCE.index(kind)


def merge_status(a: ObligationStatus, b: ObligationStatus) -> ObligationStatus:
    if ObligationStatus.DONE in (a, b):
        return ObligationStatus.DONE
    if ObligationStatus.DISMISSED in (a, b):
        return ObligationStatus.DISMISSED
    return ObligationStatus.OPEN


def merge_when_options(a: List[str], b: List[str]) -> List[str]:
    merged: List[str] = []
    for option in list(a) + list(b):
        if option not in merged:
            merged.append(option)
    return merged[:MAX_WHEN_OPTIONS]


def _merge_temporal(a: Obligation, b: Obligation) -> Tuple[Optional[datetime], Optional[date], bool]:
    timed = [o for o in (a, b) if o.has_explicit_time and o.when is not None]
    if timed:
        best = min(timed, key=lambda o: o.when)
        return best.when, best.when_date, True
    dates = [o.when_date for o in (a, b) if o.when_date is not None]
    return None, (min(dates) if dates else None), False


def _longest(a: Optional[str], b: Optional[str]) -> Optional[str]:
    values = [v for v in (a, b) if v]
    if not values:
        return None
    return min(values, key=lambda v: (-len(v), v))


def _first_of(a, b):
    values = [v for v in (a, b) if v is not None]
    return min(values) if values else None


def combine(a: Obligation, b: Obligation, obligation_id: Optional[str] = None) -> Obligation:
    """Field-wise merge of two records without checking that they share an id."""
    when, when_date, has_time = _merge_temporal(a, b)
    newest = max((a, b), key=lambda o: (o.last_seen_at, o.evidence.message_id or ""))

    mentions = sorted(set(a.mentions) | set(b.mentions))

    snoozes = [s for s in (a.snooze_until, b.snooze_until) if s is not None]

    return Obligation(
        id=obligation_id or a.id,
        conversation_id=a.conversation_id,
        owner=a.owner,
        kind=min(a.kind, b.kind, key=kind_rank),
        summary=_longest(a.summary, b.summary),
        task_goal=a.task_goal,
        intent_key=_first_of(a.intent_key, b.intent_key),
        when=when,
        when_date=when_date,
        has_explicit_time=has_time,
        when_options=merge_when_options(a.when_options, b.when_options),
        status=merge_status(a.status, b.status),
        urgency=max(a.urgency, b.urgency, key=lambda u: URGENCY_RANK[u]),
        importance=max(a.importance, b.importance),
        confidence=max(a.confidence, b.confidence),
        evidence=newest.evidence,
        first_seen_at=min(a.first_seen_at, b.first_seen_at),
        last_seen_at=max(a.last_seen_at, b.last_seen_at),
        times_mentioned=max(len(mentions), 1),
        mentions=mentions,
        blocked=a.blocked or b.blocked,
        depends_on_task_goal=_first_of(a.depends_on_task_goal, b.depends_on_task_goal),
        context=_longest(a.context, b.context),
        snooze_until=max(snoozes) if snoozes else None,
        lane_override=a.lane_override or b.lane_override,
    )


def merge_obligations(existing: Obligation, incoming: Obligation) -> Obligation:
    """Merge a new sighting into the stored record for the same task key."""
    if existing.id != incoming.id:
        raise ValueError(f"Cannot merge obligations {existing.id} and {incoming.id}")
    return combine(existing, incoming)


def merge_all(obligations: Iterable[Obligation]) -> List[Obligation]:
    """Fold a sequence of sightings into one record per id, in first-seen id order."""
    grouped = {}
    for obligation in obligations:
        grouped.setdefault(obligation.id, []).append(obligation)
    return [reduce(merge_obligations, group) for group in grouped.values()]
