"""
Consolidator / Prioritizer: turns stored obligations into the active list.

Behavioral Contract:
- Regroups obligations by task key a second time so near-duplicates that
  slipped past identity collapse into one.
- Surface type: todo/dated_event become dated_event only with an explicit time.
- Lanes: explicit override, else `now` for high urgency, explicit time or a
  deadline inside the lookahead window, else `backlog`. A date-only deadline
  starts at midnight in the configured timezone.
- Ordering is total and deterministic for a given `now`.
"""

from datetime import datetime, time, timedelta
from typing import Dict, Iterable, List, Optional, Tuple
from zoneinfo import ZoneInfo

from openloop_kernel.identity.keys import canonical_group_intent
from openloop_kernel.identity.merge import combine, kind_rank
from openloop_kernel.models.obligation import (
    URGENCY_RANK,
    Lane,
    Obligation,
    ObligationKind,
    ObligationStatus,
    SurfacedObligation,
    Urgency,
)
from openloop_kernel.timeutil import utcnow

DEFAULT_LOOKAHEAD = timedelta(hours=48)

SURFACE_RANK = {
    ObligationKind.REPLY_NEEDED: 6,
    ObligationKind.DECISION_NEEDED: 5,
    ObligationKind.FOLLOW_UP: 4,
    ObligationKind.DATED_EVENT: 3,
    ObligationKind.TODO: 2,
    ObligationKind.INFO_TO_SAVE: 1,
}

STATUS_RANK = {
    ObligationStatus.OPEN: 0,
    ObligationStatus.DONE: 1,
    ObligationStatus.DISMISSED: 2,
}

NEXT_ACTIONS = {
    ObligationKind.REPLY_NEEDED: ["reply", "snooze", "dismiss"],
    ObligationKind.DECISION_NEEDED: ["decide", "snooze", "dismiss"],
    ObligationKind.FOLLOW_UP: ["follow_up", "complete", "snooze"],
    ObligationKind.DATED_EVENT: ["add_to_calendar", "complete", "snooze"],
    ObligationKind.TODO: ["complete", "snooze", "dismiss"],
    ObligationKind.INFO_TO_SAVE: ["save_note", "dismiss"],
}


def surface_type(obligation: Obligation) -> ObligationKind:
    if obligation.kind in (ObligationKind.TODO, ObligationKind.DATED_EVENT):
        if obligation.has_explicit_time:
            return ObligationKind.DATED_EVENT
        return ObligationKind.TODO
    return obligation.kind


def _deadline(obligation: Obligation, tz: str = "UTC") -> Optional[datetime]:
    if obligation.when is not None:
        return obligation.when
    if obligation.when_date is not None:
        # A bare date starts at local midnight
        return datetime.combine(obligation.when_date, time(0, 0), tzinfo=ZoneInfo(tz))
    return None


def compute_lane(
    obligation: Obligation,
    now: Optional[datetime] = None,
    lookahead: timedelta = DEFAULT_LOOKAHEAD,
    tz: str = "UTC",
) -> Lane:
    if obligation.lane_override is not None:
        return obligation.lane_override
    if obligation.urgency == Urgency.HIGH or obligation.has_explicit_time:
        return Lane.NOW
    deadline = _deadline(obligation, tz)
    if deadline is not None and deadline - (now or utcnow()) <= lookahead:
        return Lane.NOW
    return Lane.BACKLOG


def next_actions(obligation: Obligation) -> List[str]:
    return list(NEXT_ACTIONS[surface_type(obligation)])


def _group_key(obligation: Obligation) -> Tuple[str, str, str]:
    return (
        obligation.conversation_id,
        obligation.owner,
        canonical_group_intent(obligation.task_goal),
    )


def consolidate(obligations: Iterable[Obligation]) -> List[Obligation]:
    """
    Collapse obligations sharing a group key into one representative.

    The representative is the highest-precedence kind, then the earliest
    first sighting, then the smallest id; the others are merged into it.
    """
    groups: Dict[Tuple[str, str, str], List[Obligation]] = {}
    for obligation in obligations:
        groups.setdefault(_group_key(obligation), []).append(obligation)

    consolidated = []
    for members in groups.values():
        members.sort(key=lambda o: (kind_rank(o.kind), o.first_seen_at, o.id))
        representative = members[0]
        for other in members[1:]:
            representative = combine(representative, other, obligation_id=representative.id)
        consolidated.append(representative)
    return consolidated


def sort_key(surfaced: SurfacedObligation) -> tuple:
    return (
        STATUS_RANK[surfaced.status],
        -SURFACE_RANK[surfaced.surface_type],
        -URGENCY_RANK[surfaced.urgency],
        -surfaced.importance,
        -surfaced.last_seen_at.timestamp(),
        surfaced.id,
    )


def prioritize(
    obligations: Iterable[Obligation],
    now: Optional[datetime] = None,
    include_closed: bool = False,
    lookahead: timedelta = DEFAULT_LOOKAHEAD,
    tz: str = "UTC",
) -> List[SurfacedObligation]:
    """
    Consolidate, then drop snoozed (and closed) items, annotate and sort.

    Pass the full persisted set: a closed record still closes its open
    near-duplicates during consolidation.
    """
    now = now or utcnow()
    surfaced = []
    for obligation in consolidate(obligations):
        if not include_closed and obligation.status != ObligationStatus.OPEN:
            continue
        if obligation.snooze_until is not None and obligation.snooze_until > now:
            continue
        surfaced.append(
            SurfacedObligation(
                **obligation.model_dump(),
                surface_type=surface_type(obligation),
                lane=compute_lane(obligation, now, lookahead, tz),
                next_actions=next_actions(obligation),
            )
        )
    surfaced.sort(key=sort_key)
    return surfaced
