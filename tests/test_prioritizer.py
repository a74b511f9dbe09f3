"""Tests for consolidation, lanes and the active-list ordering."""

from datetime import date, timedelta

from openloop_kernel.consolidation.prioritizer import (
    compute_lane,
    consolidate,
    next_actions,
    prioritize,
    surface_type,
)
from openloop_kernel.models.obligation import (
    EvidenceRef,
    Lane,
    Obligation,
    ObligationKind,
    ObligationStatus,
    Urgency,
)
from tests.fakes import NOW


def _make_obligation(obligation_id: str = "a", minutes_ago: int = 10, **overrides) -> Obligation:
    seen = NOW - timedelta(minutes=minutes_ago)
    fields = dict(
        id=obligation_id,
        conversation_id="c1",
        kind=ObligationKind.TODO,
        summary=f"task {obligation_id}",
        task_goal=f"task_{obligation_id}",
        evidence=EvidenceRef(message_id=f"m_{obligation_id}", excerpt="..."),
        first_seen_at=seen,
        last_seen_at=seen,
        mentions=[f"m_{obligation_id}"],
    )
    fields.update(overrides)
    return Obligation(**fields)


class TestSurfaceAndLane:
    def test_surface_type_follows_explicit_time(self):
        assert surface_type(_make_obligation(kind=ObligationKind.DATED_EVENT)) == ObligationKind.TODO
        assert surface_type(_make_obligation(has_explicit_time=True, when=NOW)) == ObligationKind.DATED_EVENT
        assert surface_type(_make_obligation(kind=ObligationKind.REPLY_NEEDED)) == ObligationKind.REPLY_NEEDED

    def test_lanes(self):
        assert compute_lane(_make_obligation(), NOW) == Lane.BACKLOG
        assert compute_lane(_make_obligation(urgency=Urgency.HIGH), NOW) == Lane.NOW
        assert compute_lane(_make_obligation(has_explicit_time=True, when=NOW + timedelta(days=30)), NOW) == Lane.NOW
        assert compute_lane(_make_obligation(when_date=date(2026, 10, 19)), NOW) == Lane.NOW
        assert compute_lane(_make_obligation(when_date=date(2026, 11, 30)), NOW) == Lane.BACKLOG

    def test_date_only_deadline_uses_local_midnight(self):
        ob = _make_obligation(when_date=date(2026, 10, 19))
        window = timedelta(hours=12)
        # Midnight UTC is 12h away; midnight in Los Angeles (PDT) is 19h away
        assert compute_lane(ob, NOW, window) == Lane.NOW
        assert compute_lane(ob, NOW, window, tz="America/Los_Angeles") == Lane.BACKLOG
        [surfaced] = prioritize([ob], now=NOW, lookahead=window, tz="America/Los_Angeles")
        assert surfaced.lane == Lane.BACKLOG

    def test_override_wins(self):
        ob = _make_obligation(urgency=Urgency.HIGH, lane_override=Lane.LATER)
        assert compute_lane(ob, NOW) == Lane.LATER

    def test_next_actions(self):
        assert next_actions(_make_obligation(kind=ObligationKind.REPLY_NEEDED))[0] == "reply"
        assert "add_to_calendar" in next_actions(_make_obligation(has_explicit_time=True, when=NOW))


class TestConsolidate:
    def test_near_duplicates_collapse(self):
        todo = _make_obligation("a", minutes_ago=60, task_goal="send_invoice")
        reply = _make_obligation(
            "b", minutes_ago=5, kind=ObligationKind.REPLY_NEEDED, task_goal="send_invoice_friday"
        )
        [merged] = consolidate([todo, reply])
        assert merged.id == "b"
        assert merged.kind == ObligationKind.REPLY_NEEDED
        assert merged.first_seen_at == todo.first_seen_at
        assert merged.times_mentioned == 2

    def test_other_conversations_stay_apart(self):
        result = consolidate([
            _make_obligation("a", task_goal="send_invoice"),
            _make_obligation("b", task_goal="send_invoice", conversation_id="c2"),
        ])
        assert len(result) == 2


class TestPrioritize:
    def test_ordering(self):
        obligations = [
            _make_obligation("todo_low", importance=9),
            _make_obligation("todo_high", urgency=Urgency.HIGH),
            _make_obligation("reply", kind=ObligationKind.REPLY_NEEDED),
            _make_obligation("info", kind=ObligationKind.INFO_TO_SAVE, urgency=Urgency.HIGH),
        ]
        ids = [s.id for s in prioritize(obligations, now=NOW)]
        assert ids == ["reply", "todo_high", "todo_low", "info"]

    def test_ties_break_on_recency_then_id(self):
        obligations = [
            _make_obligation("b", minutes_ago=10),
            _make_obligation("a", minutes_ago=10),
            _make_obligation("c", minutes_ago=1),
        ]
        ids = [s.id for s in prioritize(obligations, now=NOW)]
        assert ids == ["c", "a", "b"]
        assert ids == [s.id for s in prioritize(list(reversed(obligations)), now=NOW)]

    def test_hides_snoozed_and_closed(self):
        obligations = [
            _make_obligation("snoozed", snooze_until=NOW + timedelta(hours=2)),
            _make_obligation("woke", snooze_until=NOW - timedelta(minutes=1)),
            _make_obligation("done", status=ObligationStatus.DONE),
        ]
        assert [s.id for s in prioritize(obligations, now=NOW)] == ["woke"]
        closed = prioritize(obligations, now=NOW, include_closed=True)
        assert [s.id for s in closed] == ["woke", "done"]

    def test_annotations(self):
        [surfaced] = prioritize([_make_obligation(urgency=Urgency.HIGH)], now=NOW)
        assert surfaced.lane == Lane.NOW
        assert surfaced.surface_type == ObligationKind.TODO
        assert surfaced.next_actions == ["complete", "snooze", "dismiss"]
