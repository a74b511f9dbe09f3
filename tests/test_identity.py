"""Tests for task identity and the merge engine."""

from datetime import date, datetime, timedelta, timezone
from itertools import permutations

import pytest

from openloop_kernel.identity.keys import (
    MAX_INTENT_LENGTH,
    TaskKey,
    compute_intent,
    compute_task_key,
    normalize_intent_key,
    normalize_loop_key,
    normalize_summary_intent,
    stable_obligation_id,
)
from openloop_kernel.identity.merge import (
    KIND_PRECEDENCE,
    merge_all,
    merge_obligations,
    merge_status,
)
from openloop_kernel.models.obligation import (
    EvidenceRef,
    Obligation,
    ObligationKind,
    ObligationStatus,
    Urgency,
)

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
SATURDAY_7PM = datetime(2026, 10, 24, 19, 0, tzinfo=timezone.utc)


def _make_sighting(
    message_id: str = "m1",
    minutes_ago: int = 10,
    **overrides,
) -> Obligation:
    seen = NOW - timedelta(minutes=minutes_ago)
    fields = dict(
        id="ob_dinner",
        conversation_id="c1",
        kind=ObligationKind.TODO,
        summary="schedule dinner",
        task_goal="schedule_dinner",
        evidence=EvidenceRef(message_id=message_id, excerpt="dinner?"),
        first_seen_at=seen,
        last_seen_at=seen,
        mentions=[message_id],
    )
    fields.update(overrides)
    return Obligation(**fields)


class TestNormalization:
    def test_intent_key_contract(self):
        assert normalize_intent_key("  Schedule Dinner!! ") == "schedule_dinner"
        assert normalize_intent_key("a--b  c") == "a_b_c"
        assert normalize_intent_key("___") is None
        assert normalize_intent_key(None) is None
        assert normalize_intent_key(12) is None

    def test_loop_key_drops_conversation_prefix(self):
        assert normalize_loop_key("c1_send_invoice", "c1") == "send_invoice"
        assert normalize_loop_key("44123@s.whatsapp.net:send invoice", "44123@s.whatsapp.net") == "send_invoice"
        assert normalize_loop_key("send_invoice", "c1") == "send_invoice"

    def test_summary_intent_strips_dates_and_stop_words(self):
        assert normalize_summary_intent("Send the invoice tomorrow") == "send_invoice"
        assert normalize_summary_intent("I'll send the invoice on Friday at 7pm") == "send_invoice"
        assert normalize_summary_intent("send invoice") == "send_invoice"

    def test_preference_order(self):
        assert compute_intent(intent_key="Dinner Plan", task_goal="x", loop_key="y", summary="z") == "dinner_plan"
        assert compute_intent(task_goal="Book Table", loop_key="y", summary="z") == "book_table"
        assert compute_intent(loop_key="c1:book", summary="z", conversation_id="c1") == "book"
        assert compute_intent(summary="Book a table") == "book_table"
        assert compute_intent() == ""

    def test_long_keys_collapse_to_hash(self):
        long_key = "word_" * 20
        intent = compute_intent(intent_key=long_key)
        assert len(intent) == 12
        assert intent == compute_intent(intent_key=long_key)
        assert len(long_key) > MAX_INTENT_LENGTH


class TestStableId:
    def test_deterministic(self):
        a = compute_task_key("c1", "me", intent_key="schedule_dinner")
        b = compute_task_key("c1", "me", summary="Schedule dinner")
        assert a == b == TaskKey("c1", "me", "schedule_dinner")
        assert stable_obligation_id(a) == stable_obligation_id(b)
        assert len(stable_obligation_id(a)) == 16

    def test_conversation_and_owner_are_part_of_identity(self):
        base = compute_task_key("c1", "me", intent_key="x")
        assert stable_obligation_id(base) != stable_obligation_id(compute_task_key("c2", "me", intent_key="x"))
        assert stable_obligation_id(base) != stable_obligation_id(compute_task_key("c1", "them", intent_key="x"))


class TestMergeStatus:
    @pytest.mark.parametrize("a,b,expected", [
        (ObligationStatus.OPEN, ObligationStatus.OPEN, ObligationStatus.OPEN),
        (ObligationStatus.DONE, ObligationStatus.OPEN, ObligationStatus.DONE),
        (ObligationStatus.OPEN, ObligationStatus.DISMISSED, ObligationStatus.DISMISSED),
        (ObligationStatus.DISMISSED, ObligationStatus.DONE, ObligationStatus.DONE),
    ])
    def test_terminal_statuses_are_sticky(self, a, b, expected):
        assert merge_status(a, b) == expected
        assert merge_status(b, a) == expected


class TestMergeObligations:
    def test_idempotent(self):
        ob = _make_sighting()
        assert merge_obligations(ob, ob) == ob

    def test_replayed_sighting_does_not_inflate_mentions(self):
        first = _make_sighting("m1")
        merged = merge_obligations(first, _make_sighting("m2", minutes_ago=5))
        assert merged.times_mentioned == 2
        assert merge_obligations(merged, _make_sighting("m2", minutes_ago=5)) == merged

    def test_done_is_not_reopened(self):
        done = _make_sighting(status=ObligationStatus.DONE)
        merged = merge_obligations(done, _make_sighting("m2", minutes_ago=1))
        assert merged.status == ObligationStatus.DONE

    def test_rejects_different_ids(self):
        with pytest.raises(ValueError):
            merge_obligations(_make_sighting(), _make_sighting(id="other"))

    def test_friday_then_saturday_7pm(self):
        friday = _make_sighting(
            "m1", minutes_ago=30, when_date=date(2026, 10, 23), when_options=["Friday"],
        )
        saturday = _make_sighting(
            "m2", minutes_ago=5, when=SATURDAY_7PM, when_date=date(2026, 10, 24),
            has_explicit_time=True, when_options=["Saturday 7pm"],
        )
        merged = merge_obligations(friday, saturday)
        assert merged.when == SATURDAY_7PM
        assert merged.has_explicit_time is True
        assert merged.when_date == date(2026, 10, 24)
        assert merged.when_options == ["Friday", "Saturday 7pm"]
        assert merged.times_mentioned == 2

        # Arrival order does not change the anchor
        reverse = merge_obligations(saturday, friday)
        assert reverse.when == SATURDAY_7PM
        assert reverse.when_date == date(2026, 10, 24)

    def test_field_rules(self):
        a = _make_sighting(
            "m1", minutes_ago=30, summary="dinner", urgency=Urgency.HIGH, importance=4,
            confidence=0.9, kind=ObligationKind.TODO,
        )
        b = _make_sighting(
            "m2", minutes_ago=5, summary="schedule dinner with Sam", urgency=Urgency.LOW,
            importance=8, confidence=0.4, kind=ObligationKind.REPLY_NEEDED, blocked=True,
        )
        merged = merge_obligations(a, b)
        assert merged.summary == "schedule dinner with Sam"
        assert merged.urgency == Urgency.HIGH
        assert merged.importance == 8
        assert merged.confidence == 0.9
        assert merged.kind == ObligationKind.REPLY_NEEDED
        assert merged.blocked is True
        assert merged.first_seen_at == a.first_seen_at
        assert merged.last_seen_at == b.last_seen_at
        assert merged.evidence.message_id == "m2"

    def test_order_independent_for_three_sightings(self):
        sightings = [
            _make_sighting("m1", minutes_ago=30, when_date=date(2026, 10, 23)),
            _make_sighting("m2", minutes_ago=20, status=ObligationStatus.DONE, importance=9),
            _make_sighting("m3", minutes_ago=10, when=SATURDAY_7PM, when_date=date(2026, 10, 24),
                           has_explicit_time=True, kind=ObligationKind.DECISION_NEEDED),
        ]
        results = []
        for order in permutations(sightings):
            merged = merge_all(order)[0]
            results.append(merged.model_dump(exclude={"when_options"}))
        assert all(r == results[0] for r in results)

    def test_kind_precedence_order(self):
        assert KIND_PRECEDENCE[0] == ObligationKind.DECISION_NEEDED
        assert KIND_PRECEDENCE[-1] == ObligationKind.INFO_TO_SAVE
