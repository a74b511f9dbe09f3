"""Tests for the cursor and obligation stores."""

import sqlite3
from datetime import timedelta

import pytest

from openloop_kernel.cursor.store import CursorStore
from openloop_kernel.models.cursor import Cursor
from openloop_kernel.models.extraction import ExtractionRun
from openloop_kernel.models.obligation import (
    EvidenceRef,
    Lane,
    Obligation,
    ObligationKind,
    ObligationStatus,
    Urgency,
)
from openloop_kernel.obligations.store import ObligationNotFoundError, ObligationStore
from tests.fakes import NOW


def _make_sighting(message_id: str, minutes_ago: int = 10, obligation_id: str = "ob_1", **overrides) -> Obligation:
    seen = NOW - timedelta(minutes=minutes_ago)
    fields = dict(
        id=obligation_id,
        conversation_id="c1",
        kind=ObligationKind.TODO,
        summary="send the invoice",
        task_goal="send_invoice",
        evidence=EvidenceRef(message_id=message_id, excerpt="invoice"),
        first_seen_at=seen,
        last_seen_at=seen,
        mentions=[message_id],
    )
    fields.update(overrides)
    return Obligation(**fields)


class TestCursorStore:
    def setup_method(self):
        self.store = CursorStore()

    def test_missing_cursor(self):
        assert self.store.get("c1") is None

    def test_last_write_wins(self):
        self.store.set("c1", Cursor(conversation_id="c1", last_processed_ts=NOW, last_processed_message_id="m9"))
        self.store.set("c1", Cursor(conversation_id="c1", last_processed_ts=NOW - timedelta(hours=1)))
        cursor = self.store.get("c1")
        assert cursor.last_processed_ts == NOW - timedelta(hours=1)
        assert cursor.last_processed_message_id is None

    def test_list_all(self):
        self.store.set("b", Cursor(conversation_id="b", last_processed_ts=NOW))
        self.store.set("a", Cursor(conversation_id="a", last_processed_ts=NOW))
        assert [c.conversation_id for c in self.store.list_all()] == ["a", "b"]

    def test_file_backed_cursor_survives_reopen(self, tmp_path):
        path = str(tmp_path / "kernel.db")
        CursorStore(path).set("c1", Cursor(conversation_id="c1", last_processed_ts=NOW))
        assert CursorStore(path).get("c1").last_processed_ts == NOW


class TestObligationStore:
    def setup_method(self):
        self.store = ObligationStore()

    def test_merge_inserts_then_merges(self):
        [first] = self.store.merge_sightings([_make_sighting("m1", minutes_ago=30)])
        assert first.times_mentioned == 1
        [merged] = self.store.merge_sightings([_make_sighting("m2", minutes_ago=5)])
        assert merged.times_mentioned == 2
        assert self.store.get("ob_1") == merged
        assert self.store.count() == 1

    def test_replay_is_idempotent(self):
        self.store.merge_sightings([_make_sighting("m1"), _make_sighting("m2", minutes_ago=5)])
        before = self.store.get("ob_1")
        self.store.merge_sightings([_make_sighting("m2", minutes_ago=5)])
        assert self.store.get("ob_1") == before

    def test_user_completion_survives_new_sightings(self):
        self.store.merge_sightings([_make_sighting("m1")])
        self.store.set_status("ob_1", ObligationStatus.DONE)
        [merged] = self.store.merge_sightings([_make_sighting("m2", minutes_ago=1)])
        assert merged.status == ObligationStatus.DONE
        assert self.store.list_all([ObligationStatus.OPEN]) == []

    def test_overrides(self):
        self.store.merge_sightings([_make_sighting("m1")])
        snoozed = self.store.snooze("ob_1", NOW + timedelta(hours=3))
        assert snoozed.snooze_until == NOW + timedelta(hours=3)
        assert self.store.set_lane_override("ob_1", Lane.LATER).lane_override == Lane.LATER
        assert self.store.set_lane_override("ob_1", None).lane_override is None
        assert self.store.get("ob_1").snooze_until == NOW + timedelta(hours=3)

    def test_unknown_id(self):
        with pytest.raises(ObligationNotFoundError):
            self.store.set_status("nope", ObligationStatus.DONE)
        with pytest.raises(ObligationNotFoundError):
            self.store.snooze("nope", NOW)

    def test_queries(self):
        self.store.merge_sightings([
            _make_sighting("m1", obligation_id="a", urgency=Urgency.HIGH),
            _make_sighting("m2", obligation_id="b", conversation_id="c2", urgency=Urgency.HIGH, minutes_ago=1),
            _make_sighting("m3", obligation_id="c", conversation_id="c3", minutes_ago=1),
            _make_sighting("m4", obligation_id="d", conversation_id="c4", urgency=Urgency.HIGH, minutes_ago=600),
        ])
        self.store.set_status("c", ObligationStatus.DISMISSED)
        assert self.store.high_signal_conversations(NOW - timedelta(hours=2)) == ["c2", "c1"]
        assert self.store.active_conversations() == ["c1", "c2", "c4"]
        assert [o.id for o in self.store.list_by_conversation("c2")] == ["b"]
        assert [o.id for o in self.store.list_all([ObligationStatus.DISMISSED])] == ["c"]
        assert len(self.store.list_all()) == 4

    def test_failed_write_rolls_back(self):
        self.store.merge_sightings([_make_sighting("m1")])
        self.store._conn.execute("CREATE TRIGGER refuse BEFORE UPDATE ON obligations "
                                 "BEGIN SELECT RAISE(ABORT, 'read only'); END")
        with pytest.raises(sqlite3.Error):
            self.store.set_status("ob_1", ObligationStatus.DONE)
        assert self.store.get("ob_1").status == ObligationStatus.OPEN


class TestFollowUpUnblocking:
    def setup_method(self):
        self.store = ObligationStore()
        self.store.merge_sightings([
            _make_sighting("m1", obligation_id="base"),
            _make_sighting(
                "m1",
                obligation_id="fu",
                kind=ObligationKind.FOLLOW_UP,
                task_goal="follow_up_receipt__send_invoice",
                blocked=True,
                depends_on_task_goal="send_invoice",
                mentions=["follow_up:base"],
            ),
        ])

    def test_completing_base_unblocks_immediately(self):
        self.store.set_status("base", ObligationStatus.DONE)
        assert self.store.get("fu").blocked is False

    def test_dismissing_base_keeps_follow_up_blocked(self):
        self.store.set_status("base", ObligationStatus.DISMISSED)
        assert self.store.get("fu").blocked is True

    def test_unblock_keeps_latest_merged_state(self):
        self.store._update("base", status=ObligationStatus.DONE)
        [merged] = self.store.merge_sightings([
            _make_sighting(
                "m2",
                obligation_id="fu",
                kind=ObligationKind.FOLLOW_UP,
                task_goal="follow_up_receipt__send_invoice",
                blocked=True,
                depends_on_task_goal="send_invoice",
                mentions=["follow_up:base:m2"],
                importance=8,
            ),
        ])
        assert merged.times_mentioned == 2

        [unblocked] = self.store.unblock_dependents("c1")
        stored = self.store.get("fu")
        assert unblocked == stored
        assert stored.blocked is False
        assert stored.times_mentioned == 2
        assert stored.importance == 8
        assert self.store.unblock_dependents("c1") == []


class TestRunLog:
    def setup_method(self):
        self.store = ObligationStore()

    def _make_run(self, run_id, minutes_ago, conversation_id="c1", error=None):
        return ExtractionRun(
            run_id=run_id,
            conversation_id=conversation_id,
            started_at=NOW - timedelta(minutes=minutes_ago),
            error=error,
        )

    def test_recent_runs_filters(self):
        self.store.append_run(self._make_run("r1", 30))
        self.store.append_run(self._make_run("r2", 20, error="classifier timeout"))
        self.store.append_run(self._make_run("r3", 10, conversation_id="c2"))
        assert [r.run_id for r in self.store.recent_runs()] == ["r3", "r2", "r1"]
        assert [r.run_id for r in self.store.recent_runs(conversation_id="c1")] == ["r2", "r1"]
        assert [r.run_id for r in self.store.recent_runs(errors_only=True)] == ["r2"]
        assert [r.run_id for r in self.store.recent_runs(limit=1)] == ["r3"]

    def test_append_failure_is_swallowed(self):
        self.store._conn.execute("DROP TABLE extraction_runs")
        self.store.append_run(self._make_run("r1", 5))
