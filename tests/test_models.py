"""Tests for core data models."""

from datetime import datetime, timezone

import pytest

from openloop_kernel.models import (
    ACTION_CONTRACTS,
    ActionKind,
    EvidenceRef,
    Job,
    Message,
    Obligation,
    ObligationKind,
    ObligationStatus,
    OrchestratorState,
    Signal,
    UntrustedCandidate,
)

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


def _make_obligation(**overrides) -> Obligation:
    fields = dict(
        id="ob_1",
        conversation_id="c1",
        kind=ObligationKind.TODO,
        summary="send the invoice",
        task_goal="send_invoice",
        first_seen_at=NOW,
        last_seen_at=NOW,
    )
    fields.update(overrides)
    return Obligation(**fields)


class TestMessage:
    def test_naive_timestamp_is_read_as_utc(self):
        message = Message(id="m1", conversation_id="c1", ts=datetime(2026, 10, 18, 9, 30))
        assert message.ts.tzinfo is not None
        assert message.ts.utcoffset().total_seconds() == 0

    def test_iso_string_timestamp(self):
        message = Message(id="m1", conversation_id="c1", ts="2026-10-18T09:30:00+01:00")
        assert message.ts.hour == 8


class TestObligation:
    def test_defaults(self):
        ob = _make_obligation()
        assert ob.owner == "me"
        assert ob.status == ObligationStatus.OPEN
        assert ob.times_mentioned == 1
        assert ob.when is None
        assert ob.evidence == EvidenceRef()

    def test_importance_bounds(self):
        with pytest.raises(Exception):
            _make_obligation(importance=11)
        with pytest.raises(Exception):
            _make_obligation(importance=0)

    def test_confidence_bounds(self):
        with pytest.raises(Exception):
            _make_obligation(confidence=1.5)

    def test_json_round_trip_keeps_dates(self):
        ob = _make_obligation(when_date="2026-10-23", has_explicit_time=False)
        restored = Obligation.model_validate_json(ob.model_dump_json())
        assert restored == ob


class TestUntrustedCandidate:
    def test_accepts_camel_case_and_junk(self):
        candidate = UntrustedCandidate.from_raw({
            "summary": 42,
            "evidenceMessageId": ["not", "a", "string"],
            "whenOptions": "Friday",
            "unexpected": {"nested": True},
        })
        assert candidate.summary == 42
        assert candidate.evidence_message_id == ["not", "a", "string"]
        assert candidate.when_options == "Friday"

    def test_non_mapping_is_rejected(self):
        assert UntrustedCandidate.from_raw("just text") is None
        assert UntrustedCandidate.from_raw(None) is None


class TestOrchestratorModels:
    def test_every_signal_has_a_contract(self):
        assert set(ACTION_CONTRACTS) == set(Signal)
        assert ACTION_CONTRACTS[Signal.HEAT_LOW] == ActionKind.NOOP

    def test_state_defaults(self):
        state = OrchestratorState()
        assert state.last_tick_id == 0
        assert state.posted_targets == {}
        assert state.last_daily_run_date is None

    def test_job_requires_timestamps(self):
        with pytest.raises(Exception):
            Job(id=1, type="x")
