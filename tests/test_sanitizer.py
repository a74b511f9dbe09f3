"""Tests for the evidence sanitizer."""

from datetime import date, datetime, timezone

from openloop_kernel.evidence.sanitizer import (
    EvidenceSanitizer,
    classify_kind,
    detect_blocked,
    infer_evidence,
    is_small_talk,
)
from openloop_kernel.evidence.when import NO_ANCHOR
from openloop_kernel.models.extraction import ExtractionConfig
from openloop_kernel.models.obligation import ObligationKind, UntrustedCandidate, Urgency
from tests.fakes import NOW, make_message


def _make_messages():
    return [
        make_message("m1", "Can you send me the invoice by Friday?", minutes_ago=30),
        make_message("m2", "Sure, I'll send it tomorrow", minutes_ago=20, from_me=True),
        make_message("m3", "thanks!", minutes_ago=15),
        make_message("m4", "ok", minutes_ago=12),
        make_message("m5", "Dinner Saturday? I really like that jazz place", minutes_ago=5),
    ]


def _make_candidate(**overrides):
    candidate = {
        "summary": "Send Sam the invoice",
        "type": "todo",
        "evidenceMessageId": "m1",
        "evidenceText": "send me the invoice",
        "whenDate": "Friday",
        "confidence": 0.9,
    }
    candidate.update(overrides)
    return candidate


def _reasons(result):
    return [d.reason for d in result.dropped]


class TestSanitize:
    def setup_method(self):
        self.messages = _make_messages()
        self.sanitizer = EvidenceSanitizer()

    def _run(self, *candidates, **kwargs):
        return self.sanitizer.sanitize("c1", list(candidates), self.messages, now=NOW, **kwargs)

    def test_clean_candidate_is_kept(self):
        result = self._run(_make_candidate())
        assert result.dropped == []
        [ob] = result.obligations
        assert ob.kind == ObligationKind.TODO
        assert ob.task_goal == "send_sam_invoice"
        assert ob.evidence.message_id == "m1"
        assert ob.evidence.excerpt == "send me the invoice"
        assert ob.evidence.inferred is False
        assert ob.when is None
        assert ob.when_date == date(2026, 10, 23)
        assert ob.mentions == ["m1"]
        assert ob.first_seen_at == self.messages[0].ts
        assert ob.confidence == 0.9

    def test_excerpt_is_substring_of_cited_message(self):
        result = self._run(_make_candidate(), _make_candidate(summary="Pay the deposit", evidenceText=None))
        for ob in result.obligations:
            body = next(m.body for m in self.messages if m.id == ob.evidence.message_id)
            assert ob.evidence.excerpt in body

    def test_malformed_inputs_never_raise(self):
        result = self._run(
            "just a string",
            None,
            {"summary": ""},
            {"summary": ["not", "text"]},
            _make_candidate(confidence="abc", importance=[1], urgency=5),
        )
        assert _reasons(result) == ["malformed_candidate", "malformed_candidate", "empty_summary", "empty_summary"]
        [ob] = result.obligations
        assert ob.confidence == 0.5
        assert ob.importance == 5
        assert ob.urgency == Urgency.LOW

    def test_non_list_candidates(self):
        result = self.sanitizer.sanitize("c1", {"summary": "x"}, self.messages, now=NOW)
        assert result.obligations == []
        assert result.dropped == []

    def test_unknown_message_without_overlap_is_dropped(self):
        result = self._run(_make_candidate(summary="Renew passport", evidenceMessageId="ghost"))
        assert _reasons(result) == ["missing_evidence_message"]

    def test_fabricated_excerpt_is_dropped(self):
        result = self._run(_make_candidate(evidenceText="wire me 5000 dollars"))
        assert _reasons(result) == ["evidence_text_not_in_message"]

    def test_unknown_message_is_inferred_by_overlap(self):
        result = self._run(_make_candidate(evidenceMessageId="ghost", evidenceText=None))
        [ob] = result.obligations
        assert ob.evidence.message_id == "m1"
        assert ob.evidence.inferred is True
        assert ob.evidence.excerpt == self.messages[0].body
        assert ob.confidence == 0.75

    def test_small_talk_and_thin_evidence(self):
        result = self._run(
            _make_candidate(summary="thanks", evidenceMessageId="m3", evidenceText=None, type=None),
            _make_candidate(summary="Confirm booking", evidenceMessageId="m4", evidenceText=None),
        )
        assert _reasons(result) == ["small_talk", "thin_evidence"]

    def test_info_needs_a_worthy_topic(self):
        result = self._run(
            _make_candidate(summary="Sam likes jazz", type="info", evidenceMessageId="m5", evidenceText="jazz place"),
            _make_candidate(summary="Save Sam's flight number", type="info", evidenceMessageId="m5",
                            evidenceText="jazz place"),
        )
        assert _reasons(result) == ["info_not_worthy"]
        assert result.obligations[0].kind == ObligationKind.INFO_TO_SAVE

    def test_dated_event_requires_explicit_time(self):
        timed = _make_candidate(summary="Dinner with Sam", type="event", evidenceMessageId="m5",
                                evidenceText="Dinner Saturday", when="Saturday 7pm", whenDate=None)
        dated = _make_candidate(summary="Invoice due", type="event", whenDate="Friday")
        result = self._run(timed, dated)
        kinds = {ob.summary: ob for ob in result.obligations}
        assert kinds["Dinner with Sam"].kind == ObligationKind.DATED_EVENT
        assert kinds["Dinner with Sam"].when == datetime(2026, 10, 24, 19, 0, tzinfo=timezone.utc)
        assert kinds["Invoice due"].kind == ObligationKind.TODO
        assert kinds["Invoice due"].when is None

    def test_social_plans_without_time_are_capped(self):
        untimed = _make_candidate(summary="Dinner with Sam", importance=9, evidenceMessageId="m5",
                                  evidenceText="Dinner Saturday", whenDate=None)
        result = self._run(untimed)
        assert result.obligations[0].importance == 7

        timed = dict(untimed, when="Saturday 7pm")
        result = self._run(timed)
        assert result.obligations[0].importance == 9

    def test_duplicates_merge_within_batch(self):
        result = self._run(
            _make_candidate(),
            _make_candidate(summary="send Sam the invoice", evidenceMessageId="m2", evidenceText="send it"),
        )
        [ob] = result.obligations
        assert ob.times_mentioned == 2
        assert ob.mentions == ["m1", "m2"]

    def test_capacity(self):
        result = self._run(
            _make_candidate(),
            _make_candidate(summary="Pay the deposit"),
            _make_candidate(summary="send Sam the invoice", evidenceMessageId="m2", evidenceText="send it"),
            cap=1,
        )
        assert len(result.obligations) == 1
        assert result.obligations[0].times_mentioned == 2
        assert _reasons(result) == ["over_capacity"]


class TestRelaxedEvidence:
    def setup_method(self):
        self.messages = _make_messages()
        self.sanitizer = EvidenceSanitizer(ExtractionConfig(strict_evidence=False))

    def test_mismatched_excerpt_falls_back_to_body(self):
        result = self.sanitizer.sanitize(
            "c1", [_make_candidate(evidenceText="not in there")], self.messages, now=NOW
        )
        [ob] = result.obligations
        assert ob.evidence.excerpt == self.messages[0].body
        assert ob.evidence.inferred is True
        assert ob.confidence == 0.75

    def test_no_evidence_at_all(self):
        result = self.sanitizer.sanitize(
            "c1",
            [_make_candidate(summary="Renew passport", evidenceMessageId="ghost", confidence=0.6)],
            self.messages,
            now=NOW,
        )
        [ob] = result.obligations
        assert ob.evidence.message_id is None
        assert ob.evidence.inferred is True
        assert ob.first_seen_at == NOW

    def test_low_confidence_without_evidence_is_dropped(self):
        result = self.sanitizer.sanitize(
            "c1",
            [_make_candidate(summary="Renew passport", evidenceMessageId="ghost", confidence=0.2)],
            self.messages,
            now=NOW,
        )
        assert _reasons(result) == ["low_confidence_or_empty"]


class TestHeuristics:
    def test_question_from_them_needs_reply(self):
        message = make_message("m1", "Are you coming on Friday?")
        candidate = UntrustedCandidate.from_raw({"summary": "Answer Sam about Friday"})
        assert classify_kind(candidate, "Answer Sam about Friday", NO_ANCHOR, message) == ObligationKind.REPLY_NEEDED

    def test_action_verb_is_todo(self):
        candidate = UntrustedCandidate.from_raw({"summary": "Book the table"})
        assert classify_kind(candidate, "Book the table", NO_ANCHOR, None) == ObligationKind.TODO

    def test_infer_prefers_other_party_for_replies(self):
        messages = [
            make_message("m1", "dinner plans for friday", minutes_ago=5, from_me=True),
            make_message("m2", "what about dinner plans?", minutes_ago=10),
        ]
        assert infer_evidence("dinner plans", ObligationKind.REPLY_NEEDED, messages).id == "m2"
        assert infer_evidence("dinner plans", ObligationKind.TODO, messages).id == "m1"
        assert infer_evidence("zzz", ObligationKind.TODO, messages) is None

    def test_blocked_and_small_talk(self):
        assert detect_blocked("Will send the deck once they confirm")
        assert detect_blocked("waiting for confirmation from the venue")
        assert not detect_blocked("Send the deck")
        assert is_small_talk("Good morning!")
        assert not is_small_talk("Good morning, can you call the bank?")
