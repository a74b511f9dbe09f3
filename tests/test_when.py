"""Tests for temporal anchor normalization."""

from datetime import date, datetime, timezone

from openloop_kernel.evidence.when import NO_ANCHOR, has_time_token, normalize_when
from tests.fakes import NOW


class TestNormalizeWhen:
    def test_weekday_with_time(self):
        anchor = normalize_when("Saturday 7pm", now=NOW)
        assert anchor.has_time is True
        assert anchor.when == datetime(2026, 10, 24, 19, 0, tzinfo=timezone.utc)
        assert anchor.when_date == date(2026, 10, 24)

    def test_bare_weekday_is_date_only(self):
        anchor = normalize_when("Friday", now=NOW)
        assert anchor.when is None
        assert anchor.has_time is False
        assert anchor.when_date == date(2026, 10, 23)

    def test_iso_date_in_when_date(self):
        anchor = normalize_when(None, "2026-10-23", now=NOW)
        assert anchor == (None, date(2026, 10, 23), False)

    def test_relative_day_with_noon(self):
        anchor = normalize_when("tomorrow at noon", now=NOW)
        assert anchor.when == datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
        assert anchor.has_time is True

    def test_relative_day_alone(self):
        anchor = normalize_when("tonight", now=NOW)
        assert anchor.when is None
        assert anchor.when_date == date(2026, 10, 18)

    def test_explicit_midnight_keeps_time(self):
        anchor = normalize_when("tomorrow at midnight", now=NOW)
        assert anchor.has_time is True
        assert anchor.when == datetime(2026, 10, 19, 0, 0, tzinfo=timezone.utc)

    def test_local_timezone_is_converted_to_utc(self):
        # London is still on BST on 24 October 2026
        anchor = normalize_when("Saturday 7pm", tz="Europe/London", now=NOW)
        assert anchor.when == datetime(2026, 10, 24, 18, 0, tzinfo=timezone.utc)
        assert anchor.when_date == date(2026, 10, 24)

    def test_explicit_time_wins_over_separate_date(self):
        anchor = normalize_when("Saturday 7pm", "2026-10-23", now=NOW)
        assert anchor.has_time is True
        assert anchor.when_date == date(2026, 10, 24)

    def test_unparseable_and_non_string_input(self):
        assert normalize_when("whenever", now=NOW) == NO_ANCHOR
        assert normalize_when(42, ["Friday"], now=NOW) == NO_ANCHOR
        assert normalize_when(None, None, now=NOW) == NO_ANCHOR


class TestHasTimeToken:
    def test_detects_times(self):
        assert has_time_token("see you at 7pm")
        assert has_time_token("19:30 works")
        assert has_time_token("lunch at noon")

    def test_ignores_dates(self):
        assert not has_time_token("Friday")
        assert not has_time_token(None)
