"""
Temporal anchors for obligations.

A `when` is only ever an instant when the text carries an explicit time of
day. Bare dates ("Friday", "2026-10-23") become a when_date with no
instant, and a parse that lands on midnight without saying so is treated
the same way.
"""

import re
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any, NamedTuple, Optional
from zoneinfo import ZoneInfo

from dateutil import parser as date_parser

from openloop_kernel.timeutil import utcnow

_RELATIVE_DAYS = {"today": 0, "tonight": 0, "tomorrow": 1}
_RELATIVE = re.compile(r"\b(today|tonight|tomorrow)\b", re.IGNORECASE)
_EXPLICIT_MIDNIGHT = re.compile(r"\bmidnight\b", re.IGNORECASE)
_NOON = re.compile(r"\bnoon\b", re.IGNORECASE)


class TemporalAnchor(NamedTuple):
    when: Optional[datetime]     # UTC instant, explicit time only
    when_date: Optional[date]    # local calendar date
    has_time: bool


NO_ANCHOR = TemporalAnchor(None, None, False)


def _zone(tz: Any) -> tzinfo:
    if isinstance(tz, tzinfo):
        return tz
    if not tz or str(tz).upper() == "UTC":
        return timezone.utc
    return ZoneInfo(str(tz))


def _parse_local(text: str, zone: tzinfo, now: datetime) -> Optional[datetime]:
    """Parse free text relative to `now` in `zone`. Returns an aware local datetime or None."""
    local_now = now.astimezone(zone)
    base_day = local_now.date()
    match = _RELATIVE.search(text)
    if match:
        base_day = base_day + timedelta(days=_RELATIVE_DAYS[match.group(1).lower()])
        text = _RELATIVE.sub(" ", text)
    text = _EXPLICIT_MIDNIGHT.sub(" 00:00 ", _NOON.sub(" 12:00 ", text)).strip()
    default = datetime.combine(base_day, time(0, 0))
    if not text:
        return default.replace(tzinfo=zone) if match else None
    try:
        parsed = date_parser.parse(text, default=default, fuzzy=True)
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=zone)
    return parsed.astimezone(zone)


def normalize_when(
    when: Any,
    when_date: Any = None,
    *,
    tz: Any = "UTC",
    now: Optional[datetime] = None,
) -> TemporalAnchor:
    """
    Normalize a raw (when, when_date) pair from the classifier.

    Strings only; anything else counts as absent. Unparseable input
    yields NO_ANCHOR rather than raising.
    """
    zone = _zone(tz)
    now = now or utcnow()
    when_text = when.strip() if isinstance(when, str) else ""
    date_text = when_date.strip() if isinstance(when_date, str) else ""

    if when_text:
        parsed = _parse_local(when_text, zone, now)
        if parsed is not None:
            explicit_midnight = bool(_EXPLICIT_MIDNIGHT.search(when_text))
            if parsed.time() != time(0, 0) or explicit_midnight:
                return TemporalAnchor(parsed.astimezone(timezone.utc), parsed.date(), True)

    for text in (date_text, when_text):
        if not text:
            continue
        parsed = _parse_local(text, zone, now)
        if parsed is not None:
            return TemporalAnchor(None, parsed.date(), False)
    return NO_ANCHOR


def has_time_token(text: Any) -> bool:
    """Cheap check for an explicit time of day in free text."""
    if not isinstance(text, str):
        return False
    return bool(re.search(r"\b(\d{1,2}:\d{2}|\d{1,2}\s?(am|pm)|noon|midnight)\b", text, re.IGNORECASE))
