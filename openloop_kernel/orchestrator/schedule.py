"""Wall-clock schedule for once-per-local-day work."""

from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from croniter import croniter


def local_date(now: datetime, tz: str) -> str:
    """ISO calendar date of `now` in the given timezone."""
    return now.astimezone(ZoneInfo(tz)).date().isoformat()


def _fire_on(day: date, hour: int, minute: int, zone: ZoneInfo) -> datetime:
    # Cron runs on naive wall-clock time; the zone is attached afterwards
    start = datetime(day.year, day.month, day.day) - timedelta(seconds=1)
    fire = croniter(f"{minute} {hour} * * *", start).get_next(datetime)
    return fire.replace(tzinfo=zone)


def daily_due_at(
    now: datetime,
    tz: str,
    hour: int,
    minute: int,
    last_run_date: Optional[str],
) -> datetime:
    """
    When the daily job is (or was) due.

    Today's fire time unless it already ran today, in which case tomorrow's.
    A returned time at or before `now` means the job is due.
    """
    zone = ZoneInfo(tz)
    today = now.astimezone(zone).date()
    if last_run_date == today.isoformat():
        return _fire_on(today + timedelta(days=1), hour, minute, zone)
    return _fire_on(today, hour, minute, zone)
