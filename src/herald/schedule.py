"""Next-run computation for recurring task definitions.

All arithmetic happens on local calendar dates in the definition's timezone
and is converted to UTC per target date, so the offset follows DST.
Weekday anchors use 0 = Sunday .. 6 = Saturday.
"""

import calendar
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .events import Frequency

DEFAULT_WEEKDAY = 1  # Monday
DEFAULT_MONTH_DAY = 1


class ScheduleError(ValueError):
    """A schedule definition that cannot be evaluated."""


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_schedule(
    frequency: str,
    hour: int,
    minute: int,
    day: int | None = None,
    tz_name: str = "UTC",
) -> tuple[Frequency, ZoneInfo]:
    """Check a schedule definition, returning the parsed frequency and zone.

    Raises ScheduleError on an unknown frequency or timezone, or an
    out-of-range hour, minute or day anchor.
    """
    try:
        freq = Frequency(frequency)
    except ValueError:
        raise ScheduleError(f"Unknown frequency: {frequency!r}") from None

    if not _is_int(hour) or not 0 <= hour <= 23:
        raise ScheduleError(f"Hour must be 0-23, got {hour!r}")
    if not _is_int(minute) or not 0 <= minute <= 59:
        raise ScheduleError(f"Minute must be 0-59, got {minute!r}")

    if day is not None:
        if not _is_int(day):
            raise ScheduleError(f"Day anchor must be an integer, got {day!r}")
        if freq in (Frequency.WEEKLY, Frequency.BIWEEKLY) and not 0 <= day <= 6:
            raise ScheduleError(f"Weekday must be 0-6 (0 = Sunday), got {day}")
        if freq == Frequency.MONTHLY and not 1 <= day <= 31:
            raise ScheduleError(f"Day of month must be 1-31, got {day}")

    try:
        tz = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError, TypeError):
        raise ScheduleError(f"Unknown timezone: {tz_name!r}") from None

    return freq, tz


def _local_instant(d: date, hour: int, minute: int, tz: ZoneInfo) -> datetime:
    # Wall times inside a spring-forward gap resolve with the pre-transition
    # offset, which lands them just after the gap.
    return datetime.combine(d, time(hour, minute), tzinfo=tz).astimezone(timezone.utc)


def _clamped_date(year: int, month: int, day: int) -> date:
    """The anchor day in (year, month), or the month's last day if it is shorter."""
    return date(year, month, min(day, calendar.monthrange(year, month)[1]))


def _add_month(year: int, month: int) -> tuple[int, int]:
    return (year + 1, 1) if month == 12 else (year, month + 1)


def sunday_weekday(d: date) -> int:
    """Weekday with 0 = Sunday."""
    return d.isoweekday() % 7


def next_run(
    frequency: str,
    hour: int,
    minute: int,
    day: int | None = None,
    tz_name: str = "UTC",
    now: datetime | None = None,
) -> datetime:
    """Next instant (UTC, strictly after ``now``) a definition should fire.

    Monthly anchors past the end of a short month fire on its last day.
    """
    freq, tz = validate_schedule(frequency, hour, minute, day, tz_name)
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    today = now.astimezone(tz).date()

    if freq in (Frequency.ONCE, Frequency.DAILY):
        candidate = _local_instant(today, hour, minute, tz)
        if candidate <= now:
            candidate = _local_instant(today + timedelta(days=1), hour, minute, tz)

    elif freq in (Frequency.WEEKLY, Frequency.BIWEEKLY):
        target = DEFAULT_WEEKDAY if day is None else day
        days_until = (target - sunday_weekday(today)) % 7
        candidate = _local_instant(today + timedelta(days=days_until), hour, minute, tz)
        if candidate <= now:
            step = 14 if freq == Frequency.BIWEEKLY else 7
            candidate = _local_instant(today + timedelta(days=days_until + step), hour, minute, tz)

    else:
        anchor = DEFAULT_MONTH_DAY if day is None else day
        year, month = today.year, today.month
        candidate = _local_instant(_clamped_date(year, month, anchor), hour, minute, tz)
        if candidate <= now:
            year, month = _add_month(year, month)
            candidate = _local_instant(_clamped_date(year, month, anchor), hour, minute, tz)

    return candidate


def following_run(
    frequency: str,
    hour: int,
    minute: int,
    day: int | None,
    tz_name: str,
    previous: datetime | None,
    now: datetime,
) -> datetime:
    """Next firing after the slot at ``previous`` has fired, strictly after ``now``.

    Biweekly definitions step two weeks at a time from the fired slot, even
    when it is processed late. Other frequencies are anchored on the calendar.
    """
    freq, tz = validate_schedule(frequency, hour, minute, day, tz_name)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    if previous is None:
        return next_run(frequency, hour, minute, day, tz_name, now=now)
    if previous.tzinfo is None:
        previous = previous.replace(tzinfo=timezone.utc)

    if freq != Frequency.BIWEEKLY:
        return next_run(frequency, hour, minute, day, tz_name, now=max(now, previous))

    slot_date = previous.astimezone(tz).date() + timedelta(days=14)
    candidate = _local_instant(slot_date, hour, minute, tz)
    while candidate <= now:
        slot_date += timedelta(days=14)
        candidate = _local_instant(slot_date, hour, minute, tz)
    return candidate
