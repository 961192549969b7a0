"""Quiet-hours evaluation for non-urgent notifications."""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

logger = logging.getLogger("herald.quiet_hours")


@dataclass(frozen=True)
class QuietHours:
    enabled: bool
    start: str  # "HH:MM" local
    end: str  # "HH:MM" local, may be earlier than start (crosses midnight)
    timezone: str

    @classmethod
    def from_prefs(cls, prefs) -> "QuietHours":
        return cls(
            enabled=prefs.quiet_hours_enabled,
            start=prefs.quiet_hours_start,
            end=prefs.quiet_hours_end,
            timezone=prefs.quiet_hours_timezone,
        )


def parse_time_of_day(value: str) -> int:
    """Parse "HH:MM" or "HH:MM:SS" into minutes past midnight."""
    parts = value.strip().split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"Invalid time of day: {value!r}")
    hour, minute = int(parts[0]), int(parts[1])
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"Invalid time of day: {value!r}")
    return hour * 60 + minute


def is_quiet_now(quiet: QuietHours, now: datetime | None = None) -> bool:
    """
    Check whether ``now`` falls inside the quiet window.

    Handles both same-day ranges (09:00-17:00) and cross-midnight ranges
    (22:00-06:00). The start minute is inside the window, the end minute is not.
    """
    if not quiet.enabled:
        return False

    try:
        start_minutes = parse_time_of_day(quiet.start)
        end_minutes = parse_time_of_day(quiet.end)
        tz = ZoneInfo(quiet.timezone)
    except Exception as e:
        logger.warning("Ignoring unusable quiet hours %s-%s (%s): %s", quiet.start, quiet.end, quiet.timezone, e)
        return False

    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    local = now.astimezone(tz)
    current_minutes = local.hour * 60 + local.minute

    if start_minutes <= end_minutes:
        return start_minutes <= current_minutes < end_minutes
    return current_minutes >= start_minutes or current_minutes < end_minutes
