"""
Quiet hours evaluation (pure, no I/O).
"""
from datetime import datetime, time
from zoneinfo import ZoneInfo

from app.domain.notification import QuietHoursConfig


def parse_wall_clock(value: str | time) -> time:
    """Parse "HH:MM" into a minute-precision time."""
    if isinstance(value, time):
        return value.replace(second=0, microsecond=0)
    hours, sep, minutes = str(value).strip().partition(":")
    if not sep or not hours.isdigit() or not minutes.isdigit():
        raise ValueError(f"Invalid wall-clock time {value!r}, expected HH:MM")
    return time(int(hours), int(minutes))


def is_suppressed(config: QuietHoursConfig, now: datetime) -> bool:
    """
    Return True if `now` falls inside the quiet-hours window.

    Both boundaries are inclusive at minute precision: for 22:00–08:00,
    22:00 and 08:00 are suppressed, 21:59 and 08:01 are not.
    """
    if not config.enabled:
        return False
    if now.tzinfo is None:
        raise ValueError("now must be timezone-aware")

    local = now.astimezone(ZoneInfo(config.timezone))
    current = time(local.hour, local.minute)
    start = parse_wall_clock(config.start_time)
    end = parse_wall_clock(config.end_time)

    if start <= end:
        return start <= current <= end
    # Overnight range (e.g. 22:00–08:00)
    return current >= start or current <= end
