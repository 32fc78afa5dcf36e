"""
Calendar helpers for trigger day counts and counter reset periods.

Day counts are whole days (floored) between two instants. Reset periods are
computed on the engine's local clock so "midnight" and "week start" follow
the configured timezone rather than UTC.
"""
from datetime import date, datetime, timedelta, timezone

import pytz

DEFAULT_TIMEZONE = "UTC"


def utc_now() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def ensure_aware(ts: datetime) -> datetime:
    """Treat naive timestamps as UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


def whole_days_between(earlier: datetime, later: datetime) -> int:
    """
    Floor of the number of days from earlier to later.

    Negative when earlier is actually in the future.

    Examples:
        >>> a = datetime(2026, 3, 1, 12, tzinfo=timezone.utc)
        >>> whole_days_between(a, a + timedelta(hours=47))
        1
    """
    delta = ensure_aware(later) - ensure_aware(earlier)
    return int(delta.total_seconds() // 86400)


def hours_between(earlier: datetime, later: datetime) -> float:
    return (ensure_aware(later) - ensure_aware(earlier)).total_seconds() / 3600


def get_timezone(timezone_str: str):
    """Resolve a timezone name, falling back to UTC for unknown names."""
    try:
        return pytz.timezone(timezone_str)
    except pytz.UnknownTimeZoneError:
        return pytz.timezone(DEFAULT_TIMEZONE)


def local_time(now: datetime, timezone_str: str) -> datetime:
    return ensure_aware(now).astimezone(get_timezone(timezone_str))


def day_period(now: datetime, timezone_str: str) -> str:
    """Key of the local calendar day containing now, e.g. '2026-03-02'."""
    return local_time(now, timezone_str).date().isoformat()


def week_period(now: datetime, timezone_str: str, week_start_day: int = 0) -> str:
    """
    Key of the local week containing now: the date its week starts.

    Args:
        now: Instant to classify.
        timezone_str: Local timezone name.
        week_start_day: datetime.weekday() of the first day of the week.
    """
    local_day: date = local_time(now, timezone_str).date()
    offset = (local_day.weekday() - week_start_day) % 7
    return (local_day - timedelta(days=offset)).isoformat()
