"""Session filter — pure function, checks if a time falls in the trading window."""

from datetime import datetime
from zoneinfo import ZoneInfo


def is_in_session(
    hour: int,
    session_start: int = 8,
    session_end: int = 22,
) -> bool:
    """Return True if *hour* falls within ``[session_start, session_end)``.

    A start later than the end wraps past midnight (e.g. 22 → 6).  Equal
    start and end means the window covers the whole day.

    Args:
        hour: Local hour (0–23) in the session's timezone.
        session_start: Session start hour (inclusive).
        session_end: Session end hour (exclusive).
    """
    if session_start == session_end:
        return True
    if session_start < session_end:
        return session_start <= hour < session_end
    return hour >= session_start or hour < session_end


def trading_hours_allowed(
    utc_now: datetime,
    session_start: int,
    session_end: int,
    timezone_name: str = "Europe/London",
) -> bool:
    """Convert *utc_now* to the session timezone and apply :func:`is_in_session`."""
    local = utc_now.astimezone(ZoneInfo(timezone_name))
    return is_in_session(local.hour, session_start, session_end)
