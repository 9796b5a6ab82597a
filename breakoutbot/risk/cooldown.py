"""Re-entry cooldown — pure functions over the last-close timestamp."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional


@dataclass(frozen=True)
class CooldownTimer:
    """When the most recent position closed (``None`` if never)."""

    last_close_at: Optional[datetime] = None


def extend_cooldown(timer: CooldownTimer, closed_at: datetime) -> CooldownTimer:
    """Record a closure.  The timestamp only ever moves forward."""
    if timer.last_close_at is not None and timer.last_close_at >= closed_at:
        return timer
    return CooldownTimer(last_close_at=closed_at)


def cooldown_remaining(timer: CooldownTimer, now: datetime, hours: float) -> timedelta:
    """Time left before a new entry is allowed (zero when clear).

    A non-positive *hours* disables the cooldown.
    """
    if hours <= 0 or timer.last_close_at is None:
        return timedelta(0)
    remaining = timer.last_close_at + timedelta(hours=hours) - now
    return max(remaining, timedelta(0))


def is_cooling_down(timer: CooldownTimer, now: datetime, hours: float) -> bool:
    return cooldown_remaining(timer, now, hours) > timedelta(0)
