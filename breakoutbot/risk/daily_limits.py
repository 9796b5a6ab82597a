"""Daily loss guard — in-memory, no I/O.

Accumulates realized P&L per UTC calendar day.  Once the day's losses
reach the configured limit every entry path is refused until the date
rolls over.
"""

from datetime import date, datetime, timezone
from typing import Optional


class DailyLossGuard:
    """Tracks realized P&L for the current UTC day.

    Args:
        max_daily_loss: Loss (account currency, positive number) that halts
            new entries.  Zero or less disables the guard.
    """

    def __init__(self, max_daily_loss: float) -> None:
        self._max_daily_loss = max_daily_loss
        self._day: Optional[date] = None
        self._realized: float = 0.0
        self._trades: int = 0

    def _roll(self, now: datetime) -> None:
        today = now.astimezone(timezone.utc).date()
        if today != self._day:
            self._day = today
            self._realized = 0.0
            self._trades = 0

    # ── Mutation ─────────────────────────────────────────────────────────

    def record(self, pnl: float, now: Optional[datetime] = None) -> None:
        """Add a closed trade's realized P&L to today's total."""
        self._roll(now or datetime.now(timezone.utc))
        self._realized += pnl
        self._trades += 1

    def restore(self, realized: float, trades: int, now: Optional[datetime] = None) -> None:
        """Seed today's totals, e.g. from the trade journal after a restart."""
        self._roll(now or datetime.now(timezone.utc))
        self._realized = realized
        self._trades = trades

    # ── Queries ──────────────────────────────────────────────────────────

    def realized_today(self, now: Optional[datetime] = None) -> float:
        self._roll(now or datetime.now(timezone.utc))
        return self._realized

    def trades_today(self, now: Optional[datetime] = None) -> int:
        self._roll(now or datetime.now(timezone.utc))
        return self._trades

    def limit_reached(self, now: Optional[datetime] = None) -> bool:
        """``True`` when today's realized loss has hit the limit."""
        if self._max_daily_loss <= 0:
            return False
        return self.realized_today(now) <= -self._max_daily_loss
