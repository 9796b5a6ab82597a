"""Trade repository — SQLite journal of opened and closed trades."""

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

from breakoutbot.repos.db import get_connection


class TradeRepo:
    """Data access layer for trade journal records.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    # ── Write ────────────────────────────────────────────────────────────

    def insert_trade(
        self,
        broker_trade_id: str,
        pair: str,
        direction: str,
        source: str,
        entry_price: float,
        stop_loss: float,
        take_profit_1: Optional[float],
        take_profit_2: Optional[float],
        units: float,
        confidence: float,
        entry_reason: str,
        opened_at: str,
    ) -> int:
        """Insert a newly opened trade and return its journal ``id``."""
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(
                """
                INSERT INTO trades
                    (broker_trade_id, pair, direction, source, entry_price,
                     stop_loss, take_profit_1, take_profit_2, units,
                     confidence, entry_reason, opened_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    broker_trade_id, pair, direction, source, entry_price,
                    stop_loss, take_profit_1, take_profit_2, units,
                    confidence, entry_reason, opened_at,
                ),
            )
            conn.commit()
            return cur.lastrowid
        finally:
            conn.close()

    def close_trade(
        self,
        broker_trade_id: str,
        exit_price: Optional[float],
        exit_reason: str,
        pnl: float,
        closed_at: Optional[str] = None,
    ) -> None:
        """Mark the open journal row for *broker_trade_id* as closed."""
        closed_at = closed_at or datetime.now(timezone.utc).isoformat()
        conn = get_connection(self._db_path)
        try:
            conn.execute(
                """
                UPDATE trades
                SET exit_price = ?, exit_reason = ?, pnl = ?,
                    status = 'closed', closed_at = ?
                WHERE broker_trade_id = ? AND status = 'open'
                """,
                (exit_price, exit_reason, pnl, closed_at, broker_trade_id),
            )
            conn.commit()
        finally:
            conn.close()

    # ── Read ─────────────────────────────────────────────────────────────

    def get_trades(
        self,
        limit: int = 20,
        status_filter: Optional[str] = None,
    ) -> dict:
        """Return recent trades, newest first.

        Returns:
            ``{"trades": [...], "total": int}``
        """
        conn = get_connection(self._db_path)
        try:
            where_clause = ""
            params: list = []
            if status_filter:
                where_clause = "WHERE status = ?"
                params.append(status_filter)

            rows = conn.execute(
                f"SELECT * FROM trades {where_clause} ORDER BY id DESC LIMIT ?",
                (*params, limit),
            ).fetchall()
            total = conn.execute(
                f"SELECT COUNT(*) FROM trades {where_clause}",
                params,
            ).fetchone()[0]

            return {"trades": [dict(row) for row in rows], "total": total}
        finally:
            conn.close()

    def realized_on(self, day: date) -> tuple[float, int]:
        """Sum the P&L of trades closed on the UTC calendar *day*.

        Returns:
            ``(realized_pnl, closed_count)``
        """
        start = datetime.combine(day, time.min, tzinfo=timezone.utc)
        end = start + timedelta(days=1)
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                """
                SELECT COALESCE(SUM(pnl), 0.0), COUNT(*) FROM trades
                WHERE status = 'closed' AND closed_at >= ? AND closed_at < ?
                """,
                (start.isoformat(), end.isoformat()),
            ).fetchone()
            return float(row[0]), int(row[1])
        finally:
            conn.close()
