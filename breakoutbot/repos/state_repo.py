"""State repository — durable snapshots of every stateful entity.

One row per entity in ``state_snapshots``, overwritten wholesale whenever
the entity changes:

- ``strategy_memory``   previous channel, last bar time, last direction
- ``pending_breakout``  real-time tracking record (or null)
- ``pending_entry``     pullback refinement record (or null)
- ``positions``         trade id → tracked position
- ``cooldown``          last closure timestamp

Snapshots are loaded once at startup and cached; writes of an unchanged
payload are skipped.
"""

import dataclasses
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from breakoutbot.repos.db import get_connection
from breakoutbot.risk.cooldown import CooldownTimer
from breakoutbot.strategy.models import (
    Channel,
    PendingBreakout,
    PendingEntry,
    Position,
    StrategyMemory,
    StrategyState,
)

logger = logging.getLogger("breakoutbot.state")

STRATEGY_MEMORY = "strategy_memory"
PENDING_BREAKOUT = "pending_breakout"
PENDING_ENTRY = "pending_entry"
POSITIONS = "positions"
COOLDOWN = "cooldown"


# ── Encoding ─────────────────────────────────────────────────────────────


def _jsonable(value: Any) -> Any:
    if dataclasses.is_dataclass(value):
        return {k: _jsonable(v) for k, v in dataclasses.asdict(value).items()}
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _dumps(value: Any) -> str:
    return json.dumps(_jsonable(value), sort_keys=True)


def _parse_dt(raw: Optional[str]) -> Optional[datetime]:
    if raw is None:
        return None
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _memory_from(data: Optional[dict]) -> StrategyMemory:
    if not data:
        return StrategyMemory()
    channel = data.get("previous_channel")
    return StrategyMemory(
        previous_channel=Channel(**channel) if channel else None,
        last_bar_time=data.get("last_bar_time"),
        last_direction=data.get("last_direction"),
    )


def _pending_breakout_from(data: Optional[dict]) -> Optional[PendingBreakout]:
    if not data:
        return None
    return PendingBreakout(
        direction=data["direction"],
        first_seen_at=_parse_dt(data["first_seen_at"]),
        reference_price=data["reference_price"],
        level=data["level"],
    )


def _pending_entry_from(data: Optional[dict]) -> Optional[PendingEntry]:
    if not data:
        return None
    return PendingEntry(**{**data, "started_at": _parse_dt(data["started_at"])})


def _positions_from(data: Optional[dict]) -> dict[str, Position]:
    if not data:
        return {}
    return {trade_id: Position(**p) for trade_id, p in data.items()}


def _cooldown_from(data: Optional[dict]) -> CooldownTimer:
    if not data:
        return CooldownTimer()
    return CooldownTimer(last_close_at=_parse_dt(data.get("last_close_at")))


class StateStore:
    """In-memory cache of all persisted entities, backed by SQLite.

    Args:
        db_path: Path to the SQLite database file (schema already applied).
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._payloads: dict[str, str] = {}
        self._strategy = StrategyState()
        self._positions: dict[str, Position] = {}
        self._cooldown = CooldownTimer()

    # ── Load ─────────────────────────────────────────────────────────────

    def load(self) -> None:
        """Read every snapshot row into memory.  Call once at startup."""
        conn = get_connection(self._db_path)
        try:
            rows = conn.execute("SELECT name, payload FROM state_snapshots").fetchall()
        finally:
            conn.close()

        self._payloads = {row["name"]: row["payload"] for row in rows}
        decoded = {name: json.loads(p) for name, p in self._payloads.items()}

        self._strategy = StrategyState(
            memory=_memory_from(decoded.get(STRATEGY_MEMORY)),
            pending_breakout=_pending_breakout_from(decoded.get(PENDING_BREAKOUT)),
            pending_entry=_pending_entry_from(decoded.get(PENDING_ENTRY)),
        )
        self._positions = _positions_from(decoded.get(POSITIONS))
        self._cooldown = _cooldown_from(decoded.get(COOLDOWN))

        logger.info(
            "Loaded state: channel=%s, pending_breakout=%s, pending_entry=%s, "
            "positions=%d, last_close=%s",
            self._strategy.memory.previous_channel,
            self._strategy.pending_breakout is not None,
            self._strategy.pending_entry is not None,
            len(self._positions),
            self._cooldown.last_close_at,
        )

    # ── Accessors ────────────────────────────────────────────────────────

    @property
    def strategy_state(self) -> StrategyState:
        return self._strategy

    @property
    def positions(self) -> dict[str, Position]:
        return dict(self._positions)

    @property
    def cooldown(self) -> CooldownTimer:
        return self._cooldown

    # ── Write ────────────────────────────────────────────────────────────

    def _write(self, name: str, value: Any) -> bool:
        payload = _dumps(value)
        if self._payloads.get(name) == payload:
            return False
        saved_at = datetime.now(timezone.utc).isoformat()
        conn = get_connection(self._db_path)
        try:
            conn.execute(
                """
                INSERT INTO state_snapshots (name, payload, saved_at)
                VALUES (?, ?, ?)
                ON CONFLICT(name) DO UPDATE
                SET payload = excluded.payload, saved_at = excluded.saved_at
                """,
                (name, payload, saved_at),
            )
            conn.commit()
        finally:
            conn.close()
        self._payloads[name] = payload
        logger.debug("Saved %s snapshot", name)
        return True

    def save_strategy_state(self, state: StrategyState) -> None:
        """Persist memory and both pending records."""
        self._write(STRATEGY_MEMORY, state.memory)
        self._write(PENDING_BREAKOUT, state.pending_breakout)
        self._write(PENDING_ENTRY, state.pending_entry)
        self._strategy = state

    def save_positions(self, positions: dict[str, Position]) -> None:
        self._write(POSITIONS, positions)
        self._positions = dict(positions)

    def save_cooldown(self, timer: CooldownTimer) -> None:
        self._write(COOLDOWN, timer)
        self._cooldown = timer

    # ── Read-only view ───────────────────────────────────────────────────

    def snapshot(self) -> dict:
        """JSON-friendly view of every entity for the state API."""
        return {
            STRATEGY_MEMORY: _jsonable(self._strategy.memory),
            PENDING_BREAKOUT: _jsonable(self._strategy.pending_breakout),
            PENDING_ENTRY: _jsonable(self._strategy.pending_entry),
            POSITIONS: _jsonable(self._positions),
            COOLDOWN: _jsonable(self._cooldown),
        }
