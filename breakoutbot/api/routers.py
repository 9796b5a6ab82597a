"""Internal API routers — /status, /state, /trades, /positions endpoints.

Read-only. No business logic; delegates to the state store, the trade
journal, the broker and the status dict the engine keeps current.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Query

logger = logging.getLogger("breakoutbot.api")
router = APIRouter()

# ── Shared state (set during app startup) ────────────────────────────────

_DEFAULT_STATUS: dict = {
    "running": False,
    "pair": None,
    "environment": None,
    "started_at": None,
    "equity": None,
    "balance": None,
    "open_positions": 0,
    "last_scan_at": None,
    "last_realtime_at": None,
    "last_monitor_at": None,
    "last_activity_at": None,
    "last_signal": None,
    "last_order_time": None,
    "last_error": None,
}

_bot_status: dict = {**_DEFAULT_STATUS}

_trade_repo = None   # Set via configure_routers()
_state_store = None  # Set via configure_routers()
_broker = None       # Set via configure_routers()


def configure_routers(
    trade_repo,
    state_store,
    broker=None,
    bot_status: Optional[dict] = None,
) -> None:
    """Inject dependencies from the application startup.

    Args:
        trade_repo: A ``TradeRepo`` instance (or duck-type for tests).
        state_store: A loaded ``StateStore``.
        broker: An ``OandaClient`` instance for position queries.
        bot_status: Optional dict replacing the default status fields.
    """
    global _trade_repo, _state_store, _broker, _bot_status  # noqa: PLW0603
    _trade_repo = trade_repo
    _state_store = state_store
    _broker = broker
    _bot_status = {**_DEFAULT_STATUS}
    if bot_status is not None:
        _bot_status.update(bot_status)


def update_bot_status(**fields) -> None:
    """Update individual fields of the status dict."""
    _bot_status.update(fields)


# ── Endpoints ────────────────────────────────────────────────────────────


@router.get("/status")
async def get_status():
    """Return engine status plus uptime."""
    status = dict(_bot_status)
    started = status.get("started_at")
    uptime = 0
    if started:
        uptime = int(
            (datetime.now(timezone.utc) - datetime.fromisoformat(started)).total_seconds()
        )
    status["uptime_seconds"] = uptime
    return status


@router.get("/state")
async def get_state():
    """Return every persisted entity: memory, pending records, positions, cooldown."""
    if _state_store is None:
        return {"error": "State store not configured"}
    return _state_store.snapshot()


@router.get("/trades")
async def get_trades(
    limit: int = Query(default=20, ge=1, le=100),
    status: Optional[str] = Query(default=None),
):
    """Return recent trade journal entries."""
    if _trade_repo is None:
        return {"trades": [], "total": 0}
    return _trade_repo.get_trades(limit=limit, status_filter=status)


@router.get("/positions")
async def get_positions():
    """Return open broker trades, marking those this bot manages."""
    if _broker is None:
        return {"positions": []}
    tracked = _state_store.positions if _state_store is not None else {}
    try:
        trades = await _broker.list_open_trades()
    except Exception as exc:
        logger.warning("Could not list open trades: %s", exc)
        return {"positions": [], "error": str(exc)}

    result = []
    for t in trades:
        position = tracked.get(t.trade_id)
        result.append({
            "trade_id": t.trade_id,
            "instrument": t.instrument,
            "direction": "long" if t.units > 0 else "short",
            "units": abs(t.units),
            "avg_price": t.price,
            "unrealized_pnl": t.unrealized_pnl,
            "stop_loss": t.stop_loss_price,
            "take_profit": t.take_profit_price,
            "open_time": t.open_time,
            "managed": position is not None,
            "source": position.source if position else None,
            "tp1_hit": position.tp1_hit if position else None,
            "best_price": position.best_price if position else None,
        })
    return {"positions": result}
