"""Position lifecycle manager.

Owns everything that happens to a position once a final entry signal
exists: order submission (with slippage bound and stop-rejection
fallbacks), fill re-anchoring, staged take-profit, trailing stop, closure
detection, cooldown and the entry gates that consult them.
"""

import logging
import math
from dataclasses import replace
from datetime import datetime, timezone
from typing import Optional

from breakoutbot.broker.models import OrderRequest, OrderResult, Trade
from breakoutbot.config import Config
from breakoutbot.notify.telegram import TelegramNotifier
from breakoutbot.repos.state_repo import StateStore
from breakoutbot.repos.trade_repo import TradeRepo
from breakoutbot.risk.cooldown import cooldown_remaining, extend_cooldown, is_cooling_down
from breakoutbot.risk.daily_limits import DailyLossGuard
from breakoutbot.risk.position_sizer import size_position
from breakoutbot.risk.sl_tp import (
    EntryLevels,
    compute_entry_levels,
    needs_stop_adjustment,
    order_take_profit,
    price_bound,
    reanchor_levels,
    unprotected_fill_stop,
    widened_stop,
)
from breakoutbot.risk.trailing_stop import trailing_stop_for
from breakoutbot.strategy.models import LONG, Position, Signal
from breakoutbot.strategy.session_filter import trading_hours_allowed

logger = logging.getLogger("breakoutbot.lifecycle")

RETRIABLE_REJECTIONS = (
    "STOP_LOSS_ON_FILL_LOSS",
    "STOP_LOSS_ON_FILL_GTD_TIMESTAMP_IN_PAST",
)


def is_retriable_rejection(reason: str) -> bool:
    return any(code in (reason or "") for code in RETRIABLE_REJECTIONS)


def _tightens(direction: str, candidate: float, current: float) -> bool:
    return candidate > current if direction == LONG else candidate < current


class PositionManager:
    """Manage the single position allowed on the configured instrument.

    Args:
        config: Application configuration.
        broker: An ``OandaClient`` (or compatible duck-type / mock).
        store: Persistent state store; every mutation is written through it.
        notifier: Fire-and-forget notifier.
        trade_repo: Optional trade journal.
        daily_guard: Optional daily realized-loss guard.
    """

    def __init__(
        self,
        config: Config,
        broker,
        store: StateStore,
        notifier: TelegramNotifier,
        trade_repo: Optional[TradeRepo] = None,
        daily_guard: Optional[DailyLossGuard] = None,
    ) -> None:
        self._config = config
        self._broker = broker
        self._store = store
        self._notifier = notifier
        self._trade_repo = trade_repo
        self._daily_guard = daily_guard

    @property
    def positions(self) -> dict[str, Position]:
        return self._store.positions

    @property
    def has_position(self) -> bool:
        return bool(self._store.positions)

    # ── Entry gates ──────────────────────────────────────────────────────

    def entry_block_reason(self, utc_now: Optional[datetime] = None) -> Optional[str]:
        """Return why a new entry is refused right now, or ``None``.

        Cooldown, trading hours and the daily loss limit are soft
        rejections shared by every entry path.
        """
        if utc_now is None:
            utc_now = datetime.now(timezone.utc)

        timer = self._store.cooldown
        hours = self._config.trade_cooldown_hours
        if is_cooling_down(timer, utc_now, hours):
            remaining = cooldown_remaining(timer, utc_now, hours)
            return f"cooldown active ({remaining.total_seconds() / 60:.0f}m remaining)"

        if not trading_hours_allowed(
            utc_now,
            self._config.trading_start_hour,
            self._config.trading_end_hour,
            self._config.trading_timezone,
        ):
            return (
                f"outside trading hours ({self._config.trading_start_hour:02d}:00-"
                f"{self._config.trading_end_hour:02d}:00 {self._config.trading_timezone})"
            )

        if self._daily_guard is not None and self._daily_guard.limit_reached(utc_now):
            return f"daily loss limit reached ({self._config.max_daily_loss:.2f})"

        return None

    def restore_daily_totals(self, utc_now: Optional[datetime] = None) -> None:
        """Seed the daily loss guard from today's closed trades in the journal."""
        if self._daily_guard is None or self._trade_repo is None:
            return
        if utc_now is None:
            utc_now = datetime.now(timezone.utc)
        realized, trades = self._trade_repo.realized_on(utc_now.astimezone(timezone.utc).date())
        self._daily_guard.restore(realized, trades, utc_now)
        if trades:
            logger.info(
                "Restored today's realized P&L: %+.2f over %d closed trade(s)",
                self._daily_guard.realized_today(utc_now),
                self._daily_guard.trades_today(utc_now),
            )

    # ── Submission ───────────────────────────────────────────────────────

    async def _submit(
        self,
        units: int,
        stop_loss: Optional[float],
        take_profit: Optional[float],
        bound: float,
    ) -> OrderResult:
        return await self._broker.place_order(
            OrderRequest(
                instrument=self._config.trade_pair,
                units=units,
                stop_loss_price=stop_loss,
                take_profit_price=take_profit,
                price_bound=bound,
            )
        )

    async def open_position(
        self,
        signal: Signal,
        equity: float,
        utc_now: Optional[datetime] = None,
    ) -> Optional[Position]:
        """Size, submit and record a position for *signal*.

        Returns the tracked ``Position``, or ``None`` if nothing was opened
        (sizing failed or the venue rejected every attempt).
        """
        if utc_now is None:
            utc_now = datetime.now(timezone.utc)
        cfg = self._config
        direction = signal.direction

        levels = compute_entry_levels(direction, signal.entry_price, cfg, signal.source)
        units = size_position(
            equity,
            cfg.risk_per_trade_pct,
            cfg.price_to_pips(levels.risk_distance),
            cfg.pip_value,
            cfg.min_position_size,
            cfg.max_position_size,
            direction,
        )
        if units == 0:
            logger.error("Position sizing failed (equity=%.2f), entry aborted", equity)
            return None

        take_profit = order_take_profit(levels, cfg)
        bound = price_bound(direction, levels.entry_price, cfg)
        logger.info(
            "Submitting %s %d units @ ~%.2f SL %.2f TP %s bound %.2f",
            direction.upper(), abs(units), levels.entry_price, levels.stop_loss,
            f"{take_profit:.2f}" if take_profit is not None else "none", bound,
        )

        submitted_stop = levels.stop_loss
        unprotected = False
        result = await self._submit(units, submitted_stop, take_profit, bound)

        if not result.success and cfg.enable_order_retry and is_retriable_rejection(result.reason):
            submitted_stop = widened_stop(direction, levels.stop_loss, cfg)
            logger.warning(
                "Order rejected (%s), retrying with SL widened %.2f -> %.2f",
                result.reason, levels.stop_loss, submitted_stop,
            )
            result = await self._submit(units, submitted_stop, take_profit, bound)
            if not result.success:
                logger.warning(
                    "Retry with wider SL rejected (%s), submitting without protective orders",
                    result.reason,
                )
                result = await self._submit(units, None, None, bound)
                unprotected = result.success

        if not result.success:
            logger.error("Order failed: %s", result.reason)
            await self._notifier.error(f"Order failed for {direction.upper()} entry: {result.reason}")
            return None

        if not result.trade_id:
            # Filled without opening a trade, e.g. it reduced an opposite one.
            logger.warning("Order %s filled but opened no trade, nothing to track", result.order_id)
            await self._notifier.error(
                f"{direction.upper()} order filled without opening a trade; check the account"
            )
            return None

        fill = result.fill_price if result.fill_price is not None else levels.entry_price
        if unprotected:
            anchored = replace(
                reanchor_levels(levels, direction, fill, levels.stop_loss),
                stop_loss=unprotected_fill_stop(direction, fill, cfg),
            )
            await self._attach_after_unprotected_fill(result.trade_id, anchored)
        else:
            anchored = reanchor_levels(levels, direction, fill, submitted_stop)
            if needs_stop_adjustment(submitted_stop, anchored.stop_loss):
                logger.info(
                    "Re-anchoring SL %.2f -> %.2f to fill price %.2f",
                    submitted_stop, anchored.stop_loss, fill,
                )
                try:
                    await self._broker.modify_trade(
                        result.trade_id,
                        stop_loss=anchored.stop_loss,
                        take_profit=order_take_profit(anchored, cfg),
                    )
                except Exception as exc:
                    logger.warning("Failed to re-anchor SL (%s), keeping submitted levels", exc)
                    anchored = replace(
                        levels, entry_price=fill, stop_loss=submitted_stop,
                    )

        return await self.on_order_filled(signal, result, anchored, units, utc_now)

    async def _attach_after_unprotected_fill(self, trade_id: str, levels: EntryLevels) -> None:
        try:
            await self._broker.modify_trade(
                trade_id,
                stop_loss=levels.stop_loss,
                take_profit=order_take_profit(levels, self._config),
            )
        except Exception as exc:
            logger.error("Failed to attach SL after unprotected fill: %s", exc)
            await self._notifier.unprotected_fill(
                trade_id, f"Could not attach stop {levels.stop_loss:.2f}: {exc}",
            )
            return
        logger.info("SL attached at %.2f after unprotected fill", levels.stop_loss)
        await self._notifier.unprotected_fill(
            trade_id, f"Filled without SL; stop attached at {levels.stop_loss:.2f}",
        )

    async def on_order_filled(
        self,
        signal: Signal,
        result: OrderResult,
        levels: EntryLevels,
        units: float,
        utc_now: Optional[datetime] = None,
    ) -> Position:
        """Start tracking a filled order.

        Clears any pending signal state (a position and a pending entry
        never coexist), persists, journals and notifies.
        """
        if utc_now is None:
            utc_now = datetime.now(timezone.utc)
        cfg = self._config
        tracked_tp1 = None if cfg.trailing_only else levels.tp1
        tracked_tp2 = None if cfg.trailing_only else levels.tp2
        filled_units = result.units or units

        position = Position(
            trade_id=result.trade_id,
            direction=signal.direction,
            source=signal.source,
            entry_price=levels.entry_price,
            stop_loss=levels.stop_loss,
            tp1=tracked_tp1,
            tp2=tracked_tp2,
            units=filled_units,
            best_price=levels.entry_price,
            current_stop_loss=levels.stop_loss,
            opened_at=utc_now.isoformat(),
        )
        if self._trade_repo is not None:
            journal_id = self._trade_repo.insert_trade(
                broker_trade_id=result.trade_id,
                pair=cfg.trade_pair,
                direction=signal.direction,
                source=signal.source,
                entry_price=levels.entry_price,
                stop_loss=levels.stop_loss,
                take_profit_1=tracked_tp1,
                take_profit_2=tracked_tp2,
                units=abs(filled_units),
                confidence=signal.confidence,
                entry_reason=signal.reason,
                opened_at=position.opened_at,
            )
            position = replace(position, journal_id=journal_id)

        positions = self._store.positions
        positions[position.trade_id] = position
        self._store.save_positions(positions)
        self._store.save_strategy_state(self._store.strategy_state.cleared())

        logger.info(
            "Trade %s opened: %s %g units @ %.2f SL %.2f",
            position.trade_id, position.direction.upper(), abs(filled_units),
            position.entry_price, position.stop_loss,
        )
        await self._notifier.trade_opened(
            position.direction,
            position.entry_price,
            filled_units,
            position.stop_loss,
            order_take_profit(levels, cfg) if not cfg.enable_staged_tp else tracked_tp1,
            position.source,
            signal.confidence,
            signal.reason,
        )
        return position

    # ── Monitoring ───────────────────────────────────────────────────────

    async def on_tick(
        self,
        open_trades: list[Trade],
        price: Optional[float] = None,
        utc_now: Optional[datetime] = None,
    ) -> None:
        """Manage every tracked trade still open, then detect closures.

        Args:
            open_trades: Broker's open trades for the instrument.
            price: Current mid price; fetched when omitted and needed.
            utc_now: Tick time.
        """
        if utc_now is None:
            utc_now = datetime.now(timezone.utc)
        positions = self._store.positions

        live = [t for t in open_trades if t.trade_id in positions]
        for trade in open_trades:
            if trade.trade_id not in positions and trade.instrument == self._config.trade_pair:
                logger.warning("Trade %s is not tracked by this bot, leaving it alone", trade.trade_id)

        if live:
            if price is None:
                price = (await self._broker.fetch_price(self._config.trade_pair)).mid
            for trade in live:
                position = positions[trade.trade_id]
                logger.info(
                    "Monitoring trade %s: %g units @ %.2f, P&L %.2f, price %.2f",
                    trade.trade_id, trade.units, trade.price, trade.unrealized_pnl, price,
                )
                position = await self._staged_take_profit(position, trade, price)
                position = await self._trail(position, price)
                positions[trade.trade_id] = position
            self._store.save_positions(positions)

        await self.detect_closures(open_trades, utc_now)

    async def _staged_take_profit(self, position: Position, trade: Trade, price: float) -> Position:
        cfg = self._config
        if not cfg.enable_staged_tp or position.tp1_hit or position.tp1 is None:
            return position
        reached = price >= position.tp1 if position.direction == LONG else price <= position.tp1
        if not reached:
            return position

        close_units = math.floor(abs(trade.units) * cfg.staged_tp_close_fraction)
        logger.info("TP1 %.2f reached for %s at %.2f", position.tp1, position.trade_id, price)

        banked = 0.0
        remaining = trade.units
        if close_units > 0:
            try:
                partial = await self._broker.close_trade_partial(position.trade_id, close_units)
            except Exception as exc:
                logger.error("Partial close at TP1 failed: %s", exc)
                return position
            if not partial.success:
                logger.warning("Partial close at TP1 was not filled, will retry")
                return position
            banked = partial.realized_pnl
            closed = partial.units_closed or close_units
            remaining = trade.units - closed if trade.units > 0 else trade.units + closed
        else:
            logger.warning("TP1 close size rounds to zero units, skipping partial close")

        new_stop = position.current_stop_loss
        be_stop = None
        if cfg.move_stop_to_breakeven and _tightens(position.direction, position.entry_price, new_stop):
            be_stop = position.entry_price
        try:
            if be_stop is not None or position.tp2 is not None:
                await self._broker.modify_trade(
                    position.trade_id, stop_loss=be_stop, take_profit=position.tp2,
                )
            if be_stop is not None:
                new_stop = be_stop
        except Exception as exc:
            logger.error("Failed to move SL to breakeven / set TP2: %s", exc)

        position = replace(
            position, tp1_hit=True, units=remaining, current_stop_loss=new_stop,
        )
        await self._notifier.tp1_partial(close_units, banked, position.entry_price, position.tp2)
        return position

    async def _trail(self, position: Position, price: float) -> Position:
        trail = trailing_stop_for(position, self._config)
        new_sl = trail.update(price) if self._config.enable_trailing_stop else None
        if trail.best_price == position.best_price and new_sl is None:
            return position
        if not self._config.enable_trailing_stop:
            return replace(position, best_price=trail.best_price)

        position = replace(position, best_price=trail.best_price)
        if new_sl is None:
            return position
        try:
            await self._broker.modify_trade(position.trade_id, stop_loss=new_sl)
        except Exception as exc:
            logger.error("Failed to update trailing stop: %s", exc)
            return position
        locked = new_sl - position.entry_price if position.direction == LONG else position.entry_price - new_sl
        logger.info(
            "Trailing stop %s -> %.2f (best %.2f, locks %.2f)",
            position.trade_id, new_sl, trail.best_price, locked,
        )
        return replace(position, current_stop_loss=new_sl)

    # ── Closure ──────────────────────────────────────────────────────────

    async def detect_closures(
        self,
        open_trades: list[Trade],
        utc_now: Optional[datetime] = None,
    ) -> list[str]:
        """Close out every tracked position absent from *open_trades*.

        Returns the trade ids that were closed.
        """
        if utc_now is None:
            utc_now = datetime.now(timezone.utc)
        open_ids = {t.trade_id for t in open_trades}
        closed_ids = [tid for tid in self._store.positions if tid not in open_ids]
        for trade_id in closed_ids:
            await self._close_out(trade_id, utc_now)
        return closed_ids

    async def reconcile(self, utc_now: Optional[datetime] = None) -> list[str]:
        """Startup sync: detect closures that happened while the bot was down."""
        open_trades = await self._broker.list_open_trades(self._config.trade_pair)
        closed = await self.detect_closures(open_trades, utc_now)
        if closed:
            logger.info("Reconciled %d trade(s) closed during downtime: %s", len(closed), closed)
        return closed

    async def _close_out(self, trade_id: str, utc_now: datetime) -> None:
        position = self._store.positions[trade_id]
        logger.info("Trade %s was closed", trade_id)

        detail = None
        try:
            detail = await self._broker.get_trade(trade_id)
        except Exception as exc:
            logger.warning("Could not fetch close details for trade %s: %s", trade_id, exc)

        pnl = detail.realized_pnl if detail is not None else 0.0
        exit_price = detail.exit_price if detail is not None else None
        reason = (detail.close_reason if detail is not None else "") or "UNKNOWN"

        self._store.save_cooldown(extend_cooldown(self._store.cooldown, utc_now))
        positions = self._store.positions
        positions.pop(trade_id, None)
        self._store.save_positions(positions)

        if self._trade_repo is not None:
            self._trade_repo.close_trade(
                trade_id, exit_price, reason, pnl, closed_at=utc_now.isoformat(),
            )
        if self._daily_guard is not None and detail is not None:
            self._daily_guard.record(pnl, utc_now)

        logger.info(
            "Trade %s closed: P&L %+.2f, reason %s; cooldown %.1fh started",
            trade_id, pnl, reason, self._config.trade_cooldown_hours,
        )
        await self._notifier.trade_closed(
            trade_id, position.entry_price, exit_price, pnl, reason,
        )
