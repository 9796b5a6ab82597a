"""Breakout bot — trading engine (orchestration loops).

Three independently re-arming loops share one event loop:

- ``scan``      candle-close breakout detection on the primary timeframe
- ``realtime``  intra-bar breakout detection and continuous pullback wait
- ``monitor``   position lifecycle: staged TP, trailing stop, closures

Each loop has a single-flight guard so a tick never overlaps itself, but
the loops do interleave with each other.  Guards (open position, pending
entry, cooldown) are therefore re-read from the state store at the top of
every tick.  A watchdog exits the process when no tick has succeeded for
too long and leaves the restart to the supervisor.
"""

import asyncio
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

import httpx

from breakoutbot.api.routers import update_bot_status
from breakoutbot.config import Config
from breakoutbot.lifecycle import PositionManager
from breakoutbot.notify.telegram import TelegramNotifier
from breakoutbot.repos.state_repo import StateStore
from breakoutbot.strategy.breakout import evaluate_candle_close
from breakoutbot.strategy.indicators import analyze
from breakoutbot.strategy.models import (
    PIPELINE_CANDLE,
    CandleData,
    EvaluationResult,
    NoSignal,
    Pending,
    Signal,
    StrategyState,
)
from breakoutbot.strategy.pullback import check_pullback
from breakoutbot.strategy.realtime import check_realtime

logger = logging.getLogger("breakoutbot.engine")

CANDLE_COUNT = 60
ERROR_NOTIFY_INTERVAL = timedelta(hours=1)


def _default_exit(code: int) -> None:
    os._exit(code)


class BreakoutEngine:
    """Drives detection, refinement and position management.

    Args:
        config: Application configuration.
        broker: An ``OandaClient`` (or compatible duck-type / mock).
        store: Loaded state store shared by every loop.
        manager: Position lifecycle manager.
        notifier: Fire-and-forget notifier.
        exit_fn: Called with an exit code when the watchdog fires.
            Defaults to ``os._exit``.
    """

    def __init__(
        self,
        config: Config,
        broker,
        store: StateStore,
        manager: PositionManager,
        notifier: TelegramNotifier,
        exit_fn: Optional[Callable[[int], None]] = None,
    ) -> None:
        self._config = config
        self._broker = broker
        self._store = store
        self._manager = manager
        self._notifier = notifier
        self._exit_fn = exit_fn or _default_exit
        self._running = False
        self._busy: set[str] = set()
        self._entering: Optional[str] = None
        self._error_notified_at: dict[str, datetime] = {}
        self._last_activity = datetime.now(timezone.utc)

    @property
    def last_activity(self) -> datetime:
        return self._last_activity

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def initialize(self, utc_now: Optional[datetime] = None) -> None:
        """Reconcile closures that happened while the process was down."""
        if utc_now is None:
            utc_now = datetime.now(timezone.utc)
        update_bot_status(
            running=True,
            pair=self._config.trade_pair,
            environment=self._config.oanda_environment,
            started_at=utc_now.isoformat(),
        )
        try:
            await self._manager.reconcile(utc_now)
            summary = await self._broker.get_account_summary()
            update_bot_status(
                equity=summary.equity,
                balance=summary.balance,
                open_positions=summary.open_position_count,
            )
        except Exception as exc:
            logger.error("Startup reconciliation failed (OANDA unreachable?): %s", exc)
        self._last_activity = datetime.now(timezone.utc)
        self._running = True

    def stop(self) -> None:
        """Signal every loop to stop after its current tick."""
        self._running = False

    async def run(self) -> None:
        """Start all loops and the watchdog; return once stopped."""
        await self.initialize()
        logger.info(
            "Engine started on %s: scan every %dm (%s), realtime every %ds, monitor every %ds",
            self._config.trade_pair,
            self._config.scan_interval_minutes,
            self._config.timeframe,
            self._config.realtime_check_interval_seconds,
            self._config.monitor_interval_seconds,
        )
        await asyncio.gather(
            self._run_loop("scan", self._config.scan_interval_minutes * 60, self.scan_once),
            self._run_loop("realtime", self._config.realtime_check_interval_seconds, self.realtime_once),
            self._run_loop("monitor", self._config.monitor_interval_seconds, self.monitor_once),
            self._watchdog(),
        )
        update_bot_status(running=False)

    # ── Loop plumbing ────────────────────────────────────────────────────

    async def _sleep(self, seconds: float) -> None:
        # Interruptible: checks _running every second
        remaining = seconds
        while self._running and remaining > 0:
            step = min(1.0, remaining)
            await asyncio.sleep(step)
            remaining -= step

    async def _run_loop(
        self,
        name: str,
        interval: float,
        tick: Callable[[], Awaitable[dict]],
    ) -> None:
        while self._running:
            await self.run_tick(name, tick)
            await self._sleep(interval)

    async def run_tick(
        self,
        name: str,
        tick: Callable[[], Awaitable[dict]],
    ) -> Optional[dict]:
        """Run one tick of loop *name* unless it is already running.

        Never raises: failures are logged, reported and returned as an
        ``{"action": "error"}`` result.  Returns ``None`` when skipped by
        the single-flight guard.
        """
        if name in self._busy:
            logger.debug("%s tick still in progress, skipping", name)
            return None
        self._busy.add(name)
        try:
            result = await tick()
        except Exception as exc:
            logger.exception("%s tick failed: %s", name, exc)
            update_bot_status(last_error=f"{name}: {exc}")
            await self._report_error(name, exc)
            return {"action": "error", "reason": str(exc)}
        finally:
            self._busy.discard(name)

        now = datetime.now(timezone.utc)
        self._last_activity = now
        update_bot_status(**{f"last_{name}_at": now.isoformat(), "last_activity_at": now.isoformat()})
        logger.debug("%s tick: %s", name, result)
        return result

    async def _report_error(self, name: str, exc: Exception, utc_now: Optional[datetime] = None) -> None:
        if not isinstance(exc, httpx.HTTPError):
            return
        if utc_now is None:
            utc_now = datetime.now(timezone.utc)
        last = self._error_notified_at.get(name)
        if last is not None and utc_now - last < ERROR_NOTIFY_INTERVAL:
            return
        self._error_notified_at[name] = utc_now
        await self._notifier.error(f"{name} loop: broker API error: {exc}")

    # ── Watchdog ─────────────────────────────────────────────────────────

    async def _watchdog(self) -> None:
        while self._running:
            await self._sleep(self._config.watchdog_check_seconds)
            if self._running:
                await self.check_liveness()

    async def check_liveness(self, utc_now: Optional[datetime] = None) -> bool:
        """Exit the process if no tick has succeeded within the timeout.

        Returns ``True`` while healthy.
        """
        if utc_now is None:
            utc_now = datetime.now(timezone.utc)
        idle = (utc_now - self._last_activity).total_seconds()
        if idle <= self._config.watchdog_timeout_seconds:
            return True

        logger.critical(
            "Watchdog: no successful tick for %.0fs (limit %ds), exiting",
            idle, self._config.watchdog_timeout_seconds,
        )
        try:
            await asyncio.wait_for(
                self._notifier.error(f"Watchdog: no activity for {idle:.0f}s, restarting"),
                timeout=10,
            )
        except asyncio.TimeoutError:
            logger.warning("Watchdog notification timed out")
        self._exit_fn(1)
        return False

    # ── Helpers ──────────────────────────────────────────────────────────

    async def _completed_candles(self, granularity: str) -> list[CandleData]:
        candles = await self._broker.fetch_candles(
            self._config.trade_pair, granularity, count=CANDLE_COUNT,
        )
        return [
            CandleData(
                time=c.time, open=c.open, high=c.high, low=c.low,
                close=c.close, volume=c.volume,
            )
            for c in candles
            if c.complete
        ]

    def _clear_pending(self) -> None:
        state = self._store.strategy_state
        if state.has_pending:
            self._store.save_strategy_state(state.cleared())

    async def _dispatch(
        self,
        loop: str,
        result: EvaluationResult,
        state: StrategyState,
        utc_now: datetime,
    ) -> dict:
        """Persist *state* and act on *result*, re-checking every guard."""
        if self._manager.has_position:
            self._store.save_strategy_state(state.cleared())
            return {"action": "skipped", "reason": "position_open"}

        if self._entering is not None:
            self._store.save_strategy_state(state.cleared())
            if not isinstance(result, NoSignal):
                logger.info(
                    "%s: %s %s dropped, %s entry still in flight",
                    loop, type(result).__name__, result.direction, self._entering,
                )
            return {"action": "skipped", "reason": "entry_in_flight"}

        block = self._manager.entry_block_reason(utc_now)
        if block is not None:
            self._store.save_strategy_state(state.cleared())
            if not isinstance(result, NoSignal):
                logger.info("%s: %s %s blocked, %s", loop, type(result).__name__, result.direction, block)
            return {"action": "skipped", "reason": block}

        self._store.save_strategy_state(state)

        if isinstance(result, NoSignal):
            logger.info("%s: no signal, %s", loop, result.reason)
            return {"action": "no_signal", "reason": result.reason}

        if isinstance(result, Pending):
            logger.info("%s: %s pending, %s", loop, result.direction.upper(), result.reason)
            return {"action": "pending", "direction": result.direction, "reason": result.reason}

        # No await between the guards above and claiming the entry slot
        self._entering = loop
        try:
            return await self._enter(loop, result, utc_now)
        finally:
            self._entering = None

    async def _enter(
self, loop: str, signal: Signal, utc_now: datetime) -> dict:
        logger.info(
            "%s: %s signal @ %.2f (%s, confidence %.0f%%, improvement %.2f): %s",
            loop, signal.direction.upper(), signal.entry_price, signal.source,
            signal.confidence, signal.improvement, signal.reason,
        )
        update_bot_status(last_signal={
            "direction": signal.direction,
            "entry_price": signal.entry_price,
            "source": signal.source,
            "confidence": signal.confidence,
            "reason": signal.reason,
            "at": utc_now.isoformat(),
        })

        summary = await self._broker.get_account_summary()
        position = await self._manager.open_position(signal, summary.equity, utc_now)
        if position is None:
            return {"action": "order_failed", "direction": signal.direction}

        update_bot_status(last_order_time=utc_now.isoformat(), open_positions=1)
        return {
            "action": "order_placed",
            "trade_id": position.trade_id,
            "direction": position.direction,
            "units": position.units,
            "entry_price": position.entry_price,
            "stop_loss": position.stop_loss,
            "source": position.source,
        }

    # ── Ticks ────────────────────────────────────────────────────────────

    async def scan_once(self, utc_now: Optional[datetime] = None) -> dict:
        """Candle-close tick on the primary timeframe.

        Always evaluates so strategy memory rolls forward, even when a
        position is open or an entry gate is closed.
        """
        if utc_now is None:
            utc_now = datetime.now(timezone.utc)

        candles = await self._completed_candles(self._config.timeframe)
        if not candles:
            return {"action": "skipped", "reason": "no_candles"}
        analysis = analyze(candles, self._config)

        lower = None
        if self._config.enable_pullback_entry and not self._manager.has_position:
            lower = await self._completed_candles(self._config.entry_timeframe)

        # State is read after the last await
        result, state = evaluate_candle_close(
            self._store.strategy_state, analysis, candles, self._config, utc_now, lower,
        )
        return await self._dispatch("scan", result, state, utc_now)

    async def realtime_once(self, utc_now: Optional[datetime] = None) -> dict:
        """Intra-bar tick: continuous pullback wait or real-time detection."""
        if utc_now is None:
            utc_now = datetime.now(timezone.utc)

        if self._manager.has_position:
            self._clear_pending()
            return {"action": "skipped", "reason": "position_open"}

        state = self._store.strategy_state
        if state.pending_entry is not None and state.pending_entry.pipeline == PIPELINE_CANDLE:
            return {"action": "skipped", "reason": "candle_pullback_pending"}

        block = self._manager.entry_block_reason(utc_now)
        if block is not None:
            self._clear_pending()
            return {"action": "skipped", "reason": block}

        quote = await self._broker.fetch_price(self._config.trade_pair)
        price = quote.mid
        analysis = None
        if state.pending_entry is None:
            candles = await self._completed_candles(self._config.timeframe)
            if not candles:
                return {"action": "skipped", "reason": "no_candles"}
            analysis = analyze(candles, self._config)

        # Other loops may have moved state on while we awaited the broker
        state = self._store.strategy_state
        if self._manager.has_position:
            self._clear_pending()
            return {"action": "skipped", "reason": "position_open"}

        if state.pending_entry is not None:
            if state.pending_entry.pipeline == PIPELINE_CANDLE:
                return {"action": "skipped", "reason": "candle_pullback_pending"}
            result, state = check_pullback(state, self._config, utc_now, price=price)
        elif analysis is None:
            return {"action": "skipped", "reason": "state_changed"}
        else:
            result, state = check_realtime(
                state, price, analysis.adx, analysis.rsi, self._config, utc_now,
                anchor=analysis.ema,
            )
        return await self._dispatch("realtime", result, state, utc_now)

    async def monitor_once(self, utc_now: Optional[datetime] = None) -> dict:
        """Position tick: staged TP, trailing stop and closure detection."""
        if utc_now is None:
            utc_now = datetime.now(timezone.utc)

        if not self._manager.has_position:
            return {"action": "idle"}

        open_trades = await self._broker.list_open_trades(self._config.trade_pair)
        await self._manager.on_tick(open_trades, utc_now=utc_now)

        still_open = len(self._manager.positions)
        if still_open:
            self._clear_pending()
        update_bot_status(open_positions=still_open)
        return {"action": "monitored", "open_positions": still_open}
