"""Tests for the position lifecycle manager.

Order submission and fallbacks, fill re-anchoring, staged take-profit,
trailing stop, closure detection and the shared entry gates.  Uses a
duck-typed broker and notifier so no network calls are made.
"""

from datetime import datetime, timedelta, timezone

import pytest

from breakoutbot.broker.models import OrderResult, PartialClose, PriceQuote, Trade, TradeDetail
from breakoutbot.config import Config
from breakoutbot.lifecycle import PositionManager, is_retriable_rejection
from breakoutbot.repos.db import init_db
from breakoutbot.repos.state_repo import StateStore
from breakoutbot.repos.trade_repo import TradeRepo
from breakoutbot.risk.daily_limits import DailyLossGuard
from breakoutbot.strategy.models import (
    LONG,
    SHORT,
    SOURCE_BREAKOUT,
    SOURCE_CONTINUATION,
    PendingEntry,
    Position,
    Signal,
    StrategyState,
)

# Friday 12:00 London (winter, UTC+0)
T0 = datetime(2025, 1, 10, 12, 0, tzinfo=timezone.utc)


# ── Helpers ──────────────────────────────────────────────────────────────


def _make_config(**overrides) -> Config:
    defaults = dict(
        oanda_account_id="101-001-XXXXX-001",
        oanda_api_token="test_token",
        trade_pair="XAU_USD",
        log_level="WARNING",
    )
    defaults.update(overrides)
    return Config(**defaults)


def _long_signal(entry: float = 2015.0, source: str = SOURCE_BREAKOUT) -> Signal:
    return Signal(
        direction=LONG,
        entry_price=entry,
        confidence=65.0,
        source=source,
        reason="LONG breakout above 2010.00",
    )


def _position(
    direction: str = LONG,
    source: str = SOURCE_BREAKOUT,
    entry: float = 2000.0,
    stop: float = 1994.5,
    tp1=2013.75,
    tp2=2013.75,
    units: float = 27,
) -> Position:
    return Position(
        trade_id="6368",
        direction=direction,
        source=source,
        entry_price=entry,
        stop_loss=stop,
        tp1=tp1,
        tp2=tp2,
        units=units,
        best_price=entry,
        current_stop_loss=stop,
        opened_at=T0.isoformat(),
    )


def _trade(units: float = 27, trade_id: str = "6368", instrument: str = "XAU_USD") -> Trade:
    return Trade(
        trade_id=trade_id,
        instrument=instrument,
        units=units,
        price=2000.0,
        unrealized_pnl=0.0,
    )


class MockBroker:
    """Duck-typed OandaClient replacement recording every call."""

    def __init__(self, order_results=None, fill_price: float = 2015.0) -> None:
        self.order_results = list(order_results or [])
        self.fill_price = fill_price
        self.price = 2015.0
        self.placed_orders: list = []
        self.modifications: list = []
        self.partial_closes: list = []
        self.open_trades: list[Trade] = []
        self.details: dict[str, TradeDetail] = {}
        self.partial_result = None
        self.fail_modify = False

    async def place_order(self, order_req):
        self.placed_orders.append(order_req)
        if self.order_results:
            return self.order_results.pop(0)
        return OrderResult(
            success=True,
            trade_id="6368",
            order_id="6367",
            fill_price=self.fill_price,
            units=order_req.units,
        )

    async def modify_trade(self, trade_id, stop_loss=None, take_profit=None):
        if self.fail_modify:
            raise RuntimeError("modify rejected")
        self.modifications.append((trade_id, stop_loss, take_profit))
        return {}

    async def close_trade_partial(self, trade_id, units):
        self.partial_closes.append((trade_id, units))
        if self.partial_result is not None:
            return self.partial_result
        return PartialClose(success=True, units_closed=units, realized_pnl=130.0, price=2008.5)

    async def fetch_price(self, instrument):
        return PriceQuote(instrument=instrument, bid=self.price, ask=self.price)

    async def list_open_trades(self, instrument=None):
        return self.open_trades

    async def get_trade(self, trade_id):
        if trade_id not in self.details:
            raise RuntimeError("trade lookup failed")
        return self.details[trade_id]


class RecordingNotifier:
    """Collects notifications instead of sending them."""

    def __init__(self) -> None:
        self.sent: list[tuple] = []

    def _record(self, name, *args):
        self.sent.append((name, *args))
        return True

    async def trade_opened(self, *args):
        return self._record("trade_opened", *args)

    async def tp1_partial(self, *args):
        return self._record("tp1_partial", *args)

    async def trade_closed(self, *args):
        return self._record("trade_closed", *args)

    async def unprotected_fill(self, *args):
        return self._record("unprotected_fill", *args)

    async def error(self, *args):
        return self._record("error", *args)

    def names(self) -> list[str]:
        return [entry[0] for entry in self.sent]


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "lifecycle.db")
    init_db(path)
    return path


def _manager(db_path, broker, config=None, guard=None):
    config = config or _make_config()
    store = StateStore(db_path)
    store.load()
    notifier = RecordingNotifier()
    manager = PositionManager(
        config, broker, store, notifier,
        trade_repo=TradeRepo(db_path),
        daily_guard=guard or DailyLossGuard(config.max_daily_loss),
    )
    return manager, store, notifier


# ── Order submission ─────────────────────────────────────────────────────


class TestOpenPosition:
    @pytest.mark.asyncio
    async def test_order_fields(self, db_path):
        broker = MockBroker()
        manager, _, _ = _manager(db_path, broker)
        await manager.open_position(_long_signal(), equity=10_000.0, utc_now=T0)

        order = broker.placed_orders[0]
        assert order.instrument == "XAU_USD"
        assert order.units == 27
        assert order.stop_loss_price == pytest.approx(2009.5)
        assert order.take_profit_price == pytest.approx(2028.75)
        assert order.price_bound == pytest.approx(2017.0)

    @pytest.mark.asyncio
    async def test_short_units_are_negative(self, db_path):
        broker = MockBroker(fill_price=2000.0)
        manager, _, _ = _manager(db_path, broker)
        signal = Signal(direction=SHORT, entry_price=2000.0, confidence=65.0, source=SOURCE_BREAKOUT)
        position = await manager.open_position(signal, equity=10_000.0, utc_now=T0)

        assert broker.placed_orders[0].units == -27
        assert broker.placed_orders[0].stop_loss_price == pytest.approx(2005.5)
        assert position.direction == SHORT

    @pytest.mark.asyncio
    async def test_fill_reanchors_levels(self, db_path):
        broker = MockBroker(fill_price=2015.8)
        manager, store, notifier = _manager(db_path, broker)
        position = await manager.open_position(_long_signal(), equity=10_000.0, utc_now=T0)

        assert position.entry_price == 2015.8
        assert position.stop_loss == pytest.approx(2010.3)
        assert position.tp1 == pytest.approx(2029.55)
        trade_id, stop, take_profit = broker.modifications[0]
        assert trade_id == "6368"
        assert stop == pytest.approx(2010.3)
        assert take_profit == pytest.approx(2029.55)
        assert store.positions["6368"].current_stop_loss == pytest.approx(2010.3)
        assert notifier.names() == ["trade_opened"]

    @pytest.mark.asyncio
    async def test_exact_fill_needs_no_modification(self, db_path):
        broker = MockBroker(fill_price=2015.0)
        manager, _, _ = _manager(db_path, broker)
        await manager.open_position(_long_signal(), equity=10_000.0, utc_now=T0)
        assert broker.modifications == []

    @pytest.mark.asyncio
    async def test_fill_clears_pending_state_and_journals(self, db_path):
        broker = MockBroker()
        manager, store, _ = _manager(db_path, broker)
        store.save_strategy_state(StrategyState(pending_entry=PendingEntry(
            direction=LONG, breakout_price=2015.0, started_at=T0, best_pullback_price=2014.0,
        )))

        position = await manager.open_position(_long_signal(), equity=10_000.0, utc_now=T0)

        assert store.strategy_state.pending_entry is None
        assert manager.has_position
        journal = TradeRepo(db_path).get_trades()
        assert journal["total"] == 1
        assert journal["trades"][0]["broker_trade_id"] == "6368"
        assert journal["trades"][0]["status"] == "open"
        assert position.journal_id == journal["trades"][0]["id"]

    @pytest.mark.asyncio
    async def test_stop_rejection_retries_with_wider_stop(self, db_path):
        broker = MockBroker(order_results=[
            OrderResult(success=False, reason="STOP_LOSS_ON_FILL_LOSS"),
        ])
        manager, store, _ = _manager(db_path, broker)
        position = await manager.open_position(_long_signal(), equity=10_000.0, utc_now=T0)

        assert len(broker.placed_orders) == 2
        assert broker.placed_orders[1].stop_loss_price == pytest.approx(2008.5)
        assert position.stop_loss == pytest.approx(2008.5)
        assert broker.modifications == []
        assert "6368" in store.positions

    @pytest.mark.asyncio
    async def test_second_rejection_fills_unprotected_then_attaches_stop(self, db_path):
        broker = MockBroker(order_results=[
            OrderResult(success=False, reason="STOP_LOSS_ON_FILL_LOSS"),
            OrderResult(success=False, reason="STOP_LOSS_ON_FILL_GTD_TIMESTAMP_IN_PAST"),
        ])
        manager, _, notifier = _manager(db_path, broker)
        position = await manager.open_position(_long_signal(), equity=10_000.0, utc_now=T0)

        assert len(broker.placed_orders) == 3
        bare = broker.placed_orders[2]
        assert bare.stop_loss_price is None
        assert bare.take_profit_price is None
        assert bare.price_bound == pytest.approx(2017.0)

        _, stop, take_profit = broker.modifications[0]
        assert stop == pytest.approx(2008.5)
        assert take_profit == pytest.approx(2028.75)
        assert position.stop_loss == pytest.approx(2008.5)
        assert notifier.names() == ["unprotected_fill", "trade_opened"]

    @pytest.mark.asyncio
    async def test_unprotected_fill_alerts_when_stop_cannot_be_attached(self, db_path):
        broker = MockBroker(order_results=[
            OrderResult(success=False, reason="STOP_LOSS_ON_FILL_LOSS"),
            OrderResult(success=False, reason="STOP_LOSS_ON_FILL_LOSS"),
        ])
        broker.fail_modify = True
        manager, _, notifier = _manager(db_path, broker)
        position = await manager.open_position(_long_signal(), equity=10_000.0, utc_now=T0)

        assert position is not None
        assert "Could not attach stop" in notifier.sent[0][2]

    @pytest.mark.asyncio
    async def test_terminal_rejection_returns_none(self, db_path):
        broker = MockBroker(order_results=[
            OrderResult(success=False, reason="INSUFFICIENT_MARGIN"),
        ])
        manager, store, notifier = _manager(db_path, broker)
        position = await manager.open_position(_long_signal(), equity=10_000.0, utc_now=T0)

        assert position is None
        assert len(broker.placed_orders) == 1
        assert store.positions == {}
        assert notifier.names() == ["error"]

    @pytest.mark.asyncio
    async def test_fill_without_trade_opens_nothing(self, db_path):
        broker = MockBroker(order_results=[
            OrderResult(success=True, trade_id=None, order_id="6367", fill_price=2015.0, units=27),
        ])
        manager, store, notifier = _manager(db_path, broker)
        position = await manager.open_position(_long_signal(), equity=10_000.0, utc_now=T0)

        assert position is None
        assert store.positions == {}
        assert broker.modifications == []
        assert TradeRepo(db_path).get_trades()["total"] == 0
        assert notifier.names() == ["error"]

    @pytest.mark.asyncio
    async def test_retry_disabled(self, db_path):
        broker = MockBroker(order_results=[
            OrderResult(success=False, reason="STOP_LOSS_ON_FILL_LOSS"),
        ])
        manager, _, _ = _manager(db_path, broker, _make_config(enable_order_retry=False))
        assert await manager.open_position(_long_signal(), equity=10_000.0, utc_now=T0) is None
        assert len(broker.placed_orders) == 1

    @pytest.mark.asyncio
    async def test_sizing_failure_submits_nothing(self, db_path):
        broker = MockBroker()
        manager, _, _ = _manager(db_path, broker)
        assert await manager.open_position(_long_signal(), equity=0.0, utc_now=T0) is None
        assert broker.placed_orders == []

    @pytest.mark.asyncio
    async def test_trailing_only_attaches_no_take_profit(self, db_path):
        broker = MockBroker()
        manager, _, _ = _manager(db_path, broker, _make_config(trailing_only=True))
        position = await manager.open_position(_long_signal(), equity=10_000.0, utc_now=T0)

        assert broker.placed_orders[0].take_profit_price is None
        assert position.tp1 is None
        assert position.tp2 is None

    def test_retriable_rejection_codes(self):
        assert is_retriable_rejection("STOP_LOSS_ON_FILL_LOSS")
        assert is_retriable_rejection("ORDER_CANCEL: STOP_LOSS_ON_FILL_GTD_TIMESTAMP_IN_PAST")
        assert not is_retriable_rejection("INSUFFICIENT_MARGIN")
        assert not is_retriable_rejection("")


# ── Staged take-profit ───────────────────────────────────────────────────


class TestStagedTakeProfit:
    def _config(self, **overrides):
        return _make_config(enable_staged_tp=True, **overrides)

    @pytest.mark.asyncio
    async def test_tp1_closes_fraction_and_moves_to_breakeven(self, db_path):
        broker = MockBroker()
        manager, store, notifier = _manager(db_path, broker, self._config())
        store.save_positions({"6368": _position(tp1=2008.25, tp2=2013.75)})

        await manager.on_tick([_trade(27)], price=2008.5, utc_now=T0)

        assert broker.partial_closes == [("6368", 16)]
        assert broker.modifications[0] == ("6368", 2000.0, 2013.75)
        position = store.positions["6368"]
        assert position.tp1_hit is True
        assert position.units == 11
        assert "tp1_partial" in notifier.names()

    @pytest.mark.asyncio
    async def test_tp1_fires_only_once(self, db_path):
        broker = MockBroker()
        manager, store, _ = _manager(db_path, broker, self._config())
        store.save_positions({"6368": _position(tp1=2008.25, tp2=2013.75)})

        await manager.on_tick([_trade(27)], price=2008.5, utc_now=T0)
        await manager.on_tick([_trade(11)], price=2009.0, utc_now=T0 + timedelta(minutes=1))

        assert len(broker.partial_closes) == 1

    @pytest.mark.asyncio
    async def test_close_size_rounding_to_zero_skips_partial(self, db_path):
        broker = MockBroker()
        manager, store, _ = _manager(db_path, broker, self._config())
        store.save_positions({"6368": _position(tp1=2008.25, tp2=2013.75, units=1)})

        await manager.on_tick([_trade(1)], price=2008.5, utc_now=T0)

        assert broker.partial_closes == []
        assert store.positions["6368"].tp1_hit is True
        assert store.positions["6368"].units == 1

    @pytest.mark.asyncio
    async def test_unfilled_partial_is_retried_next_tick(self, db_path):
        broker = MockBroker()
        broker.partial_result = PartialClose(success=False)
        manager, store, _ = _manager(db_path, broker, self._config())
        store.save_positions({"6368": _position(tp1=2008.25, tp2=2013.75)})

        await manager.on_tick([_trade(27)], price=2008.5, utc_now=T0)
        assert store.positions["6368"].tp1_hit is False

        broker.partial_result = None
        await manager.on_tick([_trade(27)], price=2008.5, utc_now=T0 + timedelta(minutes=1))
        assert store.positions["6368"].tp1_hit is True
        assert len(broker.partial_closes) == 2

    @pytest.mark.asyncio
    async def test_below_tp1_does_nothing(self, db_path):
        broker = MockBroker()
        manager, store, _ = _manager(db_path, broker, self._config())
        store.save_positions({"6368": _position(tp1=2008.25, tp2=2013.75)})

        await manager.on_tick([_trade(27)], price=2001.0, utc_now=T0)

        assert broker.partial_closes == []
        assert broker.modifications == []


# ── Trailing stop ────────────────────────────────────────────────────────


class TestTrailing:
    @pytest.mark.asyncio
    async def test_trail_sequence_updates_broker_and_state(self, db_path):
        broker = MockBroker()
        manager, store, _ = _manager(db_path, broker)
        store.save_positions({"6368": _position(source=SOURCE_CONTINUATION)})

        await manager.on_tick([_trade()], price=2003.0, utc_now=T0)
        await manager.on_tick([_trade()], price=2001.0, utc_now=T0)
        await manager.on_tick([_trade()], price=2006.0, utc_now=T0)

        stops = [stop for _, stop, _ in broker.modifications]
        assert stops == [pytest.approx(2001.5), pytest.approx(2004.5)]
        position = store.positions["6368"]
        assert position.current_stop_loss == pytest.approx(2004.5)
        assert position.best_price == 2006.0

    @pytest.mark.asyncio
    async def test_breakout_positions_wait_for_wider_activation(self, db_path):
        broker = MockBroker()
        manager, store, _ = _manager(db_path, broker)
        store.save_positions({"6368": _position(source=SOURCE_BREAKOUT)})

        await manager.on_tick([_trade()], price=2003.0, utc_now=T0)
        assert broker.modifications == []
        assert store.positions["6368"].best_price == 2003.0

    @pytest.mark.asyncio
    async def test_failed_modify_keeps_previous_stop(self, db_path):
        broker = MockBroker()
        broker.fail_modify = True
        manager, store, _ = _manager(db_path, broker)
        store.save_positions({"6368": _position(source=SOURCE_CONTINUATION)})

        await manager.on_tick([_trade()], price=2003.0, utc_now=T0)
        assert store.positions["6368"].current_stop_loss == 1994.5

    @pytest.mark.asyncio
    async def test_price_fetched_when_not_supplied(self, db_path):
        broker = MockBroker()
        broker.price = 2003.0
        manager, store, _ = _manager(db_path, broker)
        store.save_positions({"6368": _position(source=SOURCE_CONTINUATION)})

        await manager.on_tick([_trade()], utc_now=T0)
        assert store.positions["6368"].current_stop_loss == pytest.approx(2001.5)


# ── Closure, cooldown and gates ──────────────────────────────────────────


class TestClosure:
    def _closed_detail(self) -> TradeDetail:
        return TradeDetail(
            trade_id="6368",
            instrument="XAU_USD",
            state="CLOSED",
            entry_price=2015.0,
            initial_units=27,
            exit_price=2009.5,
            realized_pnl=-148.5,
            close_time=T0.isoformat(),
            close_reason="STOP_LOSS",
        )

    @pytest.mark.asyncio
    async def test_closure_starts_cooldown_and_journals(self, db_path):
        broker = MockBroker()
        manager, store, notifier = _manager(db_path, broker)
        await manager.open_position(_long_signal(), equity=10_000.0, utc_now=T0)
        broker.details["6368"] = self._closed_detail()

        await manager.on_tick([], utc_now=T0 + timedelta(hours=1))

        assert store.positions == {}
        assert store.cooldown.last_close_at == T0 + timedelta(hours=1)
        trade = TradeRepo(db_path).get_trades()["trades"][0]
        assert trade["status"] == "closed"
        assert trade["exit_reason"] == "STOP_LOSS"
        assert trade["pnl"] == -148.5
        assert notifier.names()[-1] == "trade_closed"

    @pytest.mark.asyncio
    async def test_cooldown_blocks_entries_for_configured_hours(self, db_path):
        broker = MockBroker()
        manager, store, _ = _manager(db_path, broker)
        store.save_positions({"6368": _position()})
        broker.details["6368"] = self._closed_detail()

        await manager.detect_closures([], T0)

        assert "cooldown active" in manager.entry_block_reason(T0 + timedelta(hours=1))
        assert manager.entry_block_reason(T0 + timedelta(hours=4)) is None

    @pytest.mark.asyncio
    async def test_missing_close_details_still_close_out(self, db_path):
        broker = MockBroker()
        guard = DailyLossGuard(150.0)
        manager, store, notifier = _manager(db_path, broker, guard=guard)
        store.save_positions({"6368": _position()})

        closed = await manager.detect_closures([], T0)

        assert closed == ["6368"]
        assert store.positions == {}
        assert guard.trades_today(T0) == 0
        assert notifier.sent[-1][-1] == "UNKNOWN"

    @pytest.mark.asyncio
    async def test_untracked_trades_are_left_alone(self, db_path):
        broker = MockBroker()
        manager, store, _ = _manager(db_path, broker)

        await manager.on_tick([_trade(trade_id="999")], price=2020.0, utc_now=T0)

        assert store.positions == {}
        assert broker.modifications == []
        assert broker.partial_closes == []

    @pytest.mark.asyncio
    async def test_reconcile_detects_downtime_closure(self, db_path):
        broker = MockBroker()
        manager, store, _ = _manager(db_path, broker)
        store.save_positions({"6368": _position()})
        broker.details["6368"] = self._closed_detail()

        assert await manager.reconcile(T0) == ["6368"]
        assert not manager.has_position

    @pytest.mark.asyncio
    async def test_reconcile_keeps_live_trades(self, db_path):
        broker = MockBroker()
        broker.open_trades = [_trade()]
        manager, store, _ = _manager(db_path, broker)
        store.save_positions({"6368": _position()})

        assert await manager.reconcile(T0) == []
        assert manager.has_position

    @pytest.mark.asyncio
    async def test_loss_counts_towards_daily_limit(self, db_path):
        broker = MockBroker()
        guard = DailyLossGuard(100.0)
        manager, store, _ = _manager(db_path, broker, _make_config(trade_cooldown_hours=0), guard)
        store.save_positions({"6368": _position()})
        broker.details["6368"] = self._closed_detail()

        await manager.detect_closures([], T0)

        assert "daily loss limit" in manager.entry_block_reason(T0 + timedelta(minutes=5))

    @pytest.mark.asyncio
    async def test_daily_loss_restored_after_restart(self, db_path):
        config = _make_config(trade_cooldown_hours=0, max_daily_loss=100.0)
        broker = MockBroker()
        manager, _, _ = _manager(db_path, broker, config)
        await manager.open_position(_long_signal(), equity=10_000.0, utc_now=T0)
        broker.details["6368"] = self._closed_detail()
        await manager.detect_closures([], T0 + timedelta(hours=1))

        guard = DailyLossGuard(config.max_daily_loss)
        restarted, _, _ = _manager(db_path, MockBroker(), config, guard)
        later = T0 + timedelta(hours=2)
        assert restarted.entry_block_reason(later) is None

        restarted.restore_daily_totals(later)

        assert guard.realized_today(later) == -148.5
        assert guard.trades_today(later) == 1
        assert "daily loss limit" in restarted.entry_block_reason(later)
        assert guard.limit_reached(T0 + timedelta(days=1)) is False


class TestEntryGates:
    def test_clear_inside_trading_hours(self, db_path):
        manager, _, _ = _manager(db_path, MockBroker())
        assert manager.entry_block_reason(T0) is None

    def test_outside_trading_hours(self, db_path):
        manager, _, _ = _manager(db_path, MockBroker())
        reason = manager.entry_block_reason(datetime(2025, 1, 10, 23, 0, tzinfo=timezone.utc))
        assert reason.startswith("outside trading hours")
