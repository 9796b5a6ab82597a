"""Tests for the risk management modules.

Covers position sizing, SL/TP levels and fill re-anchoring, the trailing
stop, re-entry cooldown, trading hours and the daily loss guard.
"""

import random
from datetime import datetime, timedelta, timezone

import pytest

from breakoutbot.config import Config
from breakoutbot.risk.cooldown import (
    CooldownTimer,
    cooldown_remaining,
    extend_cooldown,
    is_cooling_down,
)
from breakoutbot.risk.daily_limits import DailyLossGuard
from breakoutbot.risk.position_sizer import calculate_units, size_position
from breakoutbot.risk.sl_tp import (
    compute_entry_levels,
    needs_stop_adjustment,
    order_take_profit,
    price_bound,
    reanchor_levels,
    stop_distance_pips,
    unprotected_fill_stop,
    widened_stop,
)
from breakoutbot.risk.trailing_stop import TrailingStop, activation_pips, trailing_stop_for
from breakoutbot.strategy.models import (
    LONG,
    SHORT,
    SOURCE_BREAKOUT,
    SOURCE_CONTINUATION,
    SOURCE_REALTIME,
    Position,
)
from breakoutbot.strategy.session_filter import is_in_session, trading_hours_allowed


def _make_config(**overrides) -> Config:
    defaults = dict(
        oanda_account_id="101-001-XXXXX-001",
        oanda_api_token="test_token",
        trade_pair="XAU_USD",
    )
    defaults.update(overrides)
    return Config(**defaults)


# ── Position sizing ──────────────────────────────────────────────────────


class TestPositionSizing:
    def test_position_sizing(self):
        """$10,000 equity, 1.5% risk, 550 pip gold SL → 27.27 units."""
        units = calculate_units(
            equity=10_000.0,
            risk_pct=1.5,
            sl_distance_pips=550.0,
            pip_value=0.01,
        )
        # risk = 150, sl_in_price = 5.50
        assert units == pytest.approx(27.2727, rel=1e-4)

    def test_position_sizing_rejects_zero_equity(self):
        with pytest.raises(ValueError, match="equity"):
            calculate_units(equity=0, risk_pct=1.0, sl_distance_pips=30.0)

    def test_size_position_signed_and_floored(self):
        assert size_position(10_000.0, 1.5, 550.0, 0.01, 1, 50_000, LONG) == 27
        assert size_position(10_000.0, 1.5, 550.0, 0.01, 1, 50_000, SHORT) == -27

    def test_size_position_clamped(self):
        assert size_position(10_000.0, 1.5, 550.0, 0.01, 1, 10, LONG) == 10
        assert size_position(100.0, 0.1, 550.0, 0.01, 5, 50_000, LONG) == 5

    def test_size_position_invalid_returns_zero(self):
        assert size_position(0.0, 1.5, 550.0, 0.01, 1, 50_000, LONG) == 0
        assert size_position(10_000.0, 1.5, 0.0, 0.01, 1, 50_000, LONG) == 0


# ── SL / TP ──────────────────────────────────────────────────────────────


class TestEntryLevels:
    def test_breakout_long_single_target(self):
        levels = compute_entry_levels(LONG, 2000.0, _make_config(), SOURCE_BREAKOUT)
        assert levels.stop_loss == pytest.approx(1994.5)
        assert levels.tp1 == pytest.approx(2013.75)
        assert levels.tp2 == levels.tp1
        assert levels.risk_distance == pytest.approx(5.5)

    def test_continuation_uses_narrower_stop(self):
        cfg = _make_config()
        assert stop_distance_pips(SOURCE_CONTINUATION, cfg) == 350.0
        assert stop_distance_pips(SOURCE_REALTIME, cfg) == 550.0
        levels = compute_entry_levels(SHORT, 2000.0, cfg, SOURCE_CONTINUATION)
        assert levels.stop_loss == pytest.approx(2003.5)
        assert levels.tp1 == pytest.approx(1991.25)

    def test_staged_targets(self):
        cfg = _make_config(enable_staged_tp=True)
        levels = compute_entry_levels(LONG, 2000.0, cfg)
        assert levels.tp1 == pytest.approx(2008.25)
        assert levels.tp2 == pytest.approx(2013.75)
        assert order_take_profit(levels, cfg) is None

    def test_order_take_profit_modes(self):
        levels = compute_entry_levels(LONG, 2000.0, _make_config())
        assert order_take_profit(levels, _make_config()) == pytest.approx(2013.75)
        assert order_take_profit(levels, _make_config(trailing_only=True)) is None

    def test_price_bound_is_adverse(self):
        cfg = _make_config()
        assert price_bound(LONG, 2000.0, cfg) == pytest.approx(2002.0)
        assert price_bound(SHORT, 2000.0, cfg) == pytest.approx(1998.0)

    def test_retry_stops(self):
        cfg = _make_config()
        assert widened_stop(LONG, 1994.5, cfg) == pytest.approx(1993.5)
        assert widened_stop(SHORT, 2005.5, cfg) == pytest.approx(2006.5)
        assert unprotected_fill_stop(LONG, 2001.0, cfg) == pytest.approx(1994.5)
        assert unprotected_fill_stop(SHORT, 2001.0, cfg) == pytest.approx(2007.5)


class TestReanchor:
    def test_levels_follow_fill(self):
        levels = compute_entry_levels(LONG, 2000.0, _make_config())
        anchored = reanchor_levels(levels, LONG, 2000.8, levels.stop_loss)
        assert anchored.entry_price == 2000.8
        assert anchored.stop_loss == pytest.approx(1995.3)
        assert anchored.tp1 == pytest.approx(2014.55)
        assert needs_stop_adjustment(levels.stop_loss, anchored.stop_loss)

    def test_widened_stop_distance_survives(self):
        cfg = _make_config()
        levels = compute_entry_levels(LONG, 2000.0, cfg)
        submitted = widened_stop(LONG, levels.stop_loss, cfg)
        anchored = reanchor_levels(levels, LONG, 2000.0, submitted)
        assert anchored.stop_loss == pytest.approx(submitted)

    def test_sub_cent_difference_ignored(self):
        assert not needs_stop_adjustment(1994.50, 1994.505)
        assert needs_stop_adjustment(1994.50, 1994.53)


# ── Trailing stop ────────────────────────────────────────────────────────


class TestTrailingStop:
    def test_activation_and_trail_sequence(self):
        """Entry 2000 LONG, activation $2.00, trail $1.50."""
        ts = TrailingStop(
            direction=LONG,
            entry_price=2000.0,
            current_sl=1994.5,
            trail_distance=1.5,
            activation_distance=2.0,
        )
        assert ts.update(2003.0) == pytest.approx(2001.5)
        assert ts.update(2001.0) is None
        assert ts.current_sl == pytest.approx(2001.5)
        assert ts.update(2006.0) == pytest.approx(2004.5)

    def test_not_active_before_activation(self):
        ts = TrailingStop(LONG, 2000.0, 1994.5, 1.5, 2.0)
        assert ts.update(2001.5) is None
        assert not ts.active

    def test_tp1_hit_activates_immediately(self):
        ts = TrailingStop(SHORT, 2000.0, 2005.5, 1.5, 3.5, tp1_hit=True)
        assert ts.update(1999.0) == pytest.approx(2000.5)

    def test_short_sequence(self):
        ts = TrailingStop(SHORT, 2000.0, 2005.5, 1.5, 2.0)
        assert ts.update(1997.0) == pytest.approx(1998.5)
        assert ts.update(1999.0) is None
        assert ts.update(1994.0) == pytest.approx(1995.5)

    @pytest.mark.parametrize("direction", [LONG, SHORT])
    def test_monotonic_for_any_tick_sequence(self, direction):
        rng = random.Random(7)
        start_sl = 1994.5 if direction == LONG else 2005.5
        ts = TrailingStop(direction, 2000.0, start_sl, 1.5, 2.0)
        previous = ts.current_sl
        price = 2000.0
        for _ in range(500):
            price += rng.uniform(-1.0, 1.0)
            ts.update(price)
            if direction == LONG:
                assert ts.current_sl >= previous
            else:
                assert ts.current_sl <= previous
            previous = ts.current_sl

    def test_activation_depends_on_source(self):
        cfg = _make_config()
        assert activation_pips(SOURCE_CONTINUATION, cfg) == 200.0
        assert activation_pips(SOURCE_BREAKOUT, cfg) == 350.0
        assert activation_pips(SOURCE_REALTIME, cfg) == 350.0

    def test_built_from_position(self):
        position = Position(
            trade_id="1", direction=LONG, source=SOURCE_BREAKOUT,
            entry_price=2000.0, stop_loss=1994.5, tp1=2013.75, tp2=2013.75,
            units=27, best_price=2002.0, current_stop_loss=1994.5,
        )
        ts = trailing_stop_for(position, _make_config())
        assert ts.trail_distance == pytest.approx(1.5)
        assert ts.activation_distance == pytest.approx(3.5)
        assert ts.best_price == 2002.0
        assert ts.update(2004.0) == pytest.approx(2002.5)


# ── Cooldown ─────────────────────────────────────────────────────────────


class TestCooldown:
    T = datetime(2025, 1, 10, 12, 0, tzinfo=timezone.utc)

    def test_blocks_then_releases(self):
        timer = extend_cooldown(CooldownTimer(), self.T)
        assert is_cooling_down(timer, self.T + timedelta(minutes=1), 4.0)
        assert cooldown_remaining(timer, self.T + timedelta(hours=1), 4.0) == timedelta(hours=3)
        assert not is_cooling_down(timer, self.T + timedelta(hours=4), 4.0)

    def test_never_moves_backwards(self):
        timer = extend_cooldown(CooldownTimer(), self.T)
        assert extend_cooldown(timer, self.T - timedelta(hours=2)) == timer
        later = extend_cooldown(timer, self.T + timedelta(hours=1))
        assert later.last_close_at == self.T + timedelta(hours=1)

    def test_zero_hours_disables(self):
        timer = extend_cooldown(CooldownTimer(), self.T)
        assert not is_cooling_down(timer, self.T, 0)

    def test_no_closure_no_cooldown(self):
        assert not is_cooling_down(CooldownTimer(), self.T, 4.0)


# ── Trading hours ────────────────────────────────────────────────────────


class TestTradingHours:
    def test_normal_window(self):
        assert is_in_session(8, 8, 22)
        assert is_in_session(21, 8, 22)
        assert not is_in_session(22, 8, 22)
        assert not is_in_session(7, 8, 22)

    def test_wraps_past_midnight(self):
        assert is_in_session(23, 22, 6)
        assert is_in_session(3, 22, 6)
        assert not is_in_session(6, 22, 6)
        assert not is_in_session(12, 22, 6)

    def test_equal_bounds_mean_all_day(self):
        assert all(is_in_session(h, 0, 0) for h in range(24))

    def test_timezone_conversion(self):
        # 07:30 UTC in July is 08:30 in London (BST)
        summer = datetime(2025, 7, 1, 7, 30, tzinfo=timezone.utc)
        assert trading_hours_allowed(summer, 8, 22, "Europe/London")
        winter = datetime(2025, 1, 10, 7, 30, tzinfo=timezone.utc)
        assert not trading_hours_allowed(winter, 8, 22, "Europe/London")


# ── Daily loss guard ─────────────────────────────────────────────────────


class TestDailyLossGuard:
    T = datetime(2025, 1, 10, 12, 0, tzinfo=timezone.utc)

    def test_limit_reached_after_losses(self):
        guard = DailyLossGuard(max_daily_loss=150.0)
        guard.record(-100.0, self.T)
        assert not guard.limit_reached(self.T)
        guard.record(-60.0, self.T + timedelta(hours=1))
        assert guard.limit_reached(self.T + timedelta(hours=1))
        assert guard.trades_today(self.T) == 2

    def test_resets_on_new_utc_day(self):
        guard = DailyLossGuard(max_daily_loss=150.0)
        guard.record(-200.0, self.T)
        assert guard.limit_reached(self.T)
        assert not guard.limit_reached(self.T + timedelta(days=1))
        assert guard.realized_today(self.T + timedelta(days=1)) == 0.0

    def test_wins_offset_losses(self):
        guard = DailyLossGuard(max_daily_loss=150.0)
        guard.record(-120.0, self.T)
        guard.record(50.0, self.T)
        guard.record(-70.0, self.T)
        assert guard.realized_today(self.T) == pytest.approx(-140.0)
        assert not guard.limit_reached(self.T)

    def test_disabled_when_zero(self):
        guard = DailyLossGuard(max_daily_loss=0.0)
        guard.record(-10_000.0, self.T)
        assert not guard.limit_reached(self.T)

    def test_restore_seeds_today_then_accumulates(self):
        guard = DailyLossGuard(max_daily_loss=150.0)
        guard.restore(-120.0, 2, self.T)
        guard.record(-40.0, self.T)
        assert guard.trades_today(self.T) == 3
        assert guard.limit_reached(self.T)
