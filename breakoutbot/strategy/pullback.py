"""Pullback refiner — waits for a retracement after a confirmed breakout.

Two policies share the same shape but keep their own thresholds:

* **bar policy** (candle-close pipeline): budget counted in new
  lower-timeframe bars, renewed movement means a confirming bar, entry at
  that bar's close.
* **continuous policy** (real-time pipeline): budget counted in elapsed
  seconds, renewed movement means a minimum bounce off the best pullback
  price, entry at the polled price.

Both track the most favourable pullback price, require a retracement of
``max(|breakout - anchor|, fixed minimum)``, refuse to chase price that
has run beyond a tolerance past the breakout (still pending, never
rejected), and abandon the opportunity once the budget is exhausted.
"""

import logging
from dataclasses import replace
from datetime import datetime
from typing import Optional

from breakoutbot.config import Config
from breakoutbot.strategy.indicators import calculate_ema
from breakoutbot.strategy.models import (
    LONG,
    PIPELINE_CANDLE,
    PIPELINE_REALTIME,
    CandleData,
    EvaluationResult,
    NoSignal,
    Pending,
    PendingEntry,
    Signal,
    StrategyState,
)

logger = logging.getLogger("breakoutbot.strategy")

REFINED_CONFIDENCE = 80.0


def start_pullback(
    direction: str,
    breakout_price: float,
    now: datetime,
    pipeline: str,
    source: str,
    confidence: float,
    reason: str,
    anchor: Optional[float] = None,
) -> PendingEntry:
    """Create the pending entry that hands a confirmed breakout to the refiner."""
    return PendingEntry(
        direction=direction,
        breakout_price=breakout_price,
        started_at=now,
        best_pullback_price=breakout_price,
        pipeline=pipeline,
        source=source,
        anchor=anchor,
        confidence=confidence,
        reason=reason,
    )


def _required_pullback(breakout: float, anchor: Optional[float], minimum: float) -> float:
    if anchor is None:
        return minimum
    return max(abs(breakout - anchor), minimum)


def _favourable(direction: str, a: float, b: float) -> float:
    """Lower price for longs, higher for shorts."""
    return min(a, b) if direction == LONG else max(a, b)


def _retracement(pending: PendingEntry, best: float) -> float:
    if pending.direction == LONG:
        return pending.breakout_price - best
    return best - pending.breakout_price


def _overshoot(pending: PendingEntry, price: float) -> float:
    if pending.direction == LONG:
        return price - pending.breakout_price
    return pending.breakout_price - price


def _emit(
    state: StrategyState,
    pending: PendingEntry,
    entry_price: float,
    detail: str,
) -> tuple[EvaluationResult, StrategyState]:
    improvement = -_overshoot(pending, entry_price)
    reason = (
        f"Pullback entry {pending.direction.upper()} @ {entry_price:.2f}: {detail}, "
        f"improvement {improvement:.2f}"
    )
    logger.info(reason)
    signal = Signal(
        direction=pending.direction,
        entry_price=entry_price,
        confidence=REFINED_CONFIDENCE,
        source=pending.source,
        reason=reason,
        improvement=improvement,
        refined=True,
    )
    return signal, replace(state, pending_entry=None)


def _timeout(state: StrategyState, pending: PendingEntry, budget: str) -> tuple[EvaluationResult, StrategyState]:
    reason = (
        f"Pullback timeout: no {pending.direction.upper()} entry within {budget}, "
        f"abandoning breakout @ {pending.breakout_price:.2f}"
    )
    logger.info(reason)
    return NoSignal(reason), replace(state, pending_entry=None)


# ── Bar policy ───────────────────────────────────────────────────────────


def refine_bar_pullback(
    state: StrategyState,
    lower_candles: list[CandleData],
    config: Config,
) -> tuple[EvaluationResult, StrategyState]:
    """Advance a candle-pipeline pending entry with lower-timeframe bars.

    Only bars newer than the last one seen consume budget, so evaluating
    the same bar twice is harmless.  On the first call only the newest bar
    is counted.
    """
    pending = state.pending_entry
    if pending is None:
        return NoSignal("No pending entry"), state
    if not lower_candles:
        return Pending(pending.direction, "Waiting for lower-timeframe bars"), state

    if pending.last_bar_time is None:
        new_bars = lower_candles[-1:]
    else:
        new_bars = [c for c in lower_candles if c.time > pending.last_bar_time]
    if not new_bars:
        return Pending(
            pending.direction,
            f"Waiting for pullback: bar {pending.budget_used}/{config.pullback_max_wait_candles}",
        ), state

    best = pending.best_pullback_price
    for bar in new_bars:
        best = _favourable(pending.direction, best, bar.low if pending.direction == LONG else bar.high)
    budget_used = pending.budget_used + len(new_bars)

    if budget_used > config.pullback_max_wait_candles:
        return _timeout(state, pending, f"{config.pullback_max_wait_candles} bars")

    anchor = pending.anchor
    if len(lower_candles) >= config.pullback_ema_period:
        anchor = calculate_ema(lower_candles, config.pullback_ema_period)[-1]
    required = _required_pullback(
        pending.breakout_price, anchor, config.pips_to_price(config.pullback_min_pips),
    )

    latest = lower_candles[-1]
    updated = replace(
        pending,
        best_pullback_price=best,
        budget_used=budget_used,
        last_bar_time=latest.time,
        anchor=anchor,
    )
    new_state = replace(state, pending_entry=updated)

    retraced = _retracement(pending, best)
    confirming = latest.is_bullish if pending.direction == LONG else latest.is_bearish
    if retraced >= required and confirming:
        tolerance = config.pips_to_price(config.pullback_chase_tolerance_pips)
        if _overshoot(pending, latest.close) > tolerance:
            return Pending(
                pending.direction,
                f"Chase guard: {latest.close:.2f} is beyond {tolerance:.2f} past "
                f"breakout {pending.breakout_price:.2f}",
            ), new_state
        return _emit(
            new_state,
            updated,
            latest.close,
            f"pulled back to {best:.2f} (needed {required:.2f}), confirming bar",
        )

    return Pending(
        pending.direction,
        f"Waiting for pullback: retraced {retraced:.2f}/{required:.2f}, "
        f"bar {budget_used}/{config.pullback_max_wait_candles}",
    ), new_state


# ── Continuous policy ────────────────────────────────────────────────────


def refine_continuous_pullback(
    state: StrategyState,
    price: float,
    config: Config,
    now: datetime,
) -> tuple[EvaluationResult, StrategyState]:
    """Advance a real-time-pipeline pending entry with a polled price."""
    pending = state.pending_entry
    if pending is None:
        return NoSignal("No pending entry"), state

    elapsed = (now - pending.started_at).total_seconds()
    if elapsed > config.realtime_pullback_max_wait_seconds:
        return _timeout(state, pending, f"{config.realtime_pullback_max_wait_seconds}s")

    best = _favourable(pending.direction, pending.best_pullback_price, price)
    updated = replace(pending, best_pullback_price=best)
    new_state = replace(state, pending_entry=updated)

    required = _required_pullback(
        pending.breakout_price,
        pending.anchor,
        config.pips_to_price(config.realtime_pullback_min_pips),
    )
    retraced = _retracement(pending, best)
    bounce = price - best if pending.direction == LONG else best - price
    min_bounce = config.pips_to_price(config.realtime_pullback_bounce_pips)

    if retraced >= required and bounce >= min_bounce:
        tolerance = config.pips_to_price(config.realtime_pullback_chase_tolerance_pips)
        if _overshoot(pending, price) > tolerance:
            return Pending(
                pending.direction,
                f"Chase guard: {price:.2f} is beyond {tolerance:.2f} past "
                f"breakout {pending.breakout_price:.2f}",
            ), new_state
        return _emit(
            new_state,
            updated,
            price,
            f"pulled back to {best:.2f} (needed {required:.2f}), bounced {bounce:.2f}",
        )

    return Pending(
        pending.direction,
        f"Waiting for pullback: retraced {retraced:.2f}/{required:.2f}, "
        f"bounce {bounce:.2f}/{min_bounce:.2f}, {elapsed:.0f}s/"
        f"{config.realtime_pullback_max_wait_seconds}s",
    ), new_state


def check_pullback(
    state: StrategyState,
    config: Config,
    now: datetime,
    price: Optional[float] = None,
    lower_candles: Optional[list[CandleData]] = None,
) -> tuple[EvaluationResult, StrategyState]:
    """Dispatch to the policy that owns the current pending entry."""
    pending = state.pending_entry
    if pending is None:
        return NoSignal("No pending entry"), state
    if pending.pipeline == PIPELINE_CANDLE:
        return refine_bar_pullback(state, lower_candles or [], config)
    if pending.pipeline == PIPELINE_REALTIME:
        if price is None:
            return Pending(pending.direction, "Waiting for a live price"), state
        return refine_continuous_pullback(state, price, config, now)
    raise ValueError(f"Unknown pullback pipeline: {pending.pipeline!r}")
