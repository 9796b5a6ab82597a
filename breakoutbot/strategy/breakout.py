"""Candle-close breakout detector.

Compares each new completed bar's close against the channel remembered
from the previous evaluation, runs the filter chain, and falls back to a
trend-continuation check when nothing broke.  Pure: the caller passes the
current ``StrategyState`` in and persists the one handed back.
"""

import logging
from dataclasses import replace
from datetime import datetime
from typing import Optional

from breakoutbot.config import Config
from breakoutbot.strategy.channel import compute_channel
from breakoutbot.strategy.filters import run_filters, score_confidence
from breakoutbot.strategy.models import (
    LONG,
    PIPELINE_CANDLE,
    SHORT,
    SOURCE_BREAKOUT,
    SOURCE_CONTINUATION,
    Analysis,
    CandleData,
    EvaluationResult,
    NoSignal,
    Pending,
    Signal,
    StrategyMemory,
    StrategyState,
)
from breakoutbot.strategy.pullback import refine_bar_pullback, start_pullback

logger = logging.getLogger("breakoutbot.strategy")

CONTINUATION_CONFIDENCE = 70.0


def _check_continuation(
    memory: StrategyMemory,
    analysis: Analysis,
    bar: CandleData,
    config: Config,
) -> Optional[str]:
    """Return a reason string if the bar is a pullback-to-EMA continuation."""
    if not config.enable_trend_continuation or memory.last_direction is None:
        return None
    if analysis.adx is None or analysis.adx < config.trend_continuation_adx_min:
        return None
    if analysis.ema is None:
        return None

    tolerance = config.pips_to_price(config.trend_continuation_ema_tolerance_pips)
    if abs(bar.close - analysis.ema) > tolerance:
        return None
    confirming = bar.is_bullish if memory.last_direction == LONG else bar.is_bearish
    if not confirming:
        return None
    return (
        f"Trend continuation: {memory.last_direction.upper()} pullback to "
        f"EMA{config.trend_continuation_ema_period} ({analysis.ema:.2f}), "
        f"ADX {analysis.adx:.1f} confirms trend"
    )


def evaluate_candle_close(
    state: StrategyState,
    analysis: Analysis,
    candles: list[CandleData],
    config: Config,
    now: datetime,
    lower_candles: Optional[list[CandleData]] = None,
) -> tuple[EvaluationResult, StrategyState]:
    """Evaluate the newest completed bar.

    Args:
        state: Current strategy state.
        analysis: Indicator snapshot for ``candles[-1]``.
        candles: Completed primary-timeframe bars, oldest-first.
        config: Thresholds.
        now: Evaluation time; stamps any pending entry created.
        lower_candles: Completed lower-timeframe bars for pullback
            refinement.  ``None`` skips refinement this call.

    Returns:
        ``(result, new_state)``.  Re-evaluating the same bar returns
        ``NoSignal`` and leaves memory untouched.
    """
    refined: Optional[EvaluationResult] = None
    pending = state.pending_entry
    if pending is not None and pending.pipeline == PIPELINE_CANDLE and lower_candles is not None:
        refined, state = refine_bar_pullback(state, lower_candles, config)

    channel = compute_channel(candles, config.breakout_lookback)
    if channel is None:
        return refined or NoSignal(
            f"Insufficient candle data for channel: need {config.breakout_lookback + 1} "
            f"bars, got {len(candles)}"
        ), state

    bar = candles[-1]
    memory = state.memory

    if not memory.initialized:
        initialized = replace(memory, previous_channel=channel, last_bar_time=bar.time)
        return refined or NoSignal(
            f"Initializing channel: high {channel.high:.2f}, low {channel.low:.2f}"
        ), replace(state, memory=initialized)

    if memory.last_bar_time == bar.time:
        return refined or NoSignal(
            f"No new candle. Channel {channel.low:.2f} - {channel.high:.2f}, "
            f"price {bar.close:.2f}"
        ), state

    previous = memory.previous_channel
    rolled = replace(memory, previous_channel=channel, last_bar_time=bar.time)

    # A timed-out refinement has cleared its pending entry, so this bar is
    # still checked for a fresh breakout.
    if isinstance(refined, (Signal, Pending)) or state.pending_entry is not None:
        if refined is None:
            refined = Pending(
                state.pending_entry.direction,
                f"Pullback entry pending ({state.pending_entry.pipeline} pipeline)",
            )
        return refined, replace(state, memory=rolled)

    direction: Optional[str] = None
    level = 0.0
    if bar.close > previous.high:
        direction, level = LONG, previous.high
        reason = (
            f"Bullish breakout: close {bar.close:.2f} broke above "
            f"{config.breakout_lookback}-bar high {level:.2f}"
        )
    elif bar.close < previous.low:
        direction, level = SHORT, previous.low
        reason = (
            f"Bearish breakout: close {bar.close:.2f} broke below "
            f"{config.breakout_lookback}-bar low {level:.2f}"
        )

    if direction is not None:
        verdict = run_filters(
            direction, bar.close, level, analysis.adx, analysis.rsi, config, candle=bar,
        )
        if not verdict.passed:
            reason = f"{reason} - FILTERED: {verdict.veto}"
            logger.info(reason)
            return NoSignal(reason), replace(state, memory=rolled)
        for note in verdict.notes:
            logger.info(note)
        source = SOURCE_BREAKOUT
        confidence = score_confidence(analysis.adx, abs(bar.close - level), config)
    else:
        continuation = _check_continuation(memory, analysis, bar, config)
        if continuation is None:
            return NoSignal(
                f"No breakout. Channel {previous.low:.2f} - {previous.high:.2f}, "
                f"price {bar.close:.2f}"
            ), replace(state, memory=rolled)
        direction = memory.last_direction
        source = SOURCE_CONTINUATION
        confidence = CONTINUATION_CONFIDENCE
        reason = continuation

    rolled = replace(rolled, last_direction=direction)
    logger.info("%s (confidence %.0f)", reason, confidence)

    if config.enable_pullback_entry:
        pending_entry = start_pullback(
            direction, bar.close, now, PIPELINE_CANDLE, source, confidence, reason,
        )
        new_state = StrategyState(memory=rolled, pending_entry=pending_entry)
        if lower_candles:
            result, new_state = refine_bar_pullback(new_state, lower_candles, config)
            if not isinstance(result, Pending):
                return result, new_state
        return Pending(direction, f"{reason}; waiting for pullback entry"), new_state

    return Signal(
        direction=direction,
        entry_price=bar.close,
        confidence=confidence,
        source=source,
        reason=reason,
        channel=previous,
    ), StrategyState(memory=rolled)
