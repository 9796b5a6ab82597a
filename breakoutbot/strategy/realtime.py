"""Real-time (intra-bar) breakout detector.

Polls the live price against the remembered channel and only confirms a
break that has held outside the channel for the confirmation window.
Price slipping back inside the channel while tracking is treated as a
wick and drops the tracking record.
"""

import logging
from dataclasses import replace
from datetime import datetime
from typing import Optional

from breakoutbot.config import Config
from breakoutbot.strategy.filters import run_filters, score_confidence
from breakoutbot.strategy.models import (
    LONG,
    PIPELINE_REALTIME,
    SHORT,
    SOURCE_REALTIME,
    EvaluationResult,
    NoSignal,
    Pending,
    PendingBreakout,
    Signal,
    StrategyState,
)
from breakoutbot.strategy.pullback import start_pullback

logger = logging.getLogger("breakoutbot.strategy")


def check_realtime(
    state: StrategyState,
    price: float,
    adx: Optional[float],
    rsi: Optional[float],
    config: Config,
    now: datetime,
    anchor: Optional[float] = None,
) -> tuple[EvaluationResult, StrategyState]:
    """Evaluate one live price poll.

    Args:
        state: Current strategy state.
        price: Live mid price.
        adx: Trend strength from the latest completed bars.
        rsi: Momentum oscillator from the latest completed bars.
        config: Thresholds.
        now: Poll time.
        anchor: Primary-timeframe moving average handed to the pullback
            refiner as its anchor.

    Returns:
        ``(result, new_state)``.
    """
    if state.pending_entry is not None:
        return Pending(state.pending_entry.direction, "Pullback entry already pending"), state

    channel = state.memory.previous_channel
    if channel is None:
        return NoSignal("Channel not initialised yet"), state

    tracking = state.pending_breakout

    if channel.contains(price):
        if tracking is not None:
            reason = (
                f"Price {price:.2f} re-entered channel {channel.low:.2f} - {channel.high:.2f}, "
                f"{tracking.direction.upper()} break discarded as a wick"
            )
            logger.info(reason)
            return NoSignal(reason), replace(state, pending_breakout=None)
        return NoSignal(f"Price {price:.2f} inside channel"), state

    if price > channel.high:
        direction, level = LONG, channel.high
    else:
        direction, level = SHORT, channel.low

    window = config.breakout_confirmation_seconds

    if tracking is None or tracking.direction != direction:
        started = PendingBreakout(
            direction=direction,
            first_seen_at=now,
            reference_price=price,
            level=level,
        )
        verb = "flipped to" if tracking is not None else "detected"
        reason = (
            f"Real-time {direction.upper()} break {verb} @ {price:.2f} "
            f"(level {level:.2f}), confirming for {window}s"
        )
        logger.info(reason)
        return Pending(direction, reason), replace(state, pending_breakout=started)

    elapsed = (now - tracking.first_seen_at).total_seconds()
    if elapsed < window:
        return Pending(
            direction,
            f"Confirming {direction.upper()} break: {elapsed:.0f}s/{window}s",
        ), state

    reversed_past = (
        price < tracking.reference_price if direction == LONG
        else price > tracking.reference_price
    )
    if reversed_past:
        reason = (
            f"Fakeout: {direction.upper()} break reversed from {tracking.reference_price:.2f} "
            f"to {price:.2f}"
        )
        logger.info(reason)
        return NoSignal(reason), replace(state, pending_breakout=None)

    reason = (
        f"Real-time {direction.upper()} breakout held {elapsed:.0f}s: "
        f"price {price:.2f} beyond {tracking.level:.2f}"
    )
    verdict = run_filters(direction, price, tracking.level, adx, rsi, config)
    if not verdict.passed:
        reason = f"{reason} - FILTERED: {verdict.veto}"
        logger.info(reason)
        return NoSignal(reason), replace(state, pending_breakout=None)
    for note in verdict.notes:
        logger.info(note)

    confidence = score_confidence(adx, abs(price - tracking.level), config)
    memory = replace(state.memory, last_direction=direction)
    logger.info("%s (confidence %.0f)", reason, confidence)

    if config.enable_pullback_entry:
        pending_entry = start_pullback(
            direction, price, now, PIPELINE_REALTIME, SOURCE_REALTIME,
            confidence, reason, anchor=anchor,
        )
        return Pending(direction, f"{reason}; waiting for pullback entry"), StrategyState(
            memory=memory, pending_entry=pending_entry,
        )

    return Signal(
        direction=direction,
        entry_price=price,
        confidence=confidence,
        source=SOURCE_REALTIME,
        reason=reason,
        channel=channel,
    ), StrategyState(memory=memory)
