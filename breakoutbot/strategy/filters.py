"""Breakout filter chain shared by the candle-close and real-time paths.

Filters run in a fixed order and the first failure vetoes the breakout.
Later filters are not evaluated once one has failed.
"""

from dataclasses import dataclass, field
from typing import Optional

from breakoutbot.config import Config
from breakoutbot.strategy.models import LONG, CandleData

# Breakout distances (pips past the level) that earn extra confidence
_STRONG_BREAKOUT_PIPS = 200.0
_VERY_STRONG_BREAKOUT_PIPS = 500.0

BASE_CONFIDENCE = 50.0


@dataclass(frozen=True)
class FilterResult:
    """Outcome of running the chain.

    ``veto`` holds the reason of the filter that failed, ``notes`` any
    informational remarks (e.g. an ADX override that let a filter pass).
    """

    veto: Optional[str] = None
    notes: list[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.veto is None


def run_filters(
    direction: str,
    price: float,
    level: float,
    adx: Optional[float],
    rsi: Optional[float],
    config: Config,
    candle: Optional[CandleData] = None,
) -> FilterResult:
    """Apply the ordered filter chain to a candidate breakout.

    Args:
        direction: ``"long"`` or ``"short"``.
        price: Price being judged (bar close or live price).
        level: The channel edge that was broken.
        adx: Trend strength; ``None`` vetoes.
        rsi: Momentum oscillator; ``None`` skips the momentum filter.
        config: Thresholds.
        candle: The breakout bar.  The body and candle-position filters
            only run when a bar is supplied (candle-close path).
    """
    notes: list[str] = []
    is_long = direction == LONG

    # 1. Trend strength
    if adx is None:
        return FilterResult(veto="ADX unavailable (insufficient data)")
    if adx < config.adx_min:
        return FilterResult(veto=f"ADX {adx:.1f} < {config.adx_min:g} (ranging market)")

    override = adx > config.adx_override

    # 2. Candle body agrees with direction
    if candle is not None:
        agrees = candle.is_bullish if is_long else candle.is_bearish
        if not agrees:
            if not override:
                wanted = "bullish" if is_long else "bearish"
                return FilterResult(veto=f"Candle body disagrees (need {wanted} confirmation)")
            notes.append(f"ADX override {adx:.1f}: candle body ignored")

    # 3. Momentum not exhausted
    if rsi is not None:
        exhausted = (
            rsi > config.breakout_rsi_max_long if is_long
            else rsi < config.breakout_rsi_min_short
        )
        if exhausted:
            if not override:
                if is_long:
                    return FilterResult(
                        veto=f"RSI {rsi:.1f} > {config.breakout_rsi_max_long:g} "
                        "(overbought - move exhausted)",
                    )
                return FilterResult(
                    veto=f"RSI {rsi:.1f} < {config.breakout_rsi_min_short:g} "
                    "(oversold - move exhausted)",
                )
            notes.append(f"ADX override {adx:.1f}: RSI {rsi:.1f} ignored")

    # 4. Not too far past the level
    distance = price - level if is_long else level - price
    max_distance = config.pips_to_price(config.breakout_max_distance_pips)
    if distance > max_distance:
        return FilterResult(
            veto=f"Price {distance:.2f} past breakout level (max {max_distance:.2f})",
            notes=notes,
        )

    # 5. Close in the favourable part of the bar
    if candle is not None:
        if candle.range > 0:
            position = (candle.close - candle.low) / candle.range
        else:
            position = 0.5
        favourable = position if is_long else 1.0 - position
        if favourable < config.breakout_min_candle_position:
            return FilterResult(
                veto=f"Close in weak {(1 - favourable) * 100:.0f}% of candle (move fading)",
                notes=notes,
            )

    return FilterResult(notes=notes)


def score_confidence(adx: Optional[float], distance: float, config: Config) -> float:
    """Additive confidence heuristic for a confirmed breakout.

    Advisory only; nothing gates on it.
    """
    confidence = BASE_CONFIDENCE
    if adx is not None and adx > 25:
        confidence += 10
    if adx is not None and adx > 30:
        confidence += 10
    if distance > config.pips_to_price(_STRONG_BREAKOUT_PIPS):
        confidence += 5
    if distance > config.pips_to_price(_VERY_STRONG_BREAKOUT_PIPS):
        confidence += 5
    return confidence
