"""Technical indicators — EMA, RSI, ADX. Pure functions, no I/O.

The series functions return lists aligned with the input candles, padded
with ``nan`` until enough history exists.  ``analyze`` collapses them to a
single ``Analysis`` snapshot for the newest bar.
"""

import math
from typing import Optional

from breakoutbot.config import Config
from breakoutbot.strategy.models import Analysis, CandleData

RSI_PERIOD = 14
ADX_PERIOD = 14


def calculate_ema(candles: list[CandleData], period: int) -> list[float]:
    """Exponential moving average of closes, seeded with the SMA of the
    first *period* closes.

    Raises ``ValueError`` if fewer than *period* candles are provided.
    """
    if len(candles) < period:
        raise ValueError(
            f"Need at least {period} candles for EMA({period}), got {len(candles)}"
        )

    k = 2.0 / (period + 1)
    closes = [c.close for c in candles]
    series = [float("nan")] * len(closes)
    series[period - 1] = sum(closes[:period]) / period
    for i in range(period, len(closes)):
        series[i] = closes[i] * k + series[i - 1] * (1 - k)
    return series


# ── RSI ──────────────────────────────────────────────────────────────────


def calculate_rsi(candles: list[CandleData], period: int = RSI_PERIOD) -> list[float]:
    """Wilder's Relative Strength Index.

    Needs ``period + 1`` candles; the first value lands on index *period*.
    """
    if len(candles) < period + 1:
        raise ValueError(
            f"Need at least {period + 1} candles for RSI({period}), got {len(candles)}"
        )

    deltas = [candles[i].close - candles[i - 1].close for i in range(1, len(candles))]
    gains = [d if d > 0 else 0.0 for d in deltas]
    losses = [-d if d < 0 else 0.0 for d in deltas]

    def _rsi(avg_gain: float, avg_loss: float) -> float:
        if avg_loss == 0:
            return 100.0
        return 100.0 - 100.0 / (1.0 + avg_gain / avg_loss)

    series = [float("nan")] * len(candles)
    avg_gain = sum(gains[:period]) / period
    avg_loss = sum(losses[:period]) / period
    series[period] = _rsi(avg_gain, avg_loss)

    for i in range(period, len(deltas)):
        avg_gain = (avg_gain * (period - 1) + gains[i]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i]) / period
        series[i + 1] = _rsi(avg_gain, avg_loss)

    return series


# ── ADX ──────────────────────────────────────────────────────────────────


def calculate_adx(candles: list[CandleData], period: int = ADX_PERIOD) -> list[float]:
    """Average Directional Index with Wilder smoothing.

    Needs ``2 * period + 1`` candles; the first value lands on index
    ``2 * period - 1``.
    """
    if len(candles) < 2 * period + 1:
        raise ValueError(
            f"Need at least {2 * period + 1} candles for ADX({period}), "
            f"got {len(candles)}"
        )

    plus_dm: list[float] = []
    minus_dm: list[float] = []
    true_range: list[float] = []
    for prev, cur in zip(candles, candles[1:]):
        up = cur.high - prev.high
        down = prev.low - cur.low
        plus_dm.append(up if up > down and up > 0 else 0.0)
        minus_dm.append(down if down > up and down > 0 else 0.0)
        true_range.append(
            max(cur.high - cur.low, abs(cur.high - prev.close), abs(cur.low - prev.close))
        )

    def _dx(pdm: float, mdm: float, tr: float) -> float:
        if tr == 0:
            return 0.0
        plus_di = 100.0 * pdm / tr
        minus_di = 100.0 * mdm / tr
        total = plus_di + minus_di
        return 0.0 if total == 0 else 100.0 * abs(plus_di - minus_di) / total

    s_pdm = sum(plus_dm[:period])
    s_mdm = sum(minus_dm[:period])
    s_tr = sum(true_range[:period])
    dx = [_dx(s_pdm, s_mdm, s_tr)]
    for i in range(period, len(true_range)):
        s_pdm += plus_dm[i] - s_pdm / period
        s_mdm += minus_dm[i] - s_mdm / period
        s_tr += true_range[i] - s_tr / period
        dx.append(_dx(s_pdm, s_mdm, s_tr))

    series = [float("nan")] * len(candles)
    adx = sum(dx[:period]) / period
    series[2 * period - 1] = adx
    for j in range(period, len(dx)):
        adx = (adx * (period - 1) + dx[j]) / period
        series[period + j] = adx
    return series


# ── Snapshot ─────────────────────────────────────────────────────────────


def _last_or_none(fn, *args) -> Optional[float]:
    try:
        value = fn(*args)[-1]
    except ValueError:
        return None
    return None if math.isnan(value) else value


def analyze(candles: list[CandleData], config: Config) -> Analysis:
    """Build the indicator snapshot for the newest completed bar.

    Indicators that cannot be computed from the available history come
    back as ``None`` rather than raising.
    """
    if not candles:
        raise ValueError("analyze() needs at least one candle")
    return Analysis(
        price=candles[-1].close,
        adx=_last_or_none(calculate_adx, candles, ADX_PERIOD),
        rsi=_last_or_none(calculate_rsi, candles, RSI_PERIOD),
        ema=_last_or_none(calculate_ema, candles, config.trend_continuation_ema_period),
    )
