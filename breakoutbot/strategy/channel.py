"""Channel tracker — rolling high/low over completed bars. Pure function, no I/O."""

from typing import Optional

from breakoutbot.strategy.models import CandleData, Channel


def compute_channel(candles: list[CandleData], lookback: int) -> Optional[Channel]:
    """Return the extrema of the *lookback* bars immediately before the newest.

    The newest bar is the one being evaluated and never contributes to its
    own channel.  Returns ``None`` when fewer than ``lookback + 1`` bars are
    available.

    Args:
        candles: Completed bars ordered oldest-first.
        lookback: Window length in bars.
    """
    if lookback < 1 or len(candles) < lookback + 1:
        return None
    window = candles[-(lookback + 1):-1]
    return Channel(
        high=max(c.high for c in window),
        low=min(c.low for c in window),
    )
