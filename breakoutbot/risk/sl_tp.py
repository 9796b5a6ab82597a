"""Stop-loss and take-profit calculation — pure math, no I/O.

Fixed-distance approach:
    SL sits a configured pip distance from entry (wider for breakout
    sources).  TP targets are multiples of that risk distance.  Once the
    order fills, the stop is re-anchored to the actual fill price.
"""

from dataclasses import dataclass
from typing import Optional

from breakoutbot.config import Config
from breakoutbot.strategy.models import LONG, SOURCE_CONTINUATION

# Fill re-anchoring ignores stop differences at or below one cent
REANCHOR_TOLERANCE = 0.01


@dataclass(frozen=True)
class EntryLevels:
    """Computed entry, stop-loss and take-profit targets for a trade.

    ``tp1`` and ``tp2`` are equal in single-target mode.
    """

    entry_price: float
    stop_loss: float
    tp1: float
    tp2: float
    risk_distance: float


def stop_distance_pips(source: str, config: Config) -> float:
    """Stop distance in pips for a signal *source*.

    Every source except trend continuation uses the wider breakout stop.
    """
    if source == SOURCE_CONTINUATION:
        return config.stop_loss_pips
    return config.breakout_stop_loss_pips


def _offset(direction: str, price: float, distance: float) -> float:
    """Move *distance* in the profit direction (negative for the loss side)."""
    return price + distance if direction == LONG else price - distance


def compute_entry_levels(
    direction: str,
    entry_price: float,
    config: Config,
    source: str = "breakout",
) -> EntryLevels:
    """Calculate SL and TP targets for an entry.

    Args:
        direction: ``"long"`` or ``"short"``.
        entry_price: Signal (or refined) entry price.
        config: Stop distances and R:R multiples.
        source: Signal source; selects the stop distance.

    Returns:
        ``EntryLevels``.  With staged take-profit enabled, ``tp1``/``tp2``
        sit at ``TAKE_PROFIT_1_RR``/``TAKE_PROFIT_2_RR``; otherwise both
        sit at ``TAKE_PROFIT_RR``.
    """
    risk = config.pips_to_price(stop_distance_pips(source, config))
    stop_loss = _offset(direction, entry_price, -risk)
    if config.enable_staged_tp:
        tp1 = _offset(direction, entry_price, risk * config.take_profit_1_rr)
        tp2 = _offset(direction, entry_price, risk * config.take_profit_2_rr)
    else:
        tp1 = tp2 = _offset(direction, entry_price, risk * config.take_profit_rr)
    return EntryLevels(
        entry_price=entry_price,
        stop_loss=stop_loss,
        tp1=tp1,
        tp2=tp2,
        risk_distance=risk,
    )


def order_take_profit(levels: EntryLevels, config: Config) -> Optional[float]:
    """TP to attach to the order itself.

    Trailing-only and staged modes manage the exit themselves, so only the
    single-target mode attaches a TP on fill.
    """
    if config.trailing_only or config.enable_staged_tp:
        return None
    return levels.tp1


def price_bound(direction: str, entry_price: float, config: Config) -> float:
    """Worst acceptable fill price given the slippage allowance."""
    slippage = config.pips_to_price(config.max_slippage_pips)
    return _offset(direction, entry_price, slippage)


def widened_stop(direction: str, stop_loss: float, config: Config) -> float:
    """Stop moved further from entry for the retry after a stop rejection."""
    return _offset(direction, stop_loss, -config.pips_to_price(config.order_retry_widen_sl_pips))


def unprotected_fill_stop(direction: str, fill_price: float, config: Config) -> float:
    """Stop attached after a fill that went through without protective orders."""
    distance = config.pips_to_price(
        config.breakout_stop_loss_pips + config.order_retry_widen_sl_pips,
    )
    return _offset(direction, fill_price, -distance)


def reanchor_levels(
    levels: EntryLevels,
    direction: str,
    fill_price: float,
    stop_loss: float,
) -> EntryLevels:
    """Shift every level so the submitted distances hold from *fill_price*.

    Args:
        levels: Levels computed from the signal price.
        direction: ``"long"`` or ``"short"``.
        fill_price: Actual fill price.
        stop_loss: The stop that was actually submitted (it may have been
            widened by a retry).
    """
    shift = fill_price - levels.entry_price
    stop_distance = abs(levels.entry_price - stop_loss)
    return EntryLevels(
        entry_price=fill_price,
        stop_loss=_offset(direction, fill_price, -stop_distance),
        tp1=levels.tp1 + shift,
        tp2=levels.tp2 + shift,
        risk_distance=stop_distance,
    )


def needs_stop_adjustment(submitted: float, anchored: float) -> bool:
    return abs(submitted - anchored) > REANCHOR_TOLERANCE
