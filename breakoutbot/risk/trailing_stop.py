"""Trailing stop — monotonic SL management for an open position.

Rules:
  - Track the best favourable price from entry onwards.
  - Activate once TP1 has been hit or the best price has moved the
    activation distance from entry.
  - Candidate SL = best price ∓ trail distance; it is applied only if it
    tightens the current SL.  The stop never loosens.
"""

from typing import Optional

from breakoutbot.config import Config
from breakoutbot.strategy.models import LONG, SOURCE_CONTINUATION, Position


class TrailingStop:
    """Tracks and updates SL for a single position.

    Args:
        direction: ``"long"`` or ``"short"``.
        entry_price: Fill price.
        current_sl: Stop currently on the trade.
        trail_distance: Price distance kept behind the best price.
        activation_distance: Favourable move needed before trailing.
        best_price: Best favourable price seen so far (defaults to entry).
        tp1_hit: Whether the first target already fired.
    """

    def __init__(
        self,
        direction: str,
        entry_price: float,
        current_sl: float,
        trail_distance: float,
        activation_distance: float,
        best_price: Optional[float] = None,
        tp1_hit: bool = False,
    ) -> None:
        self.direction = direction
        self.entry_price = entry_price
        self.current_sl = current_sl
        self.trail_distance = trail_distance
        self.activation_distance = activation_distance
        self.best_price = entry_price if best_price is None else best_price
        self.tp1_hit = tp1_hit

    @property
    def active(self) -> bool:
        if self.tp1_hit:
            return True
        if self.direction == LONG:
            moved = self.best_price - self.entry_price
        else:
            moved = self.entry_price - self.best_price
        return moved >= self.activation_distance

    def update(self, current_price: float) -> float | None:
        """Feed a price and return the new SL if it should move.

        Returns:
            New SL price if the stop tightens, ``None`` if no change.
        """
        if self.direction == LONG:
            self.best_price = max(self.best_price, current_price)
        else:
            self.best_price = min(self.best_price, current_price)

        if not self.active:
            return None

        if self.direction == LONG:
            candidate = self.best_price - self.trail_distance
            if candidate > self.current_sl:
                self.current_sl = candidate
                return candidate
        else:
            candidate = self.best_price + self.trail_distance
            if candidate < self.current_sl:
                self.current_sl = candidate
                return candidate

        return None


def activation_pips(source: str, config: Config) -> float:
    """Breakout-sourced positions wait for a wider move before trailing."""
    if source == SOURCE_CONTINUATION:
        return config.trailing_activation_pips
    return config.breakout_trailing_activation_pips


def trailing_stop_for(position: Position, config: Config) -> TrailingStop:
    """Build a ``TrailingStop`` seeded from a tracked position."""
    return TrailingStop(
        direction=position.direction,
        entry_price=position.entry_price,
        current_sl=position.current_stop_loss,
        trail_distance=config.pips_to_price(config.trailing_stop_distance_pips),
        activation_distance=config.pips_to_price(activation_pips(position.source, config)),
        best_price=position.best_price,
        tp1_hit=position.tp1_hit,
    )
