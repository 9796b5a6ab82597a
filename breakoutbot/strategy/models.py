"""Strategy data models — state snapshots and tagged evaluation results.

Every evaluation function takes a ``StrategyState`` and returns a new one
alongside its result; nothing here is mutated in place.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Union

LONG = "long"
SHORT = "short"

# Signal sources
SOURCE_BREAKOUT = "breakout"
SOURCE_REALTIME = "realtime"
SOURCE_CONTINUATION = "continuation"

# Which refinement pipeline owns a pending entry
PIPELINE_CANDLE = "candle"
PIPELINE_REALTIME = "realtime"


@dataclass(frozen=True)
class CandleData:
    """A single completed candlestick bar for strategy consumption."""

    time: str
    open: float
    high: float
    low: float
    close: float
    volume: int = 0

    @property
    def is_bullish(self) -> bool:
        return self.close > self.open

    @property
    def is_bearish(self) -> bool:
        return self.close < self.open

    @property
    def range(self) -> float:
        return self.high - self.low


@dataclass(frozen=True)
class Channel:
    """Highest high / lowest low over the lookback window."""

    high: float
    low: float

    def contains(self, price: float) -> bool:
        return self.low <= price <= self.high


@dataclass(frozen=True)
class Analysis:
    """Indicator snapshot for the latest completed bar.

    Any indicator is ``None`` when there were too few bars to compute it.
    """

    price: float
    adx: Optional[float] = None
    rsi: Optional[float] = None
    ema: Optional[float] = None


# ── State snapshots ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class StrategyMemory:
    """What the candle-close detector remembers between evaluations."""

    previous_channel: Optional[Channel] = None
    last_bar_time: Optional[str] = None
    last_direction: Optional[str] = None

    @property
    def initialized(self) -> bool:
        return self.previous_channel is not None


@dataclass(frozen=True)
class PendingBreakout:
    """An intra-bar break being tracked through its confirmation window."""

    direction: str
    first_seen_at: datetime
    reference_price: float
    level: float


@dataclass(frozen=True)
class PendingEntry:
    """A confirmed breakout waiting for a pullback entry.

    ``budget_used`` counts lower-timeframe bars for the candle pipeline and
    is unused by the real-time pipeline, which budgets by elapsed time.
    """

    direction: str
    breakout_price: float
    started_at: datetime
    best_pullback_price: float
    pipeline: str = PIPELINE_CANDLE
    source: str = SOURCE_BREAKOUT
    budget_used: int = 0
    anchor: Optional[float] = None
    last_bar_time: Optional[str] = None
    confidence: float = 0.0
    reason: str = ""


@dataclass(frozen=True)
class StrategyState:
    """Everything the two detection paths and the refiner share."""

    memory: StrategyMemory = field(default_factory=StrategyMemory)
    pending_breakout: Optional[PendingBreakout] = None
    pending_entry: Optional[PendingEntry] = None

    @property
    def has_pending(self) -> bool:
        return self.pending_breakout is not None or self.pending_entry is not None

    def cleared(self) -> "StrategyState":
        """Drop both pending records, keeping memory."""
        return StrategyState(memory=self.memory)


# ── Tagged evaluation results ────────────────────────────────────────────


@dataclass(frozen=True)
class NoSignal:
    reason: str


@dataclass(frozen=True)
class Pending:
    direction: str
    reason: str


@dataclass(frozen=True)
class Signal:
    """A final entry decision.

    ``improvement`` is how much better the entry is than the original
    breakout price (positive means a cheaper long / dearer short).
    """

    direction: str
    entry_price: float
    confidence: float
    source: str
    reason: str = ""
    improvement: float = 0.0
    channel: Optional[Channel] = None
    refined: bool = False


EvaluationResult = Union[NoSignal, Pending, Signal]


# ── Positions ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Position:
    """A live position tracked by the lifecycle manager."""

    trade_id: str
    direction: str
    source: str
    entry_price: float
    stop_loss: float
    tp1: Optional[float]
    tp2: Optional[float]
    units: float
    best_price: float
    current_stop_loss: float
    tp1_hit: bool = False
    opened_at: str = ""
    journal_id: Optional[int] = None


# ── Instrument metadata ──────────────────────────────────────────────────

INSTRUMENT_PIP_VALUES: dict[str, float] = {
    "EUR_USD": 0.0001,
    "GBP_USD": 0.0001,
    "USD_JPY": 0.01,
    "USD_CHF": 0.0001,
    "AUD_USD": 0.0001,
    "NZD_USD": 0.0001,
    "USD_CAD": 0.0001,
    "XAU_USD": 0.01,
    "XAG_USD": 0.001,
}
