"""Broker data models — typed representations of OANDA v20 API objects."""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Candle:
    """A single candlestick bar."""

    time: str
    open: float
    high: float
    low: float
    close: float
    volume: int
    complete: bool


@dataclass(frozen=True)
class PriceQuote:
    """Top-of-book bid/ask for one instrument."""

    instrument: str
    bid: float
    ask: float
    time: str = ""

    @property
    def mid(self) -> float:
        return (self.bid + self.ask) / 2.0


@dataclass(frozen=True)
class AccountSummary:
    """Summary of an OANDA account."""

    account_id: str
    balance: float
    equity: float
    open_position_count: int
    currency: str


@dataclass(frozen=True)
class OrderRequest:
    """A market order request payload.

    Either protective level may be omitted; ``price_bound`` is the worst
    acceptable fill price and is enforced by OANDA at submission time.
    """

    instrument: str
    units: float  # positive=buy, negative=sell
    stop_loss_price: Optional[float] = None
    take_profit_price: Optional[float] = None
    price_bound: Optional[float] = None


@dataclass(frozen=True)
class OrderResult:
    """Outcome of a market order submission.

    Venue rejections are reported with ``success=False`` and a ``reason``
    instead of raising.
    """

    success: bool
    trade_id: Optional[str] = None
    order_id: Optional[str] = None
    fill_price: Optional[float] = None
    units: float = 0.0
    time: str = ""
    reason: str = ""


@dataclass(frozen=True)
class Trade:
    """An open trade with SL/TP details."""

    trade_id: str
    instrument: str
    units: float
    price: float
    unrealized_pnl: float
    stop_loss_price: Optional[float] = None
    take_profit_price: Optional[float] = None
    open_time: str = ""


@dataclass(frozen=True)
class TradeDetail:
    """Full state of a single trade, open or closed."""

    trade_id: str
    instrument: str
    state: str  # "OPEN", "CLOSED" or "CLOSE_WHEN_TRADEABLE"
    entry_price: float
    initial_units: float
    exit_price: Optional[float] = None
    realized_pnl: float = 0.0
    close_time: str = ""
    close_reason: str = ""

    @property
    def is_closed(self) -> bool:
        return self.state == "CLOSED"


@dataclass(frozen=True)
class PartialClose:
    """Result of closing part of a trade."""

    success: bool
    units_closed: float = 0.0
    realized_pnl: float = 0.0
    price: Optional[float] = None
