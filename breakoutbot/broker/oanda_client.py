"""OANDA v20 REST API async client.

Handles all communication with OANDA: candles, live pricing, account
queries, order placement, trade modification and partial closes.
"""

import asyncio
import logging
from typing import Optional

import httpx

from breakoutbot.broker.models import (
    AccountSummary,
    Candle,
    OrderRequest,
    OrderResult,
    PartialClose,
    PriceQuote,
    Trade,
    TradeDetail,
)
from breakoutbot.config import Config

logger = logging.getLogger("breakoutbot.broker")

# Retry settings
_MAX_RETRIES = 3
_RETRY_BASE_DELAY = 2.0  # seconds; doubles each attempt
_RETRYABLE_STATUS_CODES = {502, 503, 504, 429}

# Order responses OANDA uses for rejections rather than transport failures
_REJECTION_STATUS_CODES = {400, 404}


def _price_precision(instrument: str) -> int:
    if "XAU" in instrument or "XAG" in instrument:
        return 2
    if "JPY" in instrument:
        return 3
    return 5


def _format_price(instrument: str, price: float) -> str:
    return f"{price:.{_price_precision(instrument)}f}"


def _rejection_reason(payload: dict) -> str:
    """Pull the most specific rejection reason out of an order response."""
    for key in ("orderRejectTransaction", "orderCancelTransaction"):
        txn = payload.get(key)
        if txn:
            reason = txn.get("rejectReason") or txn.get("reason")
            if reason:
                return reason
    return (
        payload.get("errorCode")
        or payload.get("errorMessage")
        or "UNKNOWN_REJECTION"
    )


def _close_reason(trade: dict) -> str:
    """Infer why a closed trade closed from its dependent orders."""
    for key, label in (
        ("trailingStopLossOrder", "TRAILING_STOP"),
        ("stopLossOrder", "STOP_LOSS"),
        ("takeProfitOrder", "TAKE_PROFIT"),
    ):
        order = trade.get(key)
        if order and order.get("state") == "FILLED":
            return label
    return trade.get("closeReason", "MARKET_CLOSE")


class OandaClient:
    """Async client wrapping OANDA v20 REST API."""

    def __init__(self, config: Config) -> None:
        self._config = config
        self._base_url = config.oanda_base_url
        self._account_id = config.oanda_account_id
        self._headers = {
            "Authorization": f"Bearer {config.oanda_api_token}",
            "Content-Type": "application/json",
        }

    @property
    def _account_url(self) -> str:
        return f"{self._base_url}/v3/accounts/{self._account_id}"

    # ── Retry helper ─────────────────────────────────────────────────────

    async def _request_with_retry(
        self,
        method: str,
        url: str,
        **kwargs,
    ) -> httpx.Response:
        """Execute an HTTP request with exponential-backoff retry.

        Retries on transient server errors (502, 503, 504), rate-limits
        (429) and transport failures.  Other HTTP errors raise
        ``httpx.HTTPStatusError`` immediately.
        """
        last_exc: Optional[Exception] = None

        for attempt in range(_MAX_RETRIES):
            delay = _RETRY_BASE_DELAY * (2 ** attempt)
            try:
                async with httpx.AsyncClient() as client:
                    resp = await getattr(client, method)(
                        url,
                        headers=self._headers,
                        timeout=30.0,
                        **kwargs,
                    )

                if resp.status_code in _RETRYABLE_STATUS_CODES:
                    logger.warning(
                        "OANDA %s %s returned %d, retry %d/%d in %.1fs",
                        method.upper(), url, resp.status_code,
                        attempt + 1, _MAX_RETRIES, delay,
                    )
                    last_exc = httpx.HTTPStatusError(
                        f"Server error '{resp.status_code}'",
                        request=resp.request,
                        response=resp,
                    )
                    await asyncio.sleep(delay)
                    continue

                resp.raise_for_status()
                return resp

            except httpx.TransportError as exc:
                logger.warning(
                    "OANDA %s %s transport error (%s), retry %d/%d in %.1fs",
                    method.upper(), url, exc,
                    attempt + 1, _MAX_RETRIES, delay,
                )
                last_exc = exc
                await asyncio.sleep(delay)

        raise last_exc  # type: ignore[misc]

    # ── Market data ──────────────────────────────────────────────────────

    async def fetch_candles(
        self,
        instrument: str,
        granularity: str,
        count: int = 60,
    ) -> list[Candle]:
        """Fetch mid-price candlestick data.

        Args:
            instrument: e.g. ``"XAU_USD"``
            granularity: e.g. ``"H1"``, ``"M15"``
            count: number of candles to request (max 5000)

        Returns:
            List of ``Candle`` objects ordered oldest-first, including the
            still-forming bar if OANDA returns one.
        """
        url = f"{self._base_url}/v3/instruments/{instrument}/candles"
        params = {
            "granularity": granularity,
            "count": count,
            "price": "M",
        }

        resp = await self._request_with_retry("get", url, params=params)

        candles: list[Candle] = []
        for c in resp.json().get("candles", []):
            mid = c["mid"]
            candles.append(
                Candle(
                    time=c["time"],
                    open=float(mid["o"]),
                    high=float(mid["h"]),
                    low=float(mid["l"]),
                    close=float(mid["c"]),
                    volume=int(c.get("volume", 0)),
                    complete=bool(c["complete"]),
                )
            )
        return candles

    async def fetch_price(self, instrument: str) -> PriceQuote:
        """Return the current bid/ask for *instrument*."""
        url = f"{self._account_url}/pricing"

        resp = await self._request_with_retry(
            "get", url, params={"instruments": instrument},
        )

        prices = resp.json().get("prices", [])
        if not prices:
            raise ValueError(f"No price returned for {instrument}")
        p = prices[0]
        return PriceQuote(
            instrument=p.get("instrument", instrument),
            bid=float(p["bids"][0]["price"]),
            ask=float(p["asks"][0]["price"]),
            time=p.get("time", ""),
        )

    # ── Account ──────────────────────────────────────────────────────────

    async def get_account_summary(self) -> AccountSummary:
        """Query OANDA for account balance, equity, and open position count."""
        resp = await self._request_with_retry("get", f"{self._account_url}/summary")

        acct = resp.json()["account"]
        return AccountSummary(
            account_id=acct["id"],
            balance=float(acct["balance"]),
            equity=float(acct["NAV"]),
            open_position_count=int(acct["openPositionCount"]),
            currency=acct["currency"],
        )

    # ── Orders ───────────────────────────────────────────────────────────

    async def place_order(self, order: OrderRequest) -> OrderResult:
        """Place a market order with optional stop-loss, take-profit and bound.

        Venue rejections (HTTP 400/404 with a reject transaction, or a fill
        cancelled by OANDA) are returned as ``OrderResult(success=False)``.
        Transport and server failures still raise after retries.
        """
        body: dict = {
            "type": "MARKET",
            "instrument": order.instrument,
            "units": str(int(order.units)),
            "timeInForce": "FOK",
            "positionFill": "DEFAULT",
        }
        if order.stop_loss_price is not None:
            body["stopLossOnFill"] = {
                "price": _format_price(order.instrument, order.stop_loss_price),
            }
        if order.take_profit_price is not None:
            body["takeProfitOnFill"] = {
                "price": _format_price(order.instrument, order.take_profit_price),
            }
        if order.price_bound is not None:
            body["priceBound"] = _format_price(order.instrument, order.price_bound)

        try:
            resp = await self._request_with_retry(
                "post", f"{self._account_url}/orders", json={"order": body},
            )
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code not in _REJECTION_STATUS_CODES:
                raise
            try:
                payload = exc.response.json()
            except ValueError:
                payload = {}
            reason = _rejection_reason(payload)
            logger.warning("Order rejected by OANDA: %s", reason)
            return OrderResult(success=False, reason=reason)

        data = resp.json()
        fill = data.get("orderFillTransaction")
        if not fill:
            reason = _rejection_reason(data)
            logger.warning("Order not filled: %s", reason)
            return OrderResult(success=False, reason=reason)

        opened = fill.get("tradeOpened", {})
        return OrderResult(
            success=True,
            trade_id=opened.get("tradeID"),
            order_id=fill.get("orderID", fill.get("id")),
            fill_price=float(fill["price"]),
            units=float(opened.get("units", fill.get("units", order.units))),
            time=fill.get("time", ""),
        )

    # ── Trades ───────────────────────────────────────────────────────────

    async def list_open_trades(self, instrument: Optional[str] = None) -> list[Trade]:
        """Return open trades with SL/TP details, optionally for one instrument."""
        resp = await self._request_with_retry("get", f"{self._account_url}/openTrades")

        trades: list[Trade] = []
        for t in resp.json().get("trades", []):
            if instrument and t["instrument"] != instrument:
                continue
            sl_price = None
            tp_price = None
            if "stopLossOrder" in t:
                sl_price = float(t["stopLossOrder"].get("price", 0))
            if "takeProfitOrder" in t:
                tp_price = float(t["takeProfitOrder"].get("price", 0))
            trades.append(
                Trade(
                    trade_id=t["id"],
                    instrument=t["instrument"],
                    units=float(t["currentUnits"]),
                    price=float(t["price"]),
                    unrealized_pnl=float(t.get("unrealizedPL", "0")),
                    stop_loss_price=sl_price,
                    take_profit_price=tp_price,
                    open_time=t.get("openTime", ""),
                )
            )
        return trades

    async def get_trade(self, trade_id: str) -> TradeDetail:
        """Return the full record of one trade, including realized P&L once closed."""
        resp = await self._request_with_retry("get", f"{self._account_url}/trades/{trade_id}")

        t = resp.json()["trade"]
        state = t.get("state", "OPEN")
        exit_price = t.get("averageClosePrice")
        return TradeDetail(
            trade_id=t["id"],
            instrument=t["instrument"],
            state=state,
            entry_price=float(t["price"]),
            initial_units=float(t.get("initialUnits", t.get("currentUnits", "0"))),
            exit_price=float(exit_price) if exit_price is not None else None,
            realized_pnl=float(t.get("realizedPL", "0")),
            close_time=t.get("closeTime", ""),
            close_reason=_close_reason(t) if state == "CLOSED" else "",
        )

    async def modify_trade(
        self,
        trade_id: str,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None,
    ) -> dict:
        """Replace the stop-loss and/or take-profit on an open trade.

        Returns the raw OANDA response dict.
        """
        instrument = self._config.trade_pair
        body: dict = {}
        if stop_loss is not None:
            body["stopLoss"] = {"price": _format_price(instrument, stop_loss)}
        if take_profit is not None:
            body["takeProfit"] = {"price": _format_price(instrument, take_profit)}
        if not body:
            raise ValueError("modify_trade needs a stop_loss or take_profit")

        resp = await self._request_with_retry(
            "put", f"{self._account_url}/trades/{trade_id}/orders", json=body,
        )
        return resp.json()

    async def close_trade_partial(self, trade_id: str, units: int) -> PartialClose:
        """Close *units* of an open trade and report the realized P&L."""
        resp = await self._request_with_retry(
            "put",
            f"{self._account_url}/trades/{trade_id}/close",
            json={"units": str(int(units))},
        )

        fill = resp.json().get("orderFillTransaction")
        if not fill:
            return PartialClose(success=False)
        return PartialClose(
            success=True,
            units_closed=abs(float(fill.get("units", units))),
            realized_pnl=float(fill.get("pl", "0")),
            price=float(fill["price"]) if "price" in fill else None,
        )
