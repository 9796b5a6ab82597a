"""Telegram notifier — fire-and-forget trade and error messages.

Delivery failures are logged and swallowed; a notification must never
interrupt trading.
"""

import html
import logging
from typing import Optional

import httpx

from breakoutbot.config import Config

logger = logging.getLogger("breakoutbot.notify")

_API_URL = "https://api.telegram.org/bot{token}/sendMessage"


class TelegramNotifier:
    """Send HTML-formatted messages to one or more Telegram chats.

    Args:
        config: Supplies ``enable_telegram``, the bot token and chat ids.
    """

    def __init__(self, config: Config) -> None:
        self._enabled = config.enable_telegram and bool(config.telegram_bot_token)
        self._url = _API_URL.format(token=config.telegram_bot_token)
        self._chat_ids = config.telegram_chat_ids
        self._pair = config.trade_pair

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def notify(self, message: str) -> bool:
        """Deliver *message* to every configured chat.

        Returns ``True`` if at least one chat accepted it.  Never raises.
        """
        if not self._enabled:
            logger.debug("Telegram disabled, not sending: %s", message)
            return False

        delivered = False
        for chat_id in self._chat_ids:
            try:
                async with httpx.AsyncClient() as client:
                    resp = await client.post(
                        self._url,
                        json={"chat_id": chat_id, "text": message, "parse_mode": "HTML"},
                        timeout=10.0,
                    )
                resp.raise_for_status()
                delivered = True
            except Exception as exc:
                logger.warning("Telegram delivery to %s failed: %s", chat_id, exc)
        return delivered

    # ── Message builders ─────────────────────────────────────────────────

    async def trade_opened(
        self,
        direction: str,
        entry_price: float,
        units: float,
        stop_loss: float,
        take_profit: Optional[float],
        source: str,
        confidence: float,
        reason: str,
    ) -> bool:
        tp_line = f"TP: {take_profit:.2f}" if take_profit is not None else "TP: trailing only"
        return await self.notify(
            f"<b>Trade opened: {direction.upper()} {self._pair}</b>\n"
            f"Entry: {entry_price:.2f}\nUnits: {abs(units):g}\n"
            f"SL: {stop_loss:.2f}\n{tp_line}\n"
            f"Source: {source} ({confidence:.0f}%)\n"
            f"{html.escape(reason)}"
        )

    async def tp1_partial(
        self,
        units_closed: float,
        realized_pnl: float,
        breakeven: float,
        tp2: Optional[float],
    ) -> bool:
        tp2_line = f"\nTP2: {tp2:.2f}" if tp2 is not None else ""
        return await self.notify(
            f"<b>TP1 hit: {self._pair}</b>\n"
            f"Closed: {units_closed:g} units\nBanked: {realized_pnl:+.2f}\n"
            f"Stop: breakeven ({breakeven:.2f}){tp2_line}"
        )

    async def trade_closed(
        self,
        trade_id: str,
        entry_price: float,
        exit_price: Optional[float],
        pnl: float,
        reason: str,
    ) -> bool:
        exit_text = f"{exit_price:.2f}" if exit_price is not None else "n/a"
        return await self.notify(
            f"<b>Trade closed: {self._pair} #{trade_id}</b>\n"
            f"Entry: {entry_price:.2f}\nExit: {exit_text}\n"
            f"P&amp;L: {pnl:+.2f}\nReason: {html.escape(reason)}"
        )

    async def unprotected_fill(self, trade_id: str, detail: str) -> bool:
        return await self.notify(
            f"<b>Warning: {self._pair} #{trade_id} filled without protection</b>\n"
            f"{html.escape(detail)}"
        )

    async def error(self, detail: str) -> bool:
        return await self.notify(f"<b>Error</b>\n{html.escape(detail)}")
