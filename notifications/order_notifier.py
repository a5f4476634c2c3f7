"""
Telegram notification sink for order status transitions.

The OrderMonitor calls ``TelegramOrderNotifier.on_status_change`` once per
detected transition; the owner's Telegram chat id doubles as the order's
``owner_id``.  Delivery is best-effort: failures are logged and never
raised back into the monitor.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

import httpx

from models.order import StatusRecord

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"

_STATUS_EMOJI = {
    "waiting": "⏳",
    "pending": "⏳",
    "processing": "⚙️",
    "settling": "📤",
    "settled": "✅",
    "refunded": "↩️",
    "expired": "⏰",
    "failed": "❌",
}


def format_status_message(
    order_id: str,
    old_status: str,
    new_status: str,
    details: StatusRecord,
) -> str:
    """Build the Markdown body of a status-update message."""
    emoji = _STATUS_EMOJI.get(new_status, "🔔")
    lines = [
        f"{emoji} *Order Status Update*",
        "",
        f"*Order:* `{order_id}`",
        f"*Status:* {old_status} → *{new_status.upper()}*",
    ]
    if details.deposit_amount:
        lines.append(f"*Sent:* {details.deposit_amount} {details.deposit_coin or ''}".rstrip())
    if details.settle_amount:
        lines.append(f"*Received:* {details.settle_amount} {details.settle_coin or ''}".rstrip())
    if details.settle_hash:
        lines.append(f"*Tx:* `{details.settle_hash[:16]}...`")
    return "\n".join(lines) + "\n"


class TelegramOrderNotifier:
    """Sends order status updates to the owning Telegram chat."""

    def __init__(
        self,
        *,
        bot_token: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 5.0,
    ) -> None:
        self.bot_token = (
            bot_token
            if bot_token is not None
            else os.getenv("TELEGRAM_BOT_TOKEN", "") or os.getenv("BOT_TOKEN", "")
        ).strip()
        self.timeout = timeout
        self._client = client

    async def on_status_change(
        self,
        owner_id: int,
        order_id: str,
        old_status: str,
        new_status: str,
        details: StatusRecord,
    ) -> bool:
        """Status-change callback for :class:`core.order_monitor.OrderMonitor`."""
        message = format_status_message(order_id, old_status, new_status, details)
        return await self.send_message(owner_id, message)

    async def send_message(self, chat_id: int, text: str, parse_mode: Optional[str] = "Markdown") -> bool:
        """Send *text* to *chat_id* via the Bot API. Returns True on success."""
        if not self.bot_token:
            logger.warning("TELEGRAM_BOT_TOKEN not configured; dropping message for chat %s", chat_id)
            return False

        url = f"{TELEGRAM_API_URL}/bot{self.bot_token}/sendMessage"
        payload: dict[str, object] = {"chat_id": chat_id, "text": text}
        if parse_mode:
            payload["parse_mode"] = parse_mode

        try:
            if self._client is not None:
                response = await self._client.post(url, json=payload, timeout=self.timeout)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(url, json=payload, timeout=self.timeout)
        except httpx.HTTPError as e:
            logger.error("Telegram send error for chat %s: %s %s", chat_id, type(e).__name__, str(e)[:200])
            return False

        if response.status_code == 200:
            logger.info("Telegram status update sent to chat %s", chat_id)
            return True
        logger.error(
            "Telegram send failed for chat %s: %s %s",
            chat_id,
            response.status_code,
            response.text[:200],
        )
        return False

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
