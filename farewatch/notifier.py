from __future__ import annotations

import asyncio
import logging
from typing import Optional

from telegram import Bot
from telegram.error import TelegramError

from .models import Offer, Owner, Watch

logger = logging.getLogger(__name__)


def format_alert(offer: Offer, watch: Watch) -> str:
    dates = offer.departure_at.date().isoformat()
    if offer.return_date:
        dates += f" – {offer.return_date.isoformat()}"
    stops = "direct" if offer.is_direct else f"{offer.number_of_stops} stop(s)"
    return (
        f"✈️ {watch.name}\n"
        f"{offer.origin} ➔ {offer.destination}\n"
        f"{dates} · {stops}\n"
        f"{offer.price.amount:.2f} {offer.price.currency} "
        f"(threshold {watch.price_threshold:.2f})\n"
        f"{offer.booking_url}"
    )


def format_status(stats: dict, summary: Optional[list] = None) -> str:
    lines = [
        "📊 Monitoring report",
        f"Active watches: {stats.get('active_watches', 0)}",
        f"Checks: {stats.get('checks_today', 0)}",
        f"Alerts: {stats.get('alerts_today', 0)}",
        f"Offers stored (24h): {stats.get('offers_found', 0)}",
        f"Errors: {stats.get('errors_today', 0)}",
    ]
    for row in summary or []:
        lines.append(
            f"{row['origin']} ➔ {row['destination']}: "
            f"min {row['min_price']:.0f} / avg {row['mean_price']:.0f}"
        )
    return "\n".join(lines)


class TelegramNotifier:
    """Deliver alerts to an owner's Telegram chat."""

    def __init__(self, token: Optional[str], admin_chat_id: Optional[str] = None):
        self.token = token
        self.admin_chat_id = admin_chat_id
        if not token:
            logger.warning("TELEGRAM_BOT_TOKEN not set, alerts will not be sent")

    async def _send(self, chat_id: str, text: str) -> None:
        async with Bot(token=self.token) as bot:
            await bot.send_message(chat_id=chat_id, text=text)

    def send_message(self, chat_id: Optional[str], text: str) -> bool:
        if not self.token or not chat_id:
            return False
        try:
            asyncio.run(self._send(chat_id, text))
        except TelegramError as exc:
            logger.warning("Telegram delivery to %s failed: %s", chat_id, exc)
            return False
        return True

    def deliver(self, offer: Offer, watch: Watch, owner: Owner) -> bool:
        """Return ``True`` once Telegram accepted the alert."""
        sent = self.send_message(owner.chat_id, format_alert(offer, watch))
        if sent:
            logger.info(
                "Alert sent to %s: %s ➔ %s %.2f %s",
                owner.id,
                offer.origin,
                offer.destination,
                offer.price.amount,
                offer.price.currency,
            )
        return sent

    def send_status(self, stats: dict, summary: Optional[list] = None) -> bool:
        return self.send_message(self.admin_chat_id, format_status(stats, summary))


__all__ = ["TelegramNotifier", "format_alert", "format_status"]
