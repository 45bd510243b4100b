from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

import requests

LOGGER = logging.getLogger(__name__)

APP_NAME = "dcabot"


class Notifier(Protocol):
    def order_passed(self, *, quantity: int, symbol: str, side: str) -> None:
        ...


@dataclass(slots=True)
class NotifierConfig:
    enabled: bool = True
    discord_webhook: str | None = None
    telegram_bot_token: str | None = None
    telegram_chat_id: str | None = None


def order_message(*, quantity: int, symbol: str, side: str) -> str:
    verb = "sold" if side.lower() == "sell" else "bought"
    return f"{quantity} {symbol} were {verb}"


class OrderNotifier:
    """Logs every passed order and mirrors it to Discord/Telegram when configured."""

    def __init__(self, config: NotifierConfig):
        self.config = config

    def order_passed(self, *, quantity: int, symbol: str, side: str) -> None:
        text = order_message(quantity=quantity, symbol=symbol, side=side)
        LOGGER.info("[%s] %s", APP_NAME, text)
        if not self.config.enabled:
            return
        self._send_discord(f"[{APP_NAME}] {text}")
        self._send_telegram(f"[{APP_NAME}] {text}")

    def _send_discord(self, text: str) -> None:
        webhook = (self.config.discord_webhook or "").strip()
        if not webhook:
            return
        try:
            response = requests.post(webhook, json={"content": text}, timeout=10)
            response.raise_for_status()
        except requests.RequestException as exc:
            LOGGER.warning("Discord notification failed: %s", exc)

    def _send_telegram(self, text: str) -> None:
        bot_token = (self.config.telegram_bot_token or "").strip()
        chat_id = (self.config.telegram_chat_id or "").strip()
        if not bot_token or not chat_id:
            return
        url = f"https://api.telegram.org/bot{bot_token}/sendMessage"
        try:
            response = requests.post(url, json={"chat_id": chat_id, "text": text}, timeout=10)
            response.raise_for_status()
        except requests.RequestException as exc:
            LOGGER.warning("Telegram notification failed: %s", exc)
