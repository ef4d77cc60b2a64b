"""Alert delivery through the Telegram Bot API."""

import asyncio
import logging

import requests

logger = logging.getLogger(__name__)

TELEGRAM_MAX_LENGTH = 4096


class NotifyError(Exception):
    """Raised when a message could not be delivered."""


class TelegramNotifier:
    """Sends plain-text messages to a chat via ``sendMessage``."""

    def __init__(self, token: str, api_url: str = "https://api.telegram.org", timeout_s: float = 10.0) -> None:
        self._endpoint = f"{api_url.rstrip('/')}/bot{token}/sendMessage"
        self._timeout_s = timeout_s

    async def notify(self, external_user_id: int, text: str) -> None:
        logger.info("telegram_notify_send", extra={"external_user_id": external_user_id})
        await asyncio.to_thread(self._send, external_user_id, text[:TELEGRAM_MAX_LENGTH])

    def _send(self, chat_id: int, text: str) -> None:
        try:
            response = requests.post(
                self._endpoint,
                data={"chat_id": chat_id, "text": text},
                timeout=self._timeout_s,
            )
        except requests.RequestException as exc:
            raise NotifyError(f"telegram request failed: {exc}") from exc

        try:
            ok = response.ok and bool(response.json().get("ok", False))
        except ValueError:
            ok = False
        if not ok:
            raise NotifyError(f"telegram rejected message: status={response.status_code} body={response.text[:200]}")


class LogNotifier:
    """Writes alerts to the log instead of delivering them."""

    async def notify(self, external_user_id: int, text: str) -> None:
        logger.info("alert_notification", extra={"external_user_id": external_user_id, "text": text})
