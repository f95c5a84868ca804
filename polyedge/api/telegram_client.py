"""Client for the Telegram Bot API (alerts out, commands in)."""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from polyedge.config import (
    HTTP_TIMEOUT,
    TELEGRAM_API_URL,
    TELEGRAM_BOT_TOKEN,
    TELEGRAM_CHAT_ID,
    TELEGRAM_LONG_POLL,
)

logger = logging.getLogger(__name__)


class TelegramClient:
    """Send HTML messages to one chat and long-poll for its updates.

    Every method is a no-op when the bot token or chat ID is missing, so
    the engine runs unchanged without a notification channel.
    """

    def __init__(
        self,
        token: str = TELEGRAM_BOT_TOKEN,
        chat_id: str = TELEGRAM_CHAT_ID,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.chat_id = str(chat_id)
        self._enabled = bool(token and chat_id)
        self._client = client or httpx.AsyncClient(
            base_url=f"{TELEGRAM_API_URL}/bot{token}",
            timeout=HTTP_TIMEOUT + TELEGRAM_LONG_POLL,
        )

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def close(self) -> None:
        await self._client.aclose()

    async def _post(self, method: str, payload: dict[str, Any]) -> Optional[dict]:
        if not self._enabled:
            return None
        try:
            resp = await self._client.post(f"/{method}", json=payload)
            resp.raise_for_status()
            return resp.json()
        except Exception:
            logger.warning("telegram_error", extra={"method": method}, exc_info=True)
            return None

    async def send_message(
        self, text: str, reply_markup: Optional[dict] = None
    ) -> Optional[int]:
        """Send a message; returns its message ID when delivered."""
        payload: dict[str, Any] = {
            "chat_id": self.chat_id,
            "text": text,
            "parse_mode": "HTML",
        }
        if reply_markup:
            payload["reply_markup"] = reply_markup
        body = await self._post("sendMessage", payload)
        if not body:
            return None
        return (body.get("result") or {}).get("message_id")

    async def edit_message(
        self, message_id: int, text: str, reply_markup: Optional[dict] = None
    ) -> None:
        payload: dict[str, Any] = {
            "chat_id": self.chat_id,
            "message_id": message_id,
            "text": text,
            "parse_mode": "HTML",
        }
        if reply_markup:
            payload["reply_markup"] = reply_markup
        await self._post("editMessageText", payload)

    async def answer_callback(self, callback_id: str, text: str = "") -> None:
        await self._post(
            "answerCallbackQuery",
            {"callback_query_id": callback_id, "text": text, "show_alert": False},
        )

    async def get_updates(self, offset: int) -> list[dict]:
        """Long-poll for updates after ``offset``."""
        if not self._enabled:
            return []
        try:
            resp = await self._client.get(
                "/getUpdates",
                params={
                    "offset": offset,
                    "timeout": TELEGRAM_LONG_POLL,
                    "allowed_updates": '["message","callback_query"]',
                },
            )
            resp.raise_for_status()
            return resp.json().get("result") or []
        except Exception:
            logger.warning("telegram_get_updates_error", exc_info=True)
            return []
