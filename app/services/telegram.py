"""Telegram Bot API calls. Delivery failures are logged and reported as None, never raised."""

from typing import Any

import httpx

from app.core.config import get_settings
from app.core.logging import get_logger

log = get_logger(__name__)


class TelegramBot:
    def __init__(self, token: str | None = None, client: httpx.AsyncClient | None = None) -> None:
        s = get_settings()
        self.token = token if token is not None else s.telegram_bot_token
        self.base_url = f"{s.telegram_api_url.rstrip('/')}/bot{self.token}"
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(10.0))

    async def call(self, method: str, payload: dict[str, Any]) -> dict[str, Any] | None:
        if not self.token:
            log.warning("telegram_not_configured", method=method)
            return None
        try:
            res = await self._client.post(f"{self.base_url}/{method}", json=payload)
            data = res.json()
        except (httpx.HTTPError, ValueError) as e:
            log.warning("telegram_call_failed", method=method, error=str(e))
            return None
        if not data.get("ok"):
            log.warning("telegram_call_rejected", method=method, description=data.get("description"))
            return None
        return data.get("result")

    async def send_message(self, chat_id: str | int, text: str, reply_markup: dict | None = None) -> dict | None:
        payload: dict[str, Any] = {"chat_id": chat_id, "text": text, "parse_mode": "HTML"}
        if reply_markup:
            payload["reply_markup"] = reply_markup
        return await self.call("sendMessage", payload)

    async def send_photo(self, chat_id: str | int, photo: str, caption: str = "", reply_markup: dict | None = None) -> dict | None:
        payload: dict[str, Any] = {"chat_id": chat_id, "photo": photo, "caption": caption, "parse_mode": "HTML"}
        if reply_markup:
            payload["reply_markup"] = reply_markup
        return await self.call("sendPhoto", payload)

    async def answer_callback_query(self, callback_query_id: str, text: str | None = None, show_alert: bool = False) -> dict | None:
        payload: dict[str, Any] = {"callback_query_id": callback_query_id}
        if text:
            payload["text"] = text
            payload["show_alert"] = show_alert
        return await self.call("answerCallbackQuery", payload)

    async def delete_message(self, chat_id: str | int, message_id: int) -> dict | None:
        return await self.call("deleteMessage", {"chat_id": chat_id, "message_id": message_id})

    async def close(self) -> None:
        await self._client.aclose()


_bot: TelegramBot | None = None


def get_bot() -> TelegramBot:
    global _bot
    if _bot is None:
        _bot = TelegramBot()
    return _bot
