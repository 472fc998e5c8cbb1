"""
Telegram Bot API client for outbound calls.

Thin wrapper over the Bot API HTTP methods the bot needs: sendMessage,
editMessageText, answerCallbackQuery and getFile.
"""

from typing import Optional

import httpx

from app.config import get_settings
from app.services.records import BotError

TELEGRAM_API_BASE = "https://api.telegram.org"


class TransportError(BotError):
    """Telegram rejected a call or could not be reached."""


def inline_keyboard(buttons: list[list[dict]]) -> dict:
    """
    Build reply_markup for inline buttons.

    Args:
        buttons: 2D array of button dicts, each with 'text' and 'callback_data'
                 Example: [[{"text": "▶️", "callback_data": "flight_nav_1"}]]
    """
    return {"inline_keyboard": buttons}


class TelegramTransport:
    """Outbound side of the chat transport."""

    def __init__(self, token: Optional[str] = None, client: Optional[httpx.AsyncClient] = None):
        self.token = token if token is not None else get_settings().telegram_bot_token
        self._client = client

    async def _call(self, method: str, payload: dict):
        url = f"{TELEGRAM_API_BASE}/bot{self.token}/{method}"

        try:
            if self._client is not None:
                response = await self._client.post(url, json=payload)
            else:
                async with httpx.AsyncClient(timeout=30) as client:
                    response = await client.post(url, json=payload)
        except httpx.HTTPError as e:
            raise TransportError(f"{method} failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400 or not body.get("ok", False):
            description = body.get("description") or f"HTTP {response.status_code}"
            raise TransportError(f"{method} failed: {description}")

        return body.get("result")

    async def send_message(
        self,
        chat_id: int,
        text: str,
        reply_markup: Optional[dict] = None
    ) -> int:
        """
        Send a plain-text message to a chat.

        Returns:
            message_id of the sent message
        """
        payload = {"chat_id": chat_id, "text": text}
        if reply_markup:
            payload["reply_markup"] = reply_markup

        result = await self._call("sendMessage", payload)
        return result["message_id"]

    async def edit_message(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        reply_markup: Optional[dict] = None
    ) -> None:
        """Edit an existing message. Editing to identical content is a no-op."""
        payload = {"chat_id": chat_id, "message_id": message_id, "text": text}
        if reply_markup:
            payload["reply_markup"] = reply_markup

        try:
            await self._call("editMessageText", payload)
        except TransportError as e:
            if "message is not modified" not in str(e):
                raise

    async def answer_callback(self, callback_id: str, text: Optional[str] = None) -> None:
        payload = {"callback_query_id": callback_id}
        if text:
            payload["text"] = text
        await self._call("answerCallbackQuery", payload)

    async def get_file_url(self, file_id: str) -> str:
        """Resolve a file_id to a download URL."""
        result = await self._call("getFile", {"file_id": file_id})
        return f"{TELEGRAM_API_BASE}/file/bot{self.token}/{result['file_path']}"
