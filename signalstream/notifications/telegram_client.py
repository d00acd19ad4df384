"""
Telegram Bot API gateway.

Thin aiohttp client for the channel the engine publishes to. Every call
returns the resulting message id (True for edits) or None; failures are
logged and never raised, so Telegram trouble cannot break position
processing.
"""
import asyncio
from typing import Any, Dict, Optional

import aiohttp

from signalstream.monitoring.logger import get_logger

logger = get_logger(__name__)


class TelegramClient:
    """Publishes and edits messages in one Telegram chat."""

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        *,
        api_base_url: str = "https://api.telegram.org",
        timeout_seconds: float = 10.0,
        parse_mode: str = "HTML",
    ):
        self._bot_token = bot_token
        self._chat_id = str(chat_id)
        self._api_base_url = api_base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._parse_mode = parse_mode

    @classmethod
    def from_config(cls, telegram_config) -> Optional["TelegramClient"]:
        if not telegram_config.is_configured:
            return None
        return cls(
            telegram_config.bot_token,
            telegram_config.channel_id,
            api_base_url=telegram_config.api_base_url,
            timeout_seconds=telegram_config.timeout_seconds,
            parse_mode=telegram_config.parse_mode,
        )

    @property
    def chat_id(self) -> str:
        return self._chat_id

    async def _call(self, method: str, payload: Dict[str, Any]) -> Optional[Any]:
        url = f"{self._api_base_url}/bot{self._bot_token}/{method}"
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.post(url, json=payload) as resp:
                    body = await resp.json(content_type=None)
                    if not isinstance(body, dict):
                        body = {}
                    if resp.status != 200 or not body.get("ok"):
                        description = str(body.get("description", ""))
                        if method == "editMessageText" and "message is not modified" in description:
                            return True
                        logger.warning(
                            "TELEGRAM_CALL_FAILED",
                            method=method,
                            status=resp.status,
                            description=description[:200],
                        )
                        return None
                    return body.get("result")
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning("TELEGRAM_CALL_ERROR", method=method, error=str(e))
            return None

    @staticmethod
    def _message_id(result: Any) -> Optional[int]:
        if isinstance(result, dict) and "message_id" in result:
            return int(result["message_id"])
        return None

    async def send_message(self, text: str) -> Optional[int]:
        result = await self._call(
            "sendMessage",
            {"chat_id": self._chat_id, "text": text, "parse_mode": self._parse_mode, "disable_web_page_preview": True},
        )
        return self._message_id(result)

    async def edit_message(self, message_id: int, text: str) -> Optional[bool]:
        result = await self._call(
            "editMessageText",
            {
                "chat_id": self._chat_id,
                "message_id": message_id,
                "text": text,
                "parse_mode": self._parse_mode,
                "disable_web_page_preview": True,
            },
        )
        return True if result else None

    async def send_gif(self, gif_url: str, caption: Optional[str] = None) -> Optional[int]:
        payload: Dict[str, Any] = {"chat_id": self._chat_id, "animation": gif_url}
        if caption:
            payload["caption"] = caption
            payload["parse_mode"] = self._parse_mode
        return self._message_id(await self._call("sendAnimation", payload))

    async def send_reply(self, reply_to_message_id: int, text: str) -> Optional[int]:
        result = await self._call(
            "sendMessage",
            {
                "chat_id": self._chat_id,
                "text": text,
                "parse_mode": self._parse_mode,
                "reply_to_message_id": reply_to_message_id,
                "allow_sending_without_reply": True,
            },
        )
        return self._message_id(result)

    async def copy_message(self, message_id: int) -> Optional[int]:
        result = await self._call(
            "copyMessage",
            {"chat_id": self._chat_id, "from_chat_id": self._chat_id, "message_id": message_id},
        )
        return self._message_id(result)
