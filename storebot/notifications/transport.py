"""
Chat transport adapter.

The engine only needs to send a text message with optional inline
keyboard to a chat id; everything else about the chat platform stays
outside. BotApiSender talks to the Telegram Bot API over httpx.
"""
from typing import Any, Dict, Optional, Protocol

import httpx
import structlog
from pydantic import BaseModel

from storebot.config import Settings, get_settings
from storebot.core.errors import TransientDeliveryFailure

logger = structlog.get_logger(__name__)


class SentMessage(BaseModel):
    """Message accepted by the chat platform."""

    chat_id: int
    message_id: int


class MessageSender(Protocol):
    """Anything that can deliver a chat message."""

    async def send_message(
        self,
        chat_id: int,
        text: str,
        *,
        parse_mode: Optional[str] = None,
        reply_markup: Optional[Dict[str, Any]] = None,
    ) -> SentMessage:
        ...


class BotApiSender:
    """MessageSender backed by the Bot API sendMessage method."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        """
        Initialize sender.

        Args:
            settings: Optional settings override (bot token and API base URL)
            client: Optional httpx client (one is created lazily otherwise)
            timeout: HTTP timeout in seconds
        """
        self.settings = settings or get_settings()
        self._client = client
        self.timeout = timeout

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    @property
    def _send_url(self) -> str:
        if not self.settings.bot_token:
            raise TransientDeliveryFailure("Bot token is not configured")
        return f"{self.settings.bot_api_base_url}/bot{self.settings.bot_token}/sendMessage"

    async def send_message(
        self,
        chat_id: int,
        text: str,
        *,
        parse_mode: Optional[str] = None,
        reply_markup: Optional[Dict[str, Any]] = None,
    ) -> SentMessage:
        """
        Send a text message.

        Raises:
            TransientDeliveryFailure: On network errors, HTTP errors or an
                API response with ok=false
        """
        payload: Dict[str, Any] = {"chat_id": chat_id, "text": text}
        if parse_mode:
            payload["parse_mode"] = parse_mode
        if reply_markup:
            payload["reply_markup"] = reply_markup

        try:
            response = await self._ensure_client().post(self._send_url, json=payload)
            result = response.json()
        except httpx.TimeoutException as e:
            raise TransientDeliveryFailure(f"sendMessage timed out for chat {chat_id}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise TransientDeliveryFailure(f"sendMessage failed for chat {chat_id}: {e}") from e

        if not result.get("ok"):
            description = result.get("description") or f"HTTP {response.status_code}"
            logger.warning(
                "bot_api_rejected_message",
                chat_id=chat_id,
                status_code=response.status_code,
                description=description,
            )
            raise TransientDeliveryFailure(f"sendMessage rejected: {description}")

        message_id = result["result"]["message_id"]
        logger.debug("bot_api_message_sent", chat_id=chat_id, message_id=message_id)
        return SentMessage(chat_id=chat_id, message_id=message_id)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
