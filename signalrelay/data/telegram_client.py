"""
Telegram Bot API transport.

Every call runs under an explicit httpx timeout so a stalled API cannot
stall the consumer. Sends are never retried here.
"""

from typing import Any, Dict, Optional, Protocol

import httpx
import structlog

from signalrelay.core.config import TelegramConfig
from signalrelay.core.exceptions import ConfigurationError, TransportError

logger = structlog.get_logger(__name__)


class Transport(Protocol):
    """Outbound messaging client used by the consumer."""

    def send(self, destination: str, text: str, **options: Any) -> Dict[str, Any]:
        """Deliver ``text`` and return at least ``{"message_id": ...}``."""
        ...


class TelegramTransport:
    """Telegram Bot API client with structured error handling."""

    def __init__(self, config: TelegramConfig, client: Optional[httpx.Client] = None):
        if not config.bot_token:
            raise ConfigurationError("BOT_TOKEN is required for Telegram delivery")

        self.config = config
        self.base_url = f"{config.api_base.rstrip('/')}/bot{config.bot_token}"
        self._owns_client = client is None
        self.client = client or httpx.Client(timeout=httpx.Timeout(config.timeout_seconds))

        logger.info(
            "Telegram transport initialized",
            timeout_seconds=config.timeout_seconds,
            parse_mode=config.parse_mode,
        )

    def close(self) -> None:
        """Close the HTTP client if this transport created it."""
        if getattr(self, "_owns_client", False):
            self.client.close()

    def __del__(self):
        self.close()

    def _call(self, method: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Invoke a Bot API method.

        Raises:
            TransportError: On timeout, network error, HTTP error or ``ok: false``
        """
        try:
            response = self.client.post(f"{self.base_url}/{method}", json=payload or {})
        except httpx.TimeoutException as e:
            logger.warning("Telegram request timed out", method=method, error=str(e))
            raise TransportError(
                f"Telegram {method} timed out after {self.config.timeout_seconds}s",
                details={"method": method},
            )
        except httpx.HTTPError as e:
            logger.warning(
                "Telegram request failed", method=method, error=str(e), error_type=type(e).__name__
            )
            raise TransportError(f"Telegram {method} failed: {e}", details={"method": method})

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400 or not body.get("ok", False):
            description = body.get("description") or response.text[:200]
            logger.warning(
                "Telegram API error",
                method=method,
                status_code=response.status_code,
                description=description,
            )
            raise TransportError(
                f"Telegram {method} rejected: {description}",
                status_code=response.status_code,
                details={"method": method, "error_code": body.get("error_code")},
            )

        return body.get("result") or {}

    def send(self, destination: str, text: str, **options: Any) -> Dict[str, Any]:
        """Send a message to a chat or channel."""
        payload = {
            "chat_id": destination,
            "text": text,
            "parse_mode": options.get("parse_mode", self.config.parse_mode),
            "disable_web_page_preview": options.get("disable_web_page_preview", True),
        }
        result = self._call("sendMessage", payload)
        message_id = result.get("message_id")

        logger.info("Telegram message sent", chat_id=destination, message_id=message_id)
        return {"message_id": message_id, "chat_id": destination}

    def health_check(self) -> Dict[str, Any]:
        result = self._call("getMe")
        return {"status": "healthy", "bot_username": result.get("username")}
