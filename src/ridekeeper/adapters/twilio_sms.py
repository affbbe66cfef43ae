"""SMS transports: Twilio for real sends, a logging stand-in for test mode."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Protocol

from ridekeeper.logging import mask_phone

__all__ = ["LoggingTransport", "MessageTransport", "SendReceipt", "TwilioSmsTransport"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SendReceipt:
    """Outcome of a send attempt."""

    accepted: bool
    provider_message_id: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"accepted": self.accepted}
        if self.provider_message_id:
            d["provider_message_id"] = self.provider_message_id
        if self.error:
            d["error"] = self.error
        return d


class MessageTransport(Protocol):
    async def send(self, to: str, body: str, correlation_id: str) -> SendReceipt:
        """Hand one SMS to the gateway. Never raises for gateway rejections."""
        ...


class TwilioSmsTransport:
    """Twilio REST transport.

    Built only when Twilio credentials are configured and test mode is
    off. The Twilio client is synchronous, so sends run in a worker thread.
    """

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        status_callback_url: str = "",
    ) -> None:
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._from_number = from_number
        self._status_callback = status_callback_url or None
        self._client: Any = None

    def _get_client(self) -> Any:
        if self._client is None:
            from twilio.rest import Client  # type: ignore[import-untyped]

            self._client = Client(self._account_sid, self._auth_token)
        return self._client

    def _create(self, to: str, body: str) -> Any:
        kwargs: dict[str, Any] = {"body": body, "from_": self._from_number, "to": to}
        if self._status_callback:
            kwargs["status_callback"] = self._status_callback
        return self._get_client().messages.create(**kwargs)

    async def send(self, to: str, body: str, correlation_id: str) -> SendReceipt:
        if not to or not body:
            return SendReceipt(accepted=False, error="recipient and body are required")

        try:
            message = await asyncio.to_thread(self._create, to, body)
        except Exception as exc:
            logger.error("Twilio send failed: %s (ref=%s)", exc, correlation_id)
            return SendReceipt(accepted=False, error=str(exc)[:200])

        logger.info(
            "SMS sent: sid=%s to=%s ref=%s",
            message.sid,
            mask_phone(to),
            correlation_id,
        )
        return SendReceipt(accepted=True, provider_message_id=str(message.sid))


class LoggingTransport:
    """Test-mode transport: logs the message and reports a synthetic id."""

    async def send(self, to: str, body: str, correlation_id: str) -> SendReceipt:
        if not to or not body:
            return SendReceipt(accepted=False, error="recipient and body are required")
        sid = f"TEST_{uuid.uuid4().hex[:16]}"
        logger.info("[TEST MODE] SMS to %s (ref=%s): %s", mask_phone(to), correlation_id, body)
        return SendReceipt(accepted=True, provider_message_id=sid)
