"""CallMeBot relays — query-parameter HTTP API for handle and phone alerts.

- HandleRelay: GET {base}/text.php?user=<handle>&text=<msg>
  (recipient must have authorised the relay bot)
- PhoneRelay: GET {base}/whatsapp.php?phone=<digits>&text=<msg>&apikey=<key>
  (recipient obtains a per-number API key)

The API answers with plain text; it is parsed loosely since delivery is
never guaranteed anyway. API keys are never logged.
"""

from __future__ import annotations

import logging

import httpx

from safetrack.channels.protocol import NotificationMessage, SendResult
from safetrack.config import settings
from safetrack.contacts import clean_phone

logger = logging.getLogger(__name__)


class _CallMeBotRelay:
    endpoint = ""

    def __init__(
        self,
        channel_id: str,
        base_url: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ):
        self._channel_id = channel_id
        self._base_url = (base_url or settings.relay_base_url).rstrip("/")
        self._client = client
        self._timeout = settings.relay_timeout_seconds if timeout is None else timeout

    @property
    def channel_id(self) -> str:
        return self._channel_id

    @property
    def is_configured(self) -> bool:
        return bool(self._base_url)

    async def _get(self, params: dict[str, str]) -> httpx.Response:
        url = f"{self._base_url}/{self.endpoint}"
        if self._client is not None:
            return await self._client.get(url, params=params, timeout=self._timeout)
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await client.get(url, params=params)


class HandleRelay(_CallMeBotRelay):
    """Handle-based relay (Telegram ``@user``)."""

    endpoint = "text.php"

    def __init__(self, channel_id: str = "callmebot-handle", **kwargs):
        super().__init__(channel_id, **kwargs)

    @property
    def channel_type(self) -> str:
        return "handle"

    async def send(self, recipient: str, message: NotificationMessage) -> SendResult:
        user = recipient[1:] if recipient.startswith("@") else recipient
        logger.info("Sending handle alert to @%s", user)
        try:
            resp = await self._get({"user": user, "text": message.body})
        except httpx.HTTPError as e:
            logger.warning("Handle relay request failed for @%s: %s", user, e)
            return SendResult(success=False, channel_id=self._channel_id, recipient=recipient, error=str(e))

        text = resp.text
        if resp.is_success and "sent to" in text.lower():
            return SendResult(success=True, channel_id=self._channel_id, recipient=recipient, response_text=text)
        logger.warning("Handle relay rejected @%s (HTTP %d): %s", user, resp.status_code, text[:200])
        return SendResult(
            success=False,
            channel_id=self._channel_id,
            recipient=recipient,
            error=f"Unexpected relay response (HTTP {resp.status_code})",
            response_text=text,
        )


class PhoneRelay(_CallMeBotRelay):
    """Phone-based relay (WhatsApp) for a single opted-in number."""

    endpoint = "whatsapp.php"

    def __init__(self, api_key: str, channel_id: str = "callmebot-phone", **kwargs):
        super().__init__(channel_id, **kwargs)
        self._api_key = api_key

    @property
    def channel_type(self) -> str:
        return "phone"

    @property
    def is_configured(self) -> bool:
        return bool(self._base_url and self._api_key)

    async def send(self, recipient: str, message: NotificationMessage) -> SendResult:
        phone = clean_phone(recipient)
        if not self.is_configured:
            return SendResult(
                success=False,
                channel_id=self._channel_id,
                recipient=recipient,
                error="Phone relay API key not configured",
            )
        logger.info("Sending phone alert to %s", phone)
        try:
            resp = await self._get({"phone": phone, "text": message.body, "apikey": self._api_key})
        except httpx.HTTPError as e:
            # The request URL carries the API key, so only the error type is kept
            logger.warning("Phone relay request failed for %s: %s", phone, type(e).__name__)
            return SendResult(
                success=False, channel_id=self._channel_id, recipient=recipient, error=type(e).__name__
            )

        text = resp.text
        if resp.is_success and "error" not in text.lower():
            return SendResult(success=True, channel_id=self._channel_id, recipient=recipient, response_text=text)
        logger.warning("Phone relay rejected %s (HTTP %d)", phone, resp.status_code)
        return SendResult(
            success=False,
            channel_id=self._channel_id,
            recipient=recipient,
            error=f"Unexpected relay response (HTTP {resp.status_code})",
            response_text=text,
        )
