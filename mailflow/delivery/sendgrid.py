"""SendGrid v3 send gateway."""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from ..errors import SendGatewayError
from .base import SendResult

logger = logging.getLogger(__name__)


class SendGridGateway:
    """Deliver email through the SendGrid ``/v3/mail/send`` endpoint.

    Transport errors from httpx are left to propagate so the retry
    coordinator can classify them; non-2xx responses are raised as
    ``SendGatewayError`` carrying the status code and error body.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.sendgrid.com",
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        text: str,
        from_name: str,
        from_email: str,
    ) -> SendResult:
        content = []
        if text:
            content.append({"type": "text/plain", "value": text})
        content.append({"type": "text/html", "value": html})
        body = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": from_email, "name": from_name},
            "subject": subject,
            "content": content,
        }

        client = await self._get_client()
        response = await client.post(
            f"{self._base_url}/v3/mail/send",
            json=body,
            headers={"Authorization": f"Bearer {self._api_key}"},
        )
        if response.status_code >= 300:
            details: Any
            try:
                details = response.json()
            except ValueError:
                details = response.text
            raise SendGatewayError(
                f"SendGrid responded {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
                details=details,
            )

        message_id = response.headers.get("X-Message-Id", "")
        logger.debug(f"SendGrid accepted message {message_id} for {to}")
        return SendResult(message_id=message_id)
