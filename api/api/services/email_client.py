"""Transactional email client for billing notices.

Sends HTML emails through the Resend HTTP API (``POST /emails`` with a
bearer API key).

INVARIANT: Sending never raises.  Every outcome, including transport
errors and non-2xx responses, is logged and returned as a
:class:`DeliveryResult` so one bad address cannot abort a batch run.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from enum import Enum
from typing import Any

import httpx
from pydantic import BaseModel

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT_SECONDS = 10.0


class DeliveryStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


class DeliveryResult(BaseModel):
    """Outcome of one send attempt.

    *recipient* is the comma-joined address list of the send.
    """

    recipient: str
    status: DeliveryStatus
    status_code: int | None = None
    message_id: str | None = None
    error: str | None = None

    @property
    def delivered(self) -> bool:
        return self.status == DeliveryStatus.SENT


class EmailClient:
    """Async client for the transactional email provider.

    Parameters
    ----------
    api_key:
        Provider API key.  When empty, every send is reported as
        ``skipped`` without touching the network.
    sender:
        ``From`` header, e.g. ``"LaundryFlow <notificaciones@laundryflow.com>"``.
    base_url:
        Provider API root.
    timeout:
        Per-request timeout in seconds.
    http_client:
        Optional ``httpx.AsyncClient`` for testing.  A default client is
        created if not provided.
    """

    def __init__(
        self,
        api_key: str,
        sender: str,
        base_url: str = "https://api.resend.com",
        timeout: float = _DEFAULT_TIMEOUT_SECONDS,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._sender = sender
        self._base_url = base_url.rstrip("/")
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    async def close(self) -> None:
        """Close the HTTP client if we own it."""
        if self._owns_client:
            await self._client.aclose()

    async def send(self, to: str | Sequence[str], subject: str, html: str) -> DeliveryResult:
        """Send one HTML email addressed to every address in *to*.  Never raises."""
        addresses = [to] if isinstance(to, str) else list(to)
        recipient = ", ".join(addresses)
        if not self.is_configured:
            logger.info("Email provider not configured; skipping send to %s (%s)", recipient, subject)
            return DeliveryResult(recipient=recipient, status=DeliveryStatus.SKIPPED, error="email provider not configured")

        payload: dict[str, Any] = {
            "from": self._sender,
            "to": addresses,
            "subject": subject,
            "html": html,
        }
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

        try:
            response = await self._client.post(f"{self._base_url}/emails", json=payload, headers=headers)
        except httpx.TimeoutException:
            logger.warning("Email send timed out: to=%s subject=%s", recipient, subject)
            return DeliveryResult(recipient=recipient, status=DeliveryStatus.FAILED, error="timeout")
        except httpx.RequestError as exc:
            logger.warning("Email send error: to=%s error=%s", recipient, exc)
            return DeliveryResult(recipient=recipient, status=DeliveryStatus.FAILED, error=str(exc))

        if 200 <= response.status_code < 300:
            message_id = None
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                message_id = body.get("id")
            logger.info("Email sent: to=%s status=%d id=%s", recipient, response.status_code, message_id)
            return DeliveryResult(
                recipient=recipient,
                status=DeliveryStatus.SENT,
                status_code=response.status_code,
                message_id=message_id,
            )

        logger.warning(
            "Email provider rejected send: to=%s status=%d body=%s",
            recipient,
            response.status_code,
            response.text[:200],
        )
        return DeliveryResult(
            recipient=recipient,
            status=DeliveryStatus.FAILED,
            status_code=response.status_code,
            error=f"HTTP {response.status_code}",
        )
