"""Webhook implementation of the NotificationChannel protocol."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from tasker.config import settings

logger = logging.getLogger(__name__)


class WebhookChannel:
    """Posts notifications as JSON to a fixed URL.

    Args:
        url: Target URL (default ``settings.notification_webhook_url``).
        transport: Optional httpx transport, mainly for tests.
    """

    def __init__(
        self,
        url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url or settings.notification_webhook_url
        self._transport = transport

    @property
    def name(self) -> str:
        return "webhook"

    async def send(
        self,
        user_id: str,
        message: str,
        *,
        data: dict[str, Any] | None = None,
    ) -> bool:
        """POST ``{"user_id", "message", "data"}`` to the configured URL."""
        if not self._url:
            logger.warning("WebhookChannel has no URL configured")
            return False
        body = {"user_id": user_id, "message": message, "data": data or {}}
        try:
            async with httpx.AsyncClient(
                timeout=settings.http_timeout_seconds, transport=self._transport
            ) as client:
                resp = await client.post(self._url, json=body)
            resp.raise_for_status()
            return True
        except httpx.HTTPError:
            logger.exception("WebhookChannel.send failed for user_id=%s", user_id)
            return False
