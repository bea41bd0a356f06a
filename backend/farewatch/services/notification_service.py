"""Notification service — delivers user notifications, fire-and-forget."""

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class NotificationService:
    """Posts notifications to a webhook when one is configured, otherwise logs them.

    Delivery failures are logged and never retried or raised.
    """

    def __init__(self, webhook_url: str = "", timeout: float = 10.0):
        self._webhook_url = webhook_url
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(cls, settings) -> "NotificationService":
        return cls(settings.notification_webhook_url)

    async def create(self, user_id: str, payload: dict[str, Any]) -> None:
        if not self._webhook_url:
            logger.info(f"Notification for {user_id}: {payload.get('title')}: {payload.get('message')}")
            return

        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        try:
            resp = await self._client.post(self._webhook_url, json={"user_id": user_id, **payload})
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Notification delivery to {user_id} failed: {e}")

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None
