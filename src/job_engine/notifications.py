"""
Run notifications.

A notifier is any async callable taking a notification dict. The default
posts it as JSON to a webhook (a mail relay, chat integration or similar)
that fans it out to the schedule's recipients.
"""

from typing import Any, Awaitable, Callable, Dict, Optional
import logging

import httpx

from .settings import settings

logger = logging.getLogger(__name__)

Notifier = Callable[[Dict[str, Any]], Awaitable[Any]]


class WebhookNotifier:
    """POST notifications to a fixed URL; non-2xx replies raise ``httpx.HTTPStatusError``."""

    def __init__(self, url: str, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.timeout = timeout
        self._client = client

    async def __call__(self, notification: Dict[str, Any]) -> None:
        if self._client is not None:
            response = await self._client.post(self.url, json=notification, timeout=self.timeout)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, json=notification)
        response.raise_for_status()
        logger.debug(f"Webhook accepted {notification.get('event')} for {len(notification.get('recipients', []))} recipient(s)")


def build_default_notifier(url: Optional[str] = None, timeout: Optional[float] = None) -> Optional[WebhookNotifier]:
    """A ``WebhookNotifier`` for the configured URL, or None when notifications are off."""
    url = settings.alert_webhook_url if url is None else url
    if not url:
        return None
    return WebhookNotifier(url, timeout=timeout or settings.alert_webhook_timeout)
