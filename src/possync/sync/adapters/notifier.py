"""Notification adapters for finished sync jobs.

LoggingNotifier writes a log line and is the default. WebhookNotifier
POSTs the notification as JSON (camelCase keys) to NOTIFY_WEBHOOK_URL,
where the email / in-app notification service picks it up.
"""

import asyncio
import logging
import os

import aiohttp

from ...api.exceptions import ConnectionError, TimeoutError, UpstreamAPIError
from ..domain.entities import SyncNotification
from ..domain.ports import INotifier

logger = logging.getLogger(__name__)


class LoggingNotifier(INotifier):
    """Notifier that only logs."""

    async def notify(self, notification: SyncNotification) -> None:
        if notification.success:
            logger.info(
                f"Sync {notification.job_id} for restaurant {notification.restaurant_id} completed: "
                f"{notification.orders_imported} imported, {notification.orders_failed} failed "
                f"in {notification.duration_ms}ms"
            )
        else:
            logger.warning(
                f"Sync {notification.job_id} for restaurant {notification.restaurant_id} failed: "
                f"{notification.error_message}"
            )


class WebhookNotifier(INotifier):
    """POST notifications to an HTTP endpoint.

    Raises on delivery failure; the orchestrator logs it and leaves
    notification_sent unset so the job record shows the miss.
    """

    def __init__(self, url: str | None = None, timeout_seconds: float = 10.0):
        self.url = url or os.getenv("NOTIFY_WEBHOOK_URL", "")
        self.timeout_seconds = timeout_seconds

    async def notify(self, notification: SyncNotification) -> None:
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.url, json=notification.to_dict()) as response:
                    if response.status >= 400:
                        body = await response.text()
                        raise UpstreamAPIError(
                            f"Notification webhook returned HTTP {response.status}",
                            status_code=response.status,
                            endpoint=self.url,
                            method="POST",
                            response_body=body,
                        )
        except aiohttp.ClientConnectionError as e:
            raise ConnectionError(f"Failed to reach notification webhook: {e}", host=self.url, cause=e)
        except asyncio.TimeoutError as e:
            raise TimeoutError(
                "Notification webhook timed out",
                timeout_seconds=self.timeout_seconds,
                cause=e,
            )

        logger.debug(f"Delivered notification for {notification.job_id}")


def notifier_from_env() -> INotifier:
    """WebhookNotifier when NOTIFY_WEBHOOK_URL is set, else LoggingNotifier."""
    url = os.getenv("NOTIFY_WEBHOOK_URL", "")
    if url:
        return WebhookNotifier(url)
    return LoggingNotifier()
