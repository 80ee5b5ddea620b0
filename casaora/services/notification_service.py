"""
Lifecycle Notification Dispatcher
Fire-and-forget sink subscribed to every lifecycle event.
Events are always logged; when NOTIFICATION_WEBHOOK_URL is set they are also
POSTed there. Delivery failures are logged and never raised.
"""

import logging
from typing import Optional

import httpx

from ..config import NOTIFICATION_TIMEOUT, NOTIFICATION_WEBHOOK_URL
from ..events import LifecycleEvent

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    def __init__(
        self,
        webhook_url: Optional[str] = NOTIFICATION_WEBHOOK_URL,
        timeout: float = NOTIFICATION_TIMEOUT,
        client: Optional[httpx.Client] = None,
    ):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.client = client

    def dispatch(self, event: LifecycleEvent) -> bool:
        """
        Deliver one event

        Returns:
            True if the webhook accepted it (or no webhook is configured)
        """
        logger.info(f"📣 {event.name}: {event.payload}")
        if not self.webhook_url:
            return True

        try:
            if self.client is not None:
                response = self.client.post(self.webhook_url, json=event.to_dict(), timeout=self.timeout)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(self.webhook_url, json=event.to_dict())
            if response.status_code >= 400:
                logger.warning(f"⚠️ Notification webhook returned HTTP {response.status_code} for {event.name}")
                return False
            logger.debug(f"✅ Notification delivered: {event.name}")
            return True
        except httpx.HTTPError as e:
            logger.error(f"❌ Failed to deliver {event.name} notification: {e}")
            return False


notification_dispatcher = NotificationDispatcher()
