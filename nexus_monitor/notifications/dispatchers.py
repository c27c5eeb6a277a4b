"""
Notification Dispatchers

Transports that deliver one alert notification. Delivery content (email
rendering, recipients) belongs to the external notification service; this
side only hands over a structured payload.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Optional
import uuid

import httpx
import structlog
from pydantic import BaseModel

from nexus_monitor.config import get_settings
from nexus_monitor.database.models import AlertLevel

logger = structlog.get_logger(__name__)


class Recipient(BaseModel):
    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None


class NexusAlertNotification(BaseModel):
    """Payload for one newly crossed nexus level"""
    alert_id: uuid.UUID
    recipient: Recipient
    state_code: str
    state_name: str
    alert_level: AlertLevel
    sales_amount: Decimal
    threshold: Optional[Decimal] = None
    percentage: float
    subject: str
    message: str


class NotificationDispatcher(ABC):
    """Delivers alert notifications. Returns True when delivery succeeded."""

    name: str = "base"

    @abstractmethod
    async def dispatch(self, notification: NexusAlertNotification) -> bool:
        ...

    async def close(self) -> None:
        pass


class LoggingDispatcher(NotificationDispatcher):
    """Writes the notification as a structured log line. Always succeeds."""

    name = "log"

    async def dispatch(self, notification: NexusAlertNotification) -> bool:
        logger.info(
            "Nexus alert notification",
            user_id=notification.recipient.user_id,
            email=notification.recipient.email,
            state_code=notification.state_code,
            level=notification.alert_level.value,
            subject=notification.subject,
        )
        return True


class WebhookDispatcher(NotificationDispatcher):
    """POSTs the JSON payload to a webhook; any 2xx counts as delivered."""

    name = "webhook"

    def __init__(
        self,
        url: str,
        secret: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self._headers = {"Content-Type": "application/json"}
        if secret:
            self._headers["X-Nexus-Webhook-Secret"] = secret
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def dispatch(self, notification: NexusAlertNotification) -> bool:
        try:
            response = await self._client.post(
                self.url,
                content=notification.model_dump_json(),
                headers=self._headers,
            )
        except httpx.HTTPError as e:
            logger.warning(
                "Webhook dispatch failed",
                url=self.url,
                state_code=notification.state_code,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

        if not response.is_success:
            logger.warning(
                "Webhook rejected notification",
                url=self.url,
                state_code=notification.state_code,
                status_code=response.status_code,
            )
            return False
        return True

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def create_dispatcher() -> NotificationDispatcher:
    """Dispatcher for the configured transport."""
    settings = get_settings().notifications

    if settings.transport == "webhook":
        if not settings.webhook_url:
            raise ValueError("NOTIFY_WEBHOOK_URL is required for the webhook transport")
        secret = settings.webhook_secret.get_secret_value() if settings.webhook_secret else None
        return WebhookDispatcher(settings.webhook_url, secret=secret, timeout=settings.timeout_seconds)

    return LoggingDispatcher()
