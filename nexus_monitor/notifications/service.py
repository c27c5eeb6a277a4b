"""
Notification Service

Hands newly created alerts to the dispatcher. Runs off the critical path of
the pipeline: a failed dispatch is logged and leaves ``email_sent`` false,
the alert itself stays stored.
"""

import asyncio
from typing import List, Optional, Sequence

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from nexus_monitor.alerts.engine import AlertEngine, NewAlert
from nexus_monitor.alerts.messages import alert_subject
from nexus_monitor.config import get_settings
from nexus_monitor.database.connection import get_db
from nexus_monitor.database.models import NotificationPreference
from nexus_monitor.metrics import NOTIFICATIONS_DISPATCHED
from nexus_monitor.notifications.dispatchers import (
    NexusAlertNotification,
    NotificationDispatcher,
    Recipient,
    create_dispatcher,
)

logger = structlog.get_logger(__name__)


class NotificationService:
    """
    Dispatches alert notifications per user preference.

    Example:
        service = NotificationService(session_factory)
        sent = await service.notify("user-1", new_alerts)
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        alert_engine: Optional[AlertEngine] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.dispatcher = dispatcher or create_dispatcher()
        self.alert_engine = alert_engine or AlertEngine(session_factory)
        self.timeout_seconds = timeout_seconds or get_settings().notifications.timeout_seconds

    async def _load_preference(self, user_id: str) -> Optional[NotificationPreference]:
        async with get_db(self.session_factory) as db:
            return await db.get(NotificationPreference, user_id)

    def _build_payload(self, alert: NewAlert, preference: Optional[NotificationPreference]) -> NexusAlertNotification:
        return NexusAlertNotification(
            alert_id=alert.alert_id,
            recipient=Recipient(
                user_id=alert.user_id,
                email=preference.email if preference else None,
                name=preference.display_name if preference else None,
            ),
            state_code=alert.state_code,
            state_name=alert.state_name,
            alert_level=alert.level,
            sales_amount=alert.sales_amount,
            threshold=alert.threshold,
            percentage=alert.percentage,
            subject=alert_subject(alert.state_name, alert.level, alert.percentage),
            message=alert.message,
        )

    async def _dispatch_one(self, notification: NexusAlertNotification) -> bool:
        try:
            return await asyncio.wait_for(
                self.dispatcher.dispatch(notification),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Notification dispatch timed out",
                user_id=notification.recipient.user_id,
                state_code=notification.state_code,
                timeout_seconds=self.timeout_seconds,
            )
        except Exception as e:
            logger.error(
                "Notification dispatch error",
                user_id=notification.recipient.user_id,
                state_code=notification.state_code,
                error=str(e),
                error_type=type(e).__name__,
            )
        return False

    async def notify(self, user_id: str, alerts: Sequence[NewAlert]) -> int:
        """
        Dispatch one notification per alert.

        Users without a preference row are notified.

        Returns:
            Number of notifications delivered
        """
        if not alerts:
            return 0

        preference = await self._load_preference(user_id)
        if preference is not None and not preference.nexus_alerts_enabled:
            # Suppressed, not deferred: re-enabling must not flush old crossings
            for alert in alerts:
                await self.alert_engine.mark_notification_skipped(user_id, alert.state_code, alert.level)
            NOTIFICATIONS_DISPATCHED.labels(outcome="skipped").inc(len(alerts))
            logger.info("Nexus alert notifications disabled", user_id=user_id, alerts=len(alerts))
            return 0

        sent = 0
        for alert in alerts:
            delivered = await self._dispatch_one(self._build_payload(alert, preference))
            if not delivered:
                NOTIFICATIONS_DISPATCHED.labels(outcome="failed").inc()
                continue

            await self.alert_engine.mark_email_sent(user_id, alert.state_code, alert.level)
            NOTIFICATIONS_DISPATCHED.labels(outcome="sent").inc()
            sent += 1

        logger.info(
            "Nexus alert notifications dispatched",
            user_id=user_id,
            transport=self.dispatcher.name,
            sent=sent,
            failed=len(alerts) - sent,
        )
        return sent

    async def retry_unsent(self, user_id: str) -> int:
        """
        Re-dispatch the highest pending alert of each state.

        Alerts suppressed by the preference, and levels below one already
        delivered, are never picked up.
        """
        alerts: List[NewAlert] = await self.alert_engine.highest_unsent(user_id)
        return await self.notify(user_id, alerts)

    async def close(self) -> None:
        await self.dispatcher.close()
