"""
Notifications Module
"""
from .dispatchers import (
    LoggingDispatcher,
    NexusAlertNotification,
    NotificationDispatcher,
    Recipient,
    WebhookDispatcher,
    create_dispatcher,
)
from .service import NotificationService

__all__ = [
    "LoggingDispatcher",
    "NexusAlertNotification",
    "NotificationDispatcher",
    "Recipient",
    "WebhookDispatcher",
    "create_dispatcher",
    "NotificationService",
]
