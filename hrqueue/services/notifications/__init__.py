"""Notification dispatch: models, templates, channel senders and the service.

Import NotificationService from hrqueue.services.notifications.service.
"""

from hrqueue.services.notifications.models import (
    Channel,
    DeliveryAttempt,
    DeliveryStats,
    DeliveryStatus,
    NotificationMessage,
    NotificationRequest,
    NotificationStatus,
    NotificationTemplate,
    NotificationType,
    Recipient,
    SendOptions,
)

__all__ = [
    "Channel",
    "DeliveryAttempt",
    "DeliveryStats",
    "DeliveryStatus",
    "NotificationMessage",
    "NotificationRequest",
    "NotificationStatus",
    "NotificationTemplate",
    "NotificationType",
    "Recipient",
    "SendOptions",
]
