"""Persistence for jobs, notifications and recipient lookup."""

from hrqueue.repositories.jobs import InMemoryJobStore, JobRepository, JobStore
from hrqueue.repositories.notifications import (
    InMemoryNotificationStore,
    NotificationRepository,
    NotificationStore,
)
from hrqueue.repositories.recipients import (
    InMemoryRecipientDirectory,
    RecipientDirectory,
    UserProfileDirectory,
)
from hrqueue.repositories.templates import (
    InMemoryTemplateStore,
    TemplateRepository,
    TemplateStore,
)

__all__ = [
    "JobStore",
    "InMemoryJobStore",
    "JobRepository",
    "NotificationStore",
    "InMemoryNotificationStore",
    "NotificationRepository",
    "RecipientDirectory",
    "InMemoryRecipientDirectory",
    "UserProfileDirectory",
    "TemplateStore",
    "InMemoryTemplateStore",
    "TemplateRepository",
]
