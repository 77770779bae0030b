"""Event bus module for job and notification lifecycle events."""

from hrqueue.services.events.bus import EventBus, Listener
from hrqueue.services.events.schemas import job_event, notification_event

__all__ = [
    "EventBus",
    "Listener",
    "job_event",
    "notification_event",
]
