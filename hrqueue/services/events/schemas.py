"""Event names and payload builders for the in-process event bus."""

from datetime import datetime, timezone
from typing import Any

JOB_QUEUED = "job_queued"
JOB_STARTED = "job_started"
JOB_PROGRESS = "job_progress"
JOB_COMPLETED = "job_completed"
JOB_RETRY_SCHEDULED = "job_retry_scheduled"
JOB_FAILED = "job_failed"
JOB_CANCELLED = "job_cancelled"

NOTIFICATION_QUEUED = "notification_queued"
NOTIFICATION_IN_APP = "notification_in_app"
NOTIFICATION_DELIVERED = "notification_delivered"
NOTIFICATION_RETRY_SCHEDULED = "notification_retry_scheduled"
NOTIFICATION_FAILED = "notification_failed"


def job_event(job, **extra: Any) -> dict[str, Any]:
    """Build the payload carried by every job lifecycle event."""
    event = {
        "job_id": job.id,
        "type": job.type.value,
        "name": job.name,
        "source_module": job.source_module,
        "company_id": job.company_id,
        "status": job.status.value,
        "retry_count": job.retry_count,
        "timestamp": datetime.now(timezone.utc),
    }
    event.update(extra)
    return event


def notification_event(message, **extra: Any) -> dict[str, Any]:
    """Build the payload carried by notification events."""
    event = {
        "message_id": message.id,
        "type": message.type.value,
        "title": message.title,
        "source_module": message.source_module,
        "company_id": message.company_id,
        "status": message.status.value,
        "timestamp": datetime.now(timezone.utc),
    }
    event.update(extra)
    return event
