"""Job completion/failure notifications.

Listens for job lifecycle events and notifies the users a job named in
notify_user_ids. Failures go out in-app and by email; completions in-app.
"""

from typing import Any

import structlog

from hrqueue.exceptions import NotificationValidationError
from hrqueue.services.events import EventBus
from hrqueue.services.events import schemas as events
from hrqueue.services.notifications.models import Channel, NotificationType, SendOptions

logger = structlog.get_logger(__name__)

COMPLETION_CHANNELS = [Channel.IN_APP]
FAILURE_CHANNELS = [Channel.IN_APP, Channel.EMAIL]


class JobNotificationBridge:
    """Subscribes to job events and publishes notifications for them."""

    def __init__(self, bus: EventBus, jobs, notifications):
        self._bus = bus
        self._jobs = jobs
        self._notifications = notifications
        self._attached = False

    def attach(self) -> None:
        if self._attached:
            return
        self._bus.on(events.JOB_COMPLETED, self.on_job_completed)
        self._bus.on(events.JOB_FAILED, self.on_job_failed)
        self._attached = True

    def detach(self) -> None:
        self._bus.off(events.JOB_COMPLETED, self.on_job_completed)
        self._bus.off(events.JOB_FAILED, self.on_job_failed)
        self._attached = False

    async def on_job_completed(self, event: dict[str, Any]) -> None:
        job = await self._jobs.get_job(event["job_id"])
        if job is None or not job.notify_on_completion or not job.notify_user_ids:
            return
        await self._send(
            job,
            title=f"Job completed: {job.name}",
            body=f"{job.name} ({job.type.value}) finished successfully.",
            notification_type=NotificationType.SUCCESS,
            channels=COMPLETION_CHANNELS,
        )

    async def on_job_failed(self, event: dict[str, Any]) -> None:
        job = await self._jobs.get_job(event["job_id"])
        if job is None or not job.notify_on_failure or not job.notify_user_ids:
            return
        attempts = job.retry_count + 1
        await self._send(
            job,
            title=f"Job failed: {job.name}",
            body=(
                f"{job.name} ({job.type.value}) failed after {attempts} "
                f"attempt{'s' if attempts != 1 else ''}.\nError: {job.error}"
            ),
            notification_type=NotificationType.ERROR,
            channels=FAILURE_CHANNELS,
        )

    async def _send(self, job, title, body, notification_type, channels) -> None:
        options = SendOptions(
            channels=list(channels),
            type=notification_type,
            source_module=job.source_module,
            company_id=job.company_id,
            metadata={"job_id": str(job.id), "job_type": job.type.value},
        )
        try:
            message_id = await self._notifications.send_to_users(
                job.notify_user_ids, title, body, options
            )
        except NotificationValidationError as e:
            logger.warning("job_notification_skipped", job_id=str(job.id), error=str(e))
            return
        logger.info(
            "job_notification_sent",
            job_id=str(job.id),
            message_id=str(message_id),
            notification_type=notification_type.value,
        )
