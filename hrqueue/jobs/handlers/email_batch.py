"""EMAIL_BATCH job handler - sends one email notification to many users.

The user list is sent in chunks so progress can be reported between them.
Each chunk becomes its own notification message, so a transport failure
on one chunk is retried with backoff by the notification service without
resending the others. The payload is checked by validate_email_batch_payload
when the job is queued.
"""

from typing import Any

import structlog

from hrqueue.exceptions import JobValidationError, UnresolvedRecipientsError
from hrqueue.jobs.models import Job
from hrqueue.services.notifications.models import Channel, SendOptions

logger = structlog.get_logger(__name__)

DEFAULT_CHUNK_SIZE = 50


def validate_email_batch_payload(payload: dict[str, Any]) -> None:
    """Reject batches that could never be sent. Raises JobValidationError."""
    user_ids = payload.get("user_ids")
    if not isinstance(user_ids, list) or not user_ids:
        raise JobValidationError("user_ids must be a non-empty list", field="user_ids")
    if not all(isinstance(user_id, str) and user_id for user_id in user_ids):
        raise JobValidationError("user_ids must be non-empty strings", field="user_ids")
    if not payload.get("template_id") and not payload.get("subject"):
        raise JobValidationError("subject or template_id is required", field="subject")

    chunk_size = payload.get("chunk_size")
    if chunk_size is not None and (
        isinstance(chunk_size, bool) or not isinstance(chunk_size, int) or chunk_size < 1
    ):
        raise JobValidationError(
            "chunk_size must be a positive integer", field="chunk_size"
        )

    variables = payload.get("template_variables")
    if variables is not None and not isinstance(variables, dict):
        raise JobValidationError(
            "template_variables must be a mapping", field="template_variables"
        )


def make_email_batch_handler(notifications):
    """Build a handler bound to the notification service."""

    async def handle_email_batch(job: Job, ctx) -> dict[str, Any]:
        """Handle an EMAIL_BATCH job.

        Job Payload:
            user_ids: list[str] - Recipients
            subject: str - Email subject (ignored with template_id)
            body: str - Email body (ignored with template_id)
            template_id: str (optional) - Template to render instead
            template_variables: dict (optional)
            chunk_size: int (optional, default 50)

        Returns:
            dict with:
                message_ids: list[str] - One per chunk sent
                recipients: int - Users targeted
                unresolved: list[str] - Users with no profile
        """
        payload = job.payload
        validate_email_batch_payload(payload)
        user_ids = payload["user_ids"]
        template_id = payload.get("template_id")
        subject = payload.get("subject", "")
        chunk_size = payload.get("chunk_size") or DEFAULT_CHUNK_SIZE

        log = logger.bind(job_id=str(job.id), recipients=len(user_ids))
        log.info("email_batch_started")

        chunks = [user_ids[i : i + chunk_size] for i in range(0, len(user_ids), chunk_size)]
        await ctx.report_progress(0, len(chunks), "Sending")

        message_ids: list[str] = []
        unresolved: list[str] = []
        for index, chunk in enumerate(chunks, start=1):
            options = SendOptions(
                channels=[Channel.EMAIL],
                template_id=template_id,
                template_variables=dict(payload.get("template_variables") or {}),
                source_module=job.source_module,
                company_id=job.company_id,
                metadata={"job_id": str(job.id), "chunk": index},
            )
            try:
                message_id = await notifications.send_to_users(
                    chunk, subject, payload.get("body", ""), options
                )
                message_ids.append(str(message_id))
                message = await notifications.get_message(message_id)
                if message is not None:
                    unresolved.extend(message.metadata.get("unresolved_user_ids", []))
            except UnresolvedRecipientsError as e:
                # Whole chunk unresolved; keep going with the rest
                ctx.log("warn", "Chunk skipped", chunk=index, error=str(e))
                unresolved.extend(chunk)

            await ctx.report_progress(index, len(chunks), f"Sent {index}/{len(chunks)} chunks")

        log.info("email_batch_completed", messages=len(message_ids), unresolved=len(unresolved))
        return {
            "message_ids": message_ids,
            "recipients": len(user_ids),
            "unresolved": unresolved,
        }

    return handle_email_batch
