"""CLEANUP job handler - on-demand run of the job retention sweep."""

from datetime import timedelta
from typing import Any

import structlog

from hrqueue.exceptions import JobValidationError
from hrqueue.jobs.models import Job

logger = structlog.get_logger(__name__)


def validate_cleanup_payload(payload: dict[str, Any]) -> None:
    older_than_days = payload.get("older_than_days")
    if older_than_days is None:
        return
    if (
        isinstance(older_than_days, bool)
        or not isinstance(older_than_days, int)
        or older_than_days < 1
    ):
        raise JobValidationError(
            "older_than_days must be a positive integer", field="older_than_days"
        )


def make_cleanup_handler(jobs):
    """Build a handler bound to the job service it cleans up."""

    async def handle_cleanup(job: Job, ctx) -> dict[str, Any]:
        """Handle a CLEANUP job.

        Job Payload:
            older_than_days: int (optional) - Retention override

        Returns:
            dict with deleted: int
        """
        validate_cleanup_payload(job.payload)
        older_than_days = job.payload.get("older_than_days")
        older_than = timedelta(days=older_than_days) if older_than_days else None

        deleted = await jobs.cleanup(older_than=older_than)
        ctx.log("info", "Cleanup finished", deleted=deleted)
        logger.info("cleanup_job_completed", job_id=str(job.id), deleted=deleted)
        return {"deleted": deleted}

    return handle_cleanup
