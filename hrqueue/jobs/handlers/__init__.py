"""Built-in job handlers.

Feature modules register their own handlers with
BackgroundJobService.register_handler(); this package provides the handlers
the service itself needs.

Handler contract:
    async def handler(job: Job, ctx: JobContext) -> dict:
        - job: The Job with payload and attribution
        - ctx: JobContext for progress reporting and job log entries
        - Returns: Result dict stored in job.result on success

A handler may also ship a payload validator, registered alongside it, that
raises JobValidationError. queue_job() runs it on submission; a handler
raising JobValidationError at run time fails the job without retries.
"""

from hrqueue.jobs.handlers.cleanup import make_cleanup_handler, validate_cleanup_payload
from hrqueue.jobs.handlers.email_batch import (
    make_email_batch_handler,
    validate_email_batch_payload,
)
from hrqueue.jobs.types import JobType


def register_builtin_handlers(jobs, notifications) -> None:
    """Register the cleanup and email batch handlers on a job service."""
    jobs.register_handler(
        JobType.CLEANUP, make_cleanup_handler(jobs), validate_cleanup_payload
    )
    jobs.register_handler(
        JobType.EMAIL_BATCH,
        make_email_batch_handler(notifications),
        validate_email_batch_payload,
    )


__all__ = [
    "make_cleanup_handler",
    "make_email_batch_handler",
    "register_builtin_handlers",
    "validate_cleanup_payload",
    "validate_email_batch_payload",
]
