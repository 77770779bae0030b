"""Named queue definitions.

Queues are a logical grouping of job types for dashboards; dispatch itself
runs off a single eligible set ordered by job priority.

max_concurrency is advisory: it is reported on the queue dashboard as a
capacity hint, but only the service-wide max_concurrent_jobs cap is
enforced, so a burst of one job type may use every slot.
"""

from dataclasses import dataclass

from hrqueue.jobs.types import JobPriority, JobType


@dataclass(frozen=True)
class QueueDefinition:
    """Static description of a named queue."""

    name: str
    description: str
    priority: JobPriority
    max_concurrency: int
    job_types: tuple[JobType, ...]


QUEUES: tuple[QueueDefinition, ...] = (
    QueueDefinition(
        name="payroll",
        description="Payroll runs, tax withholding and pay stub generation",
        priority=JobPriority.CRITICAL,
        max_concurrency=4,
        job_types=(
            JobType.PAYROLL_PROCESSING,
            JobType.TAX_CALCULATION,
            JobType.PAY_STUB_GENERATION,
        ),
    ),
    QueueDefinition(
        name="integrations",
        description="Benefits sync and bulk data import/export",
        priority=JobPriority.HIGH,
        max_concurrency=3,
        job_types=(JobType.BENEFITS_SYNC, JobType.DATA_IMPORT, JobType.DATA_EXPORT),
    ),
    QueueDefinition(
        name="communications",
        description="Email batches and generated documents",
        priority=JobPriority.NORMAL,
        max_concurrency=3,
        job_types=(JobType.EMAIL_BATCH, JobType.DOCUMENT_GENERATION),
    ),
    QueueDefinition(
        name="reporting",
        description="Report generation and compliance checks",
        priority=JobPriority.NORMAL,
        max_concurrency=2,
        job_types=(JobType.REPORT_GENERATION, JobType.COMPLIANCE_CHECK),
    ),
    QueueDefinition(
        name="maintenance",
        description="Housekeeping jobs",
        priority=JobPriority.LOW,
        max_concurrency=1,
        job_types=(JobType.CLEANUP,),
    ),
)


def queue_for(job_type: JobType) -> QueueDefinition:
    """Get the queue a job type belongs to."""
    for queue in QUEUES:
        if job_type in queue.job_types:
            return queue
    raise KeyError(f"No queue defined for job type: {job_type}")
