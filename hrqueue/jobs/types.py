"""Job system type definitions."""

from enum import Enum


class JobType(str, Enum):
    """Job types accepted by the background job service."""

    PAYROLL_PROCESSING = "payroll_processing"
    TAX_CALCULATION = "tax_calculation"
    PAY_STUB_GENERATION = "pay_stub_generation"
    BENEFITS_SYNC = "benefits_sync"
    REPORT_GENERATION = "report_generation"
    EMAIL_BATCH = "email_batch"
    DATA_IMPORT = "data_import"
    DATA_EXPORT = "data_export"
    COMPLIANCE_CHECK = "compliance_check"
    DOCUMENT_GENERATION = "document_generation"
    CLEANUP = "cleanup"


class JobStatus(str, Enum):
    """Job lifecycle statuses."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRY = "retry"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Check if this status is terminal (no automatic transition follows)."""
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)

    @property
    def is_cancellable(self) -> bool:
        """Only work that has not been picked up can be cancelled."""
        return self in (JobStatus.QUEUED, JobStatus.RETRY)


class JobPriority(str, Enum):
    """Dispatch priority. Higher priorities are picked up first."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """Sort key: lower rank dispatches first."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    JobPriority.CRITICAL: 0,
    JobPriority.HIGH: 1,
    JobPriority.NORMAL: 2,
    JobPriority.LOW: 3,
}


class QueueHealth(str, Enum):
    """Derived health classification for job stats."""

    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


# Allowed status transitions (from -> to)
TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED}),
    JobStatus.PROCESSING: frozenset(
        {JobStatus.COMPLETED, JobStatus.RETRY, JobStatus.FAILED}
    ),
    JobStatus.RETRY: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED}),
    JobStatus.FAILED: frozenset({JobStatus.QUEUED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    """Check whether current -> target is an allowed transition."""
    return target in TRANSITIONS[current]
