"""Job system data models."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from hrqueue.jobs.types import JobPriority, JobStatus, JobType, QueueHealth


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class JobOptions:
    """Submission options for a job."""

    source_module: str = ""
    created_by: str = ""
    priority: JobPriority = JobPriority.NORMAL
    company_id: Optional[UUID] = None
    description: Optional[str] = None

    # Scheduling
    delay_seconds: float = 0.0
    retry_attempts: Optional[int] = None  # None = settings default
    timeout_seconds: Optional[float] = None

    # Completion/failure notifications
    notify_user_ids: list[str] = field(default_factory=list)
    notify_on_completion: bool = False
    notify_on_failure: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "delay_seconds": self.delay_seconds,
            "retry_attempts": self.retry_attempts,
            "timeout_seconds": self.timeout_seconds,
            "notify_user_ids": list(self.notify_user_ids),
            "notify_on_completion": self.notify_on_completion,
            "notify_on_failure": self.notify_on_failure,
        }


@dataclass
class JobProgress:
    """Advisory progress reported by a running handler."""

    current: int = 0
    total: int = 0
    message: Optional[str] = None

    @property
    def percentage(self) -> float:
        if self.total <= 0:
            return 0.0
        return round(min(100.0, 100.0 * self.current / self.total), 2)

    def to_dict(self) -> dict[str, Any]:
        return {
            "current": self.current,
            "total": self.total,
            "percentage": self.percentage,
            "message": self.message,
        }


@dataclass
class JobLogEntry:
    """A structured log line recorded during job execution."""

    level: str  # "info", "warn", "error"
    message: str
    meta: Optional[dict[str, Any]] = None
    ts: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ts": self.ts.isoformat(),
            "level": self.level,
            "message": self.message,
            "meta": self.meta,
        }


@dataclass
class Job:
    """A unit of asynchronous work."""

    id: UUID
    type: JobType
    name: str
    status: JobStatus
    payload: dict[str, Any]

    # Attribution
    source_module: str
    created_by: str
    company_id: Optional[UUID] = None
    description: Optional[str] = None
    priority: JobPriority = JobPriority.NORMAL

    # Retry handling
    retry_count: int = 0
    max_attempts: int = 3
    timeout_seconds: Optional[float] = None
    next_retry_at: Optional[datetime] = None

    # Notification options
    notify_user_ids: list[str] = field(default_factory=list)
    notify_on_completion: bool = False
    notify_on_failure: bool = True

    # Lifecycle timestamps
    created_at: datetime = field(default_factory=utcnow)
    scheduled_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    # Execution output
    progress: JobProgress = field(default_factory=JobProgress)
    result: Optional[Any] = None
    error: Optional[str] = None
    logs: list[JobLogEntry] = field(default_factory=list)

    def is_eligible(self, now: datetime) -> bool:
        """Queued past its delay, or in retry past its backoff."""
        if self.status == JobStatus.QUEUED:
            return self.scheduled_at <= now
        if self.status == JobStatus.RETRY:
            return self.next_retry_at is None or self.next_retry_at <= now
        return False

    @property
    def processing_seconds(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def add_log(self, level: str, message: str, **meta: Any) -> None:
        self.logs.append(JobLogEntry(level=level, message=message, meta=meta or None))

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API responses."""
        return {
            "id": str(self.id),
            "type": self.type.value,
            "name": self.name,
            "status": self.status.value,
            "priority": self.priority.value,
            "payload": self.payload,
            "source_module": self.source_module,
            "created_by": self.created_by,
            "company_id": str(self.company_id) if self.company_id else None,
            "description": self.description,
            "retry_count": self.retry_count,
            "max_attempts": self.max_attempts,
            "timeout_seconds": self.timeout_seconds,
            "next_retry_at": _iso(self.next_retry_at),
            "created_at": _iso(self.created_at),
            "scheduled_at": _iso(self.scheduled_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "progress": self.progress.to_dict(),
            "result": self.result,
            "error": self.error,
            "logs": [entry.to_dict() for entry in self.logs],
        }


@dataclass
class JobFilters:
    """Filters for querying jobs."""

    status: Optional[JobStatus] = None
    type: Optional[JobType] = None
    company_id: Optional[UUID] = None
    source_module: Optional[str] = None
    limit: int = 50
    offset: int = 0


@dataclass
class JobQueue:
    """Aggregate view over the jobs of one named queue."""

    name: str
    description: str
    priority: JobPriority
    # Advisory only, see hrqueue.jobs.queues
    max_concurrency: int
    job_types: tuple[JobType, ...]
    queued: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "priority": self.priority.value,
            "max_concurrency": self.max_concurrency,
            "job_types": [jt.value for jt in self.job_types],
            "queued": self.queued,
            "processing": self.processing,
            "completed": self.completed,
            "failed": self.failed,
        }


@dataclass
class JobStats:
    """Aggregate job counts with a derived health classification."""

    total: int = 0
    queued: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    retry: int = 0
    cancelled: int = 0
    avg_processing_seconds: Optional[float] = None
    health: QueueHealth = QueueHealth.HEALTHY

    @property
    def error_rate(self) -> float:
        finished = self.completed + self.failed
        if finished == 0:
            return 0.0
        return self.failed / finished

    @property
    def queue_depth(self) -> int:
        return self.queued + self.retry

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "queued": self.queued,
            "processing": self.processing,
            "completed": self.completed,
            "failed": self.failed,
            "retry": self.retry,
            "cancelled": self.cancelled,
            "error_rate": round(self.error_rate, 4),
            "avg_processing_seconds": self.avg_processing_seconds,
            "health": self.health.value,
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
