"""Repository for job queue operations.

Two implementations of the JobStore interface:
- InMemoryJobStore: process-local, used by default and in tests
- JobRepository: Postgres (Supabase) via asyncpg

Status changes go through compare_and_set so that a claim, cancel or retry
only lands when the stored status is still one the caller expected.
"""

import copy
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable, Optional
from uuid import UUID

import structlog

from hrqueue.exceptions import StoreError
from hrqueue.jobs.models import Job, JobFilters, JobLogEntry, JobProgress
from hrqueue.jobs.types import JobPriority, JobStatus, JobType, can_transition
from hrqueue.repositories.utils import ensure_json, to_jsonb

logger = structlog.get_logger(__name__)

TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class JobStore(ABC):
    """Durable record of jobs and their state transitions."""

    @abstractmethod
    async def create(self, job: Job) -> Job:
        """Persist a new job."""
        ...

    @abstractmethod
    async def get(self, job_id: UUID) -> Optional[Job]:
        """Load a job by id."""
        ...

    @abstractmethod
    async def save(self, job: Job) -> Job:
        """Write mutable fields unconditionally (progress, logs)."""
        ...

    @abstractmethod
    async def compare_and_set(self, job: Job, expected: Iterable[JobStatus]) -> bool:
        """Write mutable fields only if the stored status is in expected."""
        ...

    @abstractmethod
    async def list_eligible(self, now: datetime, limit: int) -> list[Job]:
        """Jobs ready to dispatch, by priority then creation time."""
        ...

    @abstractmethod
    async def list_jobs(self, filters: JobFilters) -> tuple[list[Job], int]:
        """Filtered page of jobs, newest first, plus the total match count."""
        ...

    @abstractmethod
    async def status_counts(
        self, company_id: Optional[UUID] = None
    ) -> dict[JobStatus, int]:
        ...

    @abstractmethod
    async def type_status_counts(self) -> dict[tuple[JobType, JobStatus], int]:
        ...

    @abstractmethod
    async def avg_processing_seconds(
        self, company_id: Optional[UUID] = None
    ) -> Optional[float]:
        ...

    @abstractmethod
    async def delete_terminal_before(self, cutoff: datetime) -> int:
        """Delete terminal jobs completed before cutoff. Returns count."""
        ...

    @abstractmethod
    async def list_stale(
        self, cutoff: datetime, exclude: Iterable[UUID] = ()
    ) -> list[Job]:
        """Processing jobs started before cutoff, oldest first."""
        ...


class InMemoryJobStore(JobStore):
    """Process-local job store. Returns copies so callers never share state."""

    def __init__(self):
        self._jobs: dict[UUID, Job] = {}

    async def create(self, job: Job) -> Job:
        if job.id in self._jobs:
            raise StoreError(f"Job {job.id} already exists")
        self._jobs[job.id] = copy.deepcopy(job)
        return job

    async def get(self, job_id: UUID) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return copy.deepcopy(job) if job else None

    async def save(self, job: Job) -> Job:
        if job.id not in self._jobs:
            raise StoreError(f"Job {job.id} not found")
        self._jobs[job.id] = copy.deepcopy(job)
        return job

    async def compare_and_set(self, job: Job, expected: Iterable[JobStatus]) -> bool:
        current = self._jobs.get(job.id)
        if current is None or current.status not in set(expected):
            return False
        if current.status != job.status and not can_transition(current.status, job.status):
            logger.warning(
                "job_transition_invalid",
                job_id=str(job.id),
                current=current.status.value,
                target=job.status.value,
            )
            return False
        self._jobs[job.id] = copy.deepcopy(job)
        return True

    async def list_eligible(self, now: datetime, limit: int) -> list[Job]:
        if limit <= 0:
            return []
        eligible = [j for j in self._jobs.values() if j.is_eligible(now)]
        eligible.sort(key=lambda j: (j.priority.rank, j.created_at))
        return [copy.deepcopy(j) for j in eligible[:limit]]

    async def list_jobs(self, filters: JobFilters) -> tuple[list[Job], int]:
        matches = [j for j in self._jobs.values() if _matches(j, filters)]
        matches.sort(key=lambda j: j.created_at, reverse=True)
        page = matches[filters.offset : filters.offset + filters.limit]
        return [copy.deepcopy(j) for j in page], len(matches)

    async def status_counts(
        self, company_id: Optional[UUID] = None
    ) -> dict[JobStatus, int]:
        counts = {status: 0 for status in JobStatus}
        for job in self._jobs.values():
            if company_id is None or job.company_id == company_id:
                counts[job.status] += 1
        return counts

    async def type_status_counts(self) -> dict[tuple[JobType, JobStatus], int]:
        counts: dict[tuple[JobType, JobStatus], int] = {}
        for job in self._jobs.values():
            key = (job.type, job.status)
            counts[key] = counts.get(key, 0) + 1
        return counts

    async def avg_processing_seconds(
        self, company_id: Optional[UUID] = None
    ) -> Optional[float]:
        durations = [
            j.processing_seconds
            for j in self._jobs.values()
            if j.status == JobStatus.COMPLETED
            and j.processing_seconds is not None
            and (company_id is None or j.company_id == company_id)
        ]
        if not durations:
            return None
        return sum(durations) / len(durations)

    async def delete_terminal_before(self, cutoff: datetime) -> int:
        doomed = [
            job_id
            for job_id, job in self._jobs.items()
            if job.status in TERMINAL_STATUSES
            and job.completed_at is not None
            and job.completed_at < cutoff
        ]
        for job_id in doomed:
            del self._jobs[job_id]
        return len(doomed)

    async def list_stale(
        self, cutoff: datetime, exclude: Iterable[UUID] = ()
    ) -> list[Job]:
        skip = set(exclude)
        stale = [
            job
            for job in self._jobs.values()
            if job.status == JobStatus.PROCESSING
            and job.id not in skip
            and job.started_at is not None
            and job.started_at < cutoff
        ]
        stale.sort(key=lambda j: j.started_at)
        return [copy.deepcopy(j) for j in stale]


def _matches(job: Job, filters: JobFilters) -> bool:
    if filters.status is not None and job.status != filters.status:
        return False
    if filters.type is not None and job.type != filters.type:
        return False
    if filters.company_id is not None and job.company_id != filters.company_id:
        return False
    if filters.source_module is not None and job.source_module != filters.source_module:
        return False
    return True


_PRIORITY_ORDER_SQL = """
    CASE priority
        WHEN 'critical' THEN 0
        WHEN 'high' THEN 1
        WHEN 'normal' THEN 2
        ELSE 3
    END
"""


class JobRepository(JobStore):
    """Postgres-backed job store (asyncpg pool)."""

    def __init__(self, pool):
        self._pool = pool

    async def create(self, job: Job) -> Job:
        query = """
            INSERT INTO jobs (
                id, type, name, status, priority, payload, source_module,
                created_by, company_id, description, retry_count, max_attempts,
                timeout_seconds, next_retry_at, notify_user_ids,
                notify_on_completion, notify_on_failure, created_at,
                scheduled_at, started_at, completed_at, progress, result,
                error, logs
            ) VALUES (
                $1, $2, $3, $4, $5, $6::jsonb, $7, $8, $9, $10, $11, $12, $13,
                $14, $15::jsonb, $16, $17, $18, $19, $20, $21, $22::jsonb,
                $23::jsonb, $24, $25::jsonb
            )
        """
        try:
            async with self._pool.acquire() as conn:
                await conn.execute(
                    query,
                    job.id,
                    job.type.value,
                    job.name,
                    job.status.value,
                    job.priority.value,
                    to_jsonb(job.payload),
                    job.source_module,
                    job.created_by,
                    job.company_id,
                    job.description,
                    job.retry_count,
                    job.max_attempts,
                    job.timeout_seconds,
                    job.next_retry_at,
                    to_jsonb(job.notify_user_ids),
                    job.notify_on_completion,
                    job.notify_on_failure,
                    job.created_at,
                    job.scheduled_at,
                    job.started_at,
                    job.completed_at,
                    to_jsonb(job.progress.to_dict()),
                    to_jsonb(job.result),
                    job.error,
                    to_jsonb([entry.to_dict() for entry in job.logs]),
                )
        except Exception as e:
            logger.error("job_store_create_failed", job_id=str(job.id), error=str(e))
            raise StoreError(str(e)) from e
        return job

    async def get(self, job_id: UUID) -> Optional[Job]:
        query = "SELECT * FROM jobs WHERE id = $1"
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, job_id)
        return self._row_to_job(row) if row else None

    async def save(self, job: Job) -> Job:
        query = f"""
            UPDATE jobs SET {_MUTABLE_SET_CLAUSE}
            WHERE id = $1
            RETURNING id
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, job.id, *_mutable_params(job))
        if not row:
            raise StoreError(f"Job {job.id} not found")
        return job

    async def compare_and_set(self, job: Job, expected: Iterable[JobStatus]) -> bool:
        expected_values = [status.value for status in expected]
        query = f"""
            UPDATE jobs SET {_MUTABLE_SET_CLAUSE}
            WHERE id = $1 AND status = ANY($12::text[])
            RETURNING id
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                query, job.id, *_mutable_params(job), expected_values
            )
        if not row:
            logger.info(
                "job_transition_rejected",
                job_id=str(job.id),
                target=job.status.value,
                expected=expected_values,
            )
            return False
        return True

    async def list_eligible(self, now: datetime, limit: int) -> list[Job]:
        if limit <= 0:
            return []
        query = f"""
            SELECT * FROM jobs
            WHERE (status = 'queued' AND scheduled_at <= $1)
               OR (status = 'retry' AND (next_retry_at IS NULL OR next_retry_at <= $1))
            ORDER BY {_PRIORITY_ORDER_SQL}, created_at
            LIMIT $2
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, now, limit)
        return [self._row_to_job(row) for row in rows]

    async def list_jobs(self, filters: JobFilters) -> tuple[list[Job], int]:
        """List jobs with filters and pagination.

        Returns:
            Tuple of (jobs list, total count)
        """
        # Build WHERE clause dynamically
        conditions = []
        params: list[Any] = []
        param_idx = 1

        if filters.status:
            conditions.append(f"status = ${param_idx}")
            params.append(filters.status.value)
            param_idx += 1

        if filters.type:
            conditions.append(f"type = ${param_idx}")
            params.append(filters.type.value)
            param_idx += 1

        if filters.company_id:
            conditions.append(f"company_id = ${param_idx}")
            params.append(filters.company_id)
            param_idx += 1

        if filters.source_module:
            conditions.append(f"source_module = ${param_idx}")
            params.append(filters.source_module)
            param_idx += 1

        where_clause = ""
        if conditions:
            where_clause = "WHERE " + " AND ".join(conditions)

        query = f"""
            SELECT * FROM jobs
            {where_clause}
            ORDER BY created_at DESC
            LIMIT ${param_idx} OFFSET ${param_idx + 1}
        """
        params.extend([filters.limit, filters.offset])

        count_query = f"""
            SELECT COUNT(*) as total FROM jobs
            {where_clause}
        """

        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, *params)
            # For count, exclude limit/offset params
            count_row = await conn.fetchrow(count_query, *params[:-2])

        jobs = [self._row_to_job(row) for row in rows]
        total = count_row["total"] if count_row else 0
        return jobs, total

    async def status_counts(
        self, company_id: Optional[UUID] = None
    ) -> dict[JobStatus, int]:
        query = """
            SELECT status, COUNT(*) AS n FROM jobs
            WHERE ($1::uuid IS NULL OR company_id = $1)
            GROUP BY status
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, company_id)
        counts = {status: 0 for status in JobStatus}
        for row in rows:
            counts[JobStatus(row["status"])] = row["n"]
        return counts

    async def type_status_counts(self) -> dict[tuple[JobType, JobStatus], int]:
        query = "SELECT type, status, COUNT(*) AS n FROM jobs GROUP BY type, status"
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query)
        return {
            (JobType(row["type"]), JobStatus(row["status"])): row["n"] for row in rows
        }

    async def avg_processing_seconds(
        self, company_id: Optional[UUID] = None
    ) -> Optional[float]:
        query = """
            SELECT AVG(EXTRACT(EPOCH FROM (completed_at - started_at))) AS avg_s
            FROM jobs
            WHERE status = 'completed'
              AND started_at IS NOT NULL
              AND ($1::uuid IS NULL OR company_id = $1)
        """
        async with self._pool.acquire() as conn:
            value = await conn.fetchval(query, company_id)
        return float(value) if value is not None else None

    async def delete_terminal_before(self, cutoff: datetime) -> int:
        query = """
            DELETE FROM jobs
            WHERE status IN ('completed', 'failed', 'cancelled')
              AND completed_at < $1
            RETURNING id
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, cutoff)
        return len(rows)

    async def list_stale(
        self, cutoff: datetime, exclude: Iterable[UUID] = ()
    ) -> list[Job]:
        """Processing jobs whose worker stopped reporting (stuck or crashed)."""
        query = """
            SELECT * FROM jobs
            WHERE status = 'processing'
              AND started_at < $1
              AND NOT (id = ANY($2::uuid[]))
            ORDER BY started_at
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, cutoff, list(exclude))
        return [self._row_to_job(row) for row in rows]

    def _row_to_job(self, row) -> Job:
        """Convert a database row to a Job model."""
        progress = ensure_json(row["progress"]) or {}
        logs = ensure_json(row["logs"]) or []
        return Job(
            id=row["id"],
            type=JobType(row["type"]),
            name=row["name"],
            status=JobStatus(row["status"]),
            priority=JobPriority(row["priority"]),
            payload=ensure_json(row["payload"]) or {},
            source_module=row["source_module"],
            created_by=row["created_by"],
            company_id=row["company_id"],
            description=row["description"],
            retry_count=row["retry_count"],
            max_attempts=row["max_attempts"],
            timeout_seconds=row["timeout_seconds"],
            next_retry_at=row["next_retry_at"],
            notify_user_ids=ensure_json(row["notify_user_ids"]) or [],
            notify_on_completion=row["notify_on_completion"],
            notify_on_failure=row["notify_on_failure"],
            created_at=row["created_at"],
            scheduled_at=row["scheduled_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            progress=JobProgress(
                current=progress.get("current", 0),
                total=progress.get("total", 0),
                message=progress.get("message"),
            ),
            result=ensure_json(row["result"]) if isinstance(row["result"], str) else row["result"],
            error=row["error"],
            logs=[
                JobLogEntry(
                    level=entry["level"],
                    message=entry["message"],
                    meta=entry.get("meta"),
                    ts=datetime.fromisoformat(entry["ts"]),
                )
                for entry in logs
            ],
        )


# Parameters $2..$11 in save/compare_and_set
_MUTABLE_SET_CLAUSE = """
    status = $2,
    retry_count = $3,
    next_retry_at = $4,
    scheduled_at = $5,
    started_at = $6,
    completed_at = $7,
    progress = $8::jsonb,
    result = $9::jsonb,
    error = $10,
    logs = $11::jsonb
"""


def _mutable_params(job: Job) -> tuple:
    return (
        job.status.value,
        job.retry_count,
        job.next_retry_at,
        job.scheduled_at,
        job.started_at,
        job.completed_at,
        to_jsonb(job.progress.to_dict()),
        to_jsonb(job.result),
        job.error,
        to_jsonb([entry.to_dict() for entry in job.logs]),
    )
