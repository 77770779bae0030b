"""Background job service - queues, dispatches and retries jobs.

Feature modules submit work with queue_job() and register one handler per
job type. A polling loop picks up eligible jobs up to the concurrency cap,
runs each handler as its own task and records the outcome:

    queued -> processing -> completed
                         -> retry  (handler failed, attempts remain)
                         -> failed (attempts exhausted)
    retry  -> processing
    queued / retry -> cancelled
    failed -> queued   (manual retry_job)

Lifecycle events are emitted on the EventBus for dashboards and the job
notification bridge.
"""

import asyncio
import time
import traceback
from datetime import datetime, timedelta
from typing import Any, Callable, Optional
from uuid import UUID, uuid4

import structlog
from prometheus_client import Counter, Gauge, Histogram

from hrqueue.config import Settings, get_settings
from hrqueue.exceptions import JobValidationError, UnknownJobTypeError
from hrqueue.jobs.models import (
    Job,
    JobFilters,
    JobOptions,
    JobProgress,
    JobQueue,
    JobStats,
    utcnow,
)
from hrqueue.jobs.queues import QUEUES, queue_for
from hrqueue.jobs.registry import JobHandler, JobRegistry, PayloadValidator
from hrqueue.jobs.types import JobStatus, JobType, QueueHealth
from hrqueue.repositories.jobs import JobStore
from hrqueue.services.events import EventBus, job_event
from hrqueue.services.events import schemas as events

logger = structlog.get_logger(__name__)

MAX_QUERY_LIMIT = 500

JOBS_QUEUED = Counter(
    "hrqueue_jobs_queued_total",
    "Jobs accepted into the queue",
    ["type"],
)
JOBS_FINISHED = Counter(
    "hrqueue_jobs_finished_total",
    "Job attempts finished, by outcome",
    ["type", "status"],
)
JOBS_PROCESSING = Gauge(
    "hrqueue_jobs_processing",
    "Jobs currently processing in this process",
)
JOB_DURATION = Histogram(
    "hrqueue_job_duration_seconds",
    "Handler execution time",
    ["type"],
    buckets=[0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0],
)


class JobContext:
    """Execution context handed to a handler alongside its job."""

    def __init__(self, service: "BackgroundJobService", job: Job):
        self._service = service
        self.job = job

    async def report_progress(
        self,
        current: int,
        total: Optional[int] = None,
        message: Optional[str] = None,
    ) -> None:
        """Update advisory progress and publish a job_progress event."""
        progress = self.job.progress
        self.job.progress = JobProgress(
            current=current,
            total=progress.total if total is None else total,
            message=message if message is not None else progress.message,
        )
        await self._service._persist_progress(self.job)

    def log(self, level: str, message: str, **meta: Any) -> None:
        """Append a structured entry to the job's log."""
        self.job.add_log(level, message, **meta)


class BackgroundJobService:
    """Schedules, dispatches and retries background jobs."""

    def __init__(
        self,
        store: JobStore,
        bus: EventBus,
        registry: Optional[JobRegistry] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        settings = settings or get_settings()
        self._store = store
        self._bus = bus
        self._registry = registry or JobRegistry()
        self._settings = settings
        self._clock = clock or utcnow

        self._max_concurrent = settings.max_concurrent_jobs
        self._poll_interval = settings.job_poll_interval_s

        # Jobs currently processing in this process, keyed by id
        self._active: dict[UUID, Job] = {}
        self._tasks: dict[UUID, asyncio.Task] = {}
        self._dispatch_lock = asyncio.Lock()
        self._wake_event = asyncio.Event()

        self._running = False
        self._loops: list[asyncio.Task] = []

    @property
    def registry(self) -> JobRegistry:
        return self._registry

    @property
    def max_concurrent_jobs(self) -> int:
        return self._max_concurrent

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Submission and registration
    # ------------------------------------------------------------------

    def register_handler(
        self,
        job_type: JobType,
        handler: JobHandler,
        validate_payload: Optional[PayloadValidator] = None,
    ) -> None:
        """
        Register the handler for a job type (last registration wins).

        validate_payload, when given, runs on every submission of the type so
        a payload the handler can never accept is rejected by queue_job()
        instead of failing on the dispatch loop.
        """
        self._registry.register(job_type, handler, validate_payload)

    async def queue_job(
        self,
        job_type: JobType | str,
        name: str,
        payload: Optional[dict[str, Any]] = None,
        options: Optional[JobOptions] = None,
    ) -> UUID:
        """
        Accept a job submission.

        Args:
            job_type: One of the supported job types
            name: Human label for dashboards
            payload: Handler-specific parameters
            options: Attribution, priority, delay, retry and timeout options

        Returns:
            The new job id. Execution happens later on the dispatch loop.

        Raises:
            UnknownJobTypeError: Type unsupported or has no handler
            JobValidationError: Missing attribution, invalid options or a
                payload the type's validator rejects
        """
        options = options or JobOptions()
        resolved_type = self._validate_submission(job_type, name, payload, options)

        now = self._clock()
        retry_attempts = (
            options.retry_attempts
            if options.retry_attempts is not None
            else self._settings.job_default_retry_attempts
        )
        job = Job(
            id=uuid4(),
            type=resolved_type,
            name=name,
            status=JobStatus.QUEUED,
            payload=dict(payload or {}),
            source_module=options.source_module,
            created_by=options.created_by,
            company_id=options.company_id,
            description=options.description,
            priority=options.priority,
            max_attempts=retry_attempts,
            timeout_seconds=options.timeout_seconds,
            notify_user_ids=list(options.notify_user_ids),
            notify_on_completion=options.notify_on_completion,
            notify_on_failure=options.notify_on_failure,
            created_at=now,
            scheduled_at=now + timedelta(seconds=options.delay_seconds),
        )
        job.add_log("info", "Job queued", delay_seconds=options.delay_seconds)

        await self._store.create(job)
        JOBS_QUEUED.labels(type=job.type.value).inc()
        queue = queue_for(job.type)

        logger.info(
            "job_queued",
            job_id=str(job.id),
            job_type=job.type.value,
            queue=queue.name,
            source_module=job.source_module,
            priority=job.priority.value,
            delay_seconds=options.delay_seconds,
        )
        self._emit(events.JOB_QUEUED, job, priority=job.priority.value, queue=queue.name)

        if options.delay_seconds == 0:
            self.wake()
        return job.id

    def _validate_submission(
        self,
        job_type: JobType | str,
        name: str,
        payload: Optional[dict[str, Any]],
        options: JobOptions,
    ) -> JobType:
        try:
            resolved = JobType(job_type)
        except ValueError:
            raise UnknownJobTypeError(str(job_type)) from None

        if not self._registry.has_handler(resolved):
            raise UnknownJobTypeError(resolved.value)
        if not name or not name.strip():
            raise JobValidationError("Job name is required", field="name")
        if payload is not None and not isinstance(payload, dict):
            raise JobValidationError("Payload must be a mapping", field="payload")
        if not options.source_module:
            raise JobValidationError("source_module is required", field="source_module")
        if not options.created_by:
            raise JobValidationError("created_by is required", field="created_by")
        if options.delay_seconds < 0:
            raise JobValidationError("delay must be non-negative", field="delay")
        if options.retry_attempts is not None and options.retry_attempts < 0:
            raise JobValidationError(
                "retry_attempts must be non-negative", field="retry_attempts"
            )
        if options.timeout_seconds is not None and options.timeout_seconds <= 0:
            raise JobValidationError("timeout must be positive", field="timeout")
        self._registry.validate_payload(resolved, payload or {})
        return resolved

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_job(self, job_id: UUID) -> Optional[Job]:
        """Get a job: in-flight copy first, then the store."""
        active = self._active.get(job_id)
        if active is not None:
            return active
        return await self._store.get(job_id)

    async def query_jobs(self, filters: Optional[JobFilters] = None) -> tuple[list[Job], int]:
        """Filtered, paginated jobs, newest first."""
        filters = filters or JobFilters()
        filters.limit = max(1, min(filters.limit, MAX_QUERY_LIMIT))
        filters.offset = max(0, filters.offset)
        jobs, total = await self._store.list_jobs(filters)
        return [self._active.get(job.id, job) for job in jobs], total

    async def get_job_stats(self, company_id: Optional[UUID] = None) -> JobStats:
        """Aggregate counts with a derived health classification."""
        counts = await self._store.status_counts(company_id)
        stats = JobStats(
            total=sum(counts.values()),
            queued=counts.get(JobStatus.QUEUED, 0),
            processing=counts.get(JobStatus.PROCESSING, 0),
            completed=counts.get(JobStatus.COMPLETED, 0),
            failed=counts.get(JobStatus.FAILED, 0),
            retry=counts.get(JobStatus.RETRY, 0),
            cancelled=counts.get(JobStatus.CANCELLED, 0),
            avg_processing_seconds=await self._store.avg_processing_seconds(company_id),
        )
        stats.health = self._classify_health(stats)
        return stats

    def _classify_health(self, stats: JobStats) -> QueueHealth:
        s = self._settings
        if (
            stats.error_rate >= s.job_health_critical_error_rate
            or stats.queue_depth >= s.job_health_critical_queue_depth
        ):
            return QueueHealth.CRITICAL
        if (
            stats.error_rate >= s.job_health_warning_error_rate
            or stats.queue_depth >= s.job_health_warning_queue_depth
        ):
            return QueueHealth.WARNING
        return QueueHealth.HEALTHY

    async def get_queues(self) -> list[JobQueue]:
        """Snapshot of the named queue aggregates."""
        counts = await self._store.type_status_counts()
        queues = []
        for definition in QUEUES:
            queue = JobQueue(
                name=definition.name,
                description=definition.description,
                priority=definition.priority,
                max_concurrency=definition.max_concurrency,
                job_types=definition.job_types,
            )
            for (job_type, status), n in counts.items():
                if job_type not in definition.job_types:
                    continue
                if status in (JobStatus.QUEUED, JobStatus.RETRY):
                    queue.queued += n
                elif status == JobStatus.PROCESSING:
                    queue.processing += n
                elif status == JobStatus.COMPLETED:
                    queue.completed += n
                elif status == JobStatus.FAILED:
                    queue.failed += n
            queues.append(queue)
        return queues

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def cancel_job(self, job_id: UUID) -> bool:
        """Cancel a job that has not been picked up. False otherwise."""
        if job_id in self._active:
            return False
        job = await self._store.get(job_id)
        if job is None or not job.status.is_cancellable:
            return False

        previous = job.status
        job.status = JobStatus.CANCELLED
        job.completed_at = self._clock()
        job.next_retry_at = None
        job.add_log("info", "Job cancelled", previous_status=previous.value)

        if not await self._store.compare_and_set(job, (previous,)):
            return False

        logger.info("job_cancelled", job_id=str(job_id), previous_status=previous.value)
        self._emit(events.JOB_CANCELLED, job)
        return True

    async def retry_job(self, job_id: UUID) -> bool:
        """Re-queue a failed job. False if the job is not failed."""
        job = await self._store.get(job_id)
        if job is None or job.status != JobStatus.FAILED:
            return False

        now = self._clock()
        job.status = JobStatus.QUEUED
        job.retry_count += 1
        job.error = None
        job.next_retry_at = None
        job.completed_at = None
        job.scheduled_at = now
        job.add_log("info", "Manual retry requested", retry_count=job.retry_count)

        if not await self._store.compare_and_set(job, (JobStatus.FAILED,)):
            return False

        logger.info("job_manual_retry", job_id=str(job_id), retry_count=job.retry_count)
        self._emit(events.JOB_QUEUED, job, manual_retry=True)
        self.wake()
        return True

    async def cleanup(self, older_than: Optional[timedelta] = None) -> int:
        """Delete old terminal jobs and reap stuck ones. Returns deleted count."""
        now = self._clock()
        retention = older_than or timedelta(days=self._settings.job_retention_days)
        deleted = await self._store.delete_terminal_before(now - retention)
        reaped = await self.reap_stale()

        logger.info("job_cleanup_completed", deleted=deleted, reaped=reaped)
        return deleted

    async def reap_stale(self) -> int:
        """
        Recover jobs stuck in processing.

        A job left in processing for longer than job_stale_timeout_minutes,
        and not running in this process, counts as a failed attempt: it goes
        to retry with the usual backoff, or to failed once its attempts are
        used up.

        Returns:
            Number of jobs moved out of processing.
        """
        minutes = self._settings.job_stale_timeout_minutes
        cutoff = self._clock() - timedelta(minutes=minutes)
        stale = await self._store.list_stale(cutoff, exclude=list(self._active))

        reaped = 0
        for job in stale:
            error = f"Job exceeded stale timeout of {minutes} minutes"
            if await self._fail(job, error, should_retry=True):
                reaped += 1
        if reaped:
            logger.warning("stale_jobs_reaped", count=reaped)
        return reaped

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def wake(self) -> None:
        """Wake the dispatch loop ahead of its next poll."""
        self._wake_event.set()

    async def process_once(self) -> int:
        """
        Run one dispatch tick.

        Pulls eligible jobs up to the remaining capacity and starts a task for
        each. Capacity and claims are computed under a lock, and each claim is
        a compare-and-set on the stored status, so the processing count never
        exceeds max_concurrent_jobs.

        Returns:
            Number of jobs dispatched.
        """
        async with self._dispatch_lock:
            capacity = self._max_concurrent - len(self._active)
            if capacity <= 0:
                return 0

            now = self._clock()
            candidates = await self._store.list_eligible(now, capacity)
            dispatched = 0
            for job in candidates:
                if dispatched >= capacity:
                    break
                if job.id in self._active:
                    continue
                if await self._claim(job, now):
                    dispatched += 1
            return dispatched

    async def _claim(self, job: Job, now: datetime) -> bool:
        previous = job.status
        job.status = JobStatus.PROCESSING
        job.started_at = now
        job.next_retry_at = None
        job.add_log("info", "Job started", attempt=job.retry_count + 1)

        # Lost the race to a cancel or another worker
        if not await self._store.compare_and_set(job, (previous,)):
            return False

        self._active[job.id] = job
        JOBS_PROCESSING.set(len(self._active))
        self._emit(events.JOB_STARTED, job)

        task = asyncio.create_task(self._execute(job), name=f"job-{job.id}")
        self._tasks[job.id] = task
        task.add_done_callback(lambda _t, job_id=job.id: self._tasks.pop(job_id, None))
        return True

    async def _execute(self, job: Job) -> None:
        """Run a job's handler and record the outcome."""
        log = logger.bind(job_id=str(job.id), job_type=job.type.value)
        log.info("job_executing", attempt=job.retry_count + 1)
        started = time.monotonic()

        try:
            try:
                handler = self._registry.get_handler(job.type)
            except KeyError as e:
                error = str(e.args[0]) if e.args else str(e)
                log.error("job_no_handler", error=error)
                await self._fail(job, error, should_retry=False)
                return

            try:
                result = await self._invoke(handler, job)
            except asyncio.CancelledError:
                await self._interrupt(job)
                raise
            except asyncio.TimeoutError:
                error = f"Job timed out after {job.timeout_seconds}s"
                log.warning("job_timed_out", timeout_seconds=job.timeout_seconds)
                await self._fail(job, error, should_retry=True)
            except JobValidationError as e:
                # Retrying cannot fix a payload the handler rejects
                log.warning("job_payload_rejected", error=str(e), field=e.field)
                await self._fail(job, str(e), should_retry=False)
            except Exception as e:
                error = str(e) or type(e).__name__
                log.error(
                    "job_handler_failed", error=error, traceback=traceback.format_exc()
                )
                await self._fail(job, error, should_retry=True)
            else:
                await self._complete(job, result)
        finally:
            JOB_DURATION.labels(type=job.type.value).observe(time.monotonic() - started)
            self._active.pop(job.id, None)
            JOBS_PROCESSING.set(len(self._active))
            self.wake()

    async def _invoke(self, handler: JobHandler, job: Job) -> Any:
        ctx = JobContext(self, job)
        if job.timeout_seconds:
            return await asyncio.wait_for(handler(job, ctx), timeout=job.timeout_seconds)
        return await handler(job, ctx)

    async def _complete(self, job: Job, result: Any) -> None:
        job.status = JobStatus.COMPLETED
        job.result = result
        job.error = None
        job.completed_at = self._clock()
        if job.progress.total:
            job.progress.current = job.progress.total
        job.add_log("info", "Job completed successfully")

        if not await self._record(job):
            return

        JOBS_FINISHED.labels(type=job.type.value, status=job.status.value).inc()
        logger.info(
            "job_completed",
            job_id=str(job.id),
            job_type=job.type.value,
            duration_s=job.processing_seconds,
        )
        self._emit(events.JOB_COMPLETED, job, result=result)

    async def _fail(self, job: Job, error: str, should_retry: bool) -> bool:
        now = self._clock()
        job.error = error
        job.add_log("error", error, attempt=job.retry_count + 1)

        if should_retry and job.retry_count < job.max_attempts:
            job.retry_count += 1
            job.status = JobStatus.RETRY
            job.next_retry_at = now + self._backoff(job.retry_count)
            event_type = events.JOB_RETRY_SCHEDULED
        else:
            job.status = JobStatus.FAILED
            job.next_retry_at = None
            job.completed_at = now
            event_type = events.JOB_FAILED

        if not await self._record(job):
            return False

        JOBS_FINISHED.labels(type=job.type.value, status=job.status.value).inc()
        if job.status == JobStatus.RETRY:
            logger.info(
                "job_retry_scheduled",
                job_id=str(job.id),
                retry_count=job.retry_count,
                next_retry_at=job.next_retry_at.isoformat(),
            )
        else:
            logger.warning("job_failed", job_id=str(job.id), error=error)
        self._emit(event_type, job, error=error, next_retry_at=job.next_retry_at)
        return True

    async def _interrupt(self, job: Job) -> None:
        """Return a job interrupted by shutdown to retry without using an attempt."""
        job.status = JobStatus.RETRY
        job.next_retry_at = None
        job.add_log("warn", "Job interrupted by shutdown")
        await self._record(job)

    async def _record(self, job: Job) -> bool:
        """Persist the outcome of a processing job."""
        try:
            if await self._store.compare_and_set(job, (JobStatus.PROCESSING,)):
                return True
            logger.warning(
                "job_outcome_discarded",
                job_id=str(job.id),
                status=job.status.value,
            )
        except Exception as e:
            # Left in processing until reap_stale picks it up
            logger.error(
                "job_store_update_failed",
                job_id=str(job.id),
                status=job.status.value,
                error=str(e),
            )
        return False

    async def _persist_progress(self, job: Job) -> None:
        try:
            await self._store.save(job)
        except Exception as e:
            logger.warning("job_progress_save_failed", job_id=str(job.id), error=str(e))
        self._emit(events.JOB_PROGRESS, job, progress=job.progress.to_dict())

    def _backoff(self, retry_count: int) -> timedelta:
        """Exponential backoff: base * 2^retry_count minutes."""
        return timedelta(minutes=self._settings.job_backoff_base_minutes * (2**retry_count))

    def _emit(self, event_type: str, job: Job, **extra: Any) -> None:
        self._bus.emit(event_type, job_event(job, **extra))

    # ------------------------------------------------------------------
    # Loop lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the dispatch, stale-reap and cleanup loops."""
        if self._running:
            return
        self._running = True
        self._loops = [
            asyncio.create_task(self._dispatch_loop(), name="job-dispatch"),
            asyncio.create_task(self._reap_loop(), name="job-reap"),
            asyncio.create_task(self._cleanup_loop(), name="job-cleanup"),
        ]
        logger.info(
            "job_service_started",
            max_concurrent_jobs=self._max_concurrent,
            poll_interval_s=self._poll_interval,
            handlers=[jt.value for jt in self._registry.registered_types()],
        )

    async def stop(self, timeout: float = 30.0) -> None:
        """Stop the loops, wait up to timeout for running jobs, then cancel them."""
        if not self._running:
            return
        self._running = False
        for task in self._loops:
            task.cancel()
        await asyncio.gather(*self._loops, return_exceptions=True)
        self._loops = []

        in_flight = list(self._tasks.values())
        if in_flight:
            _, pending = await asyncio.wait(in_flight, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        logger.info("job_service_stopped", in_flight=len(in_flight))

    async def drain(self) -> None:
        """Wait until no handler task is in flight."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def _dispatch_loop(self) -> None:
        while self._running:
            self._wake_event.clear()
            try:
                await self.process_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "dispatch_loop_error", error=str(e), traceback=traceback.format_exc()
                )
            try:
                await asyncio.wait_for(self._wake_event.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass

    async def _cleanup_loop(self) -> None:
        interval = self._settings.job_cleanup_interval_hours * 3600
        while self._running:
            await asyncio.sleep(interval)
            try:
                await self.cleanup()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("job_cleanup_error", error=str(e))

    async def _reap_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._settings.job_reap_interval_s)
            try:
                await self.reap_stale()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("job_reap_error", error=str(e))
