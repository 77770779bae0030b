"""Tests for the background job service."""

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest

from hrqueue.config import Settings
from hrqueue.exceptions import JobValidationError, UnknownJobTypeError
from hrqueue.jobs.models import Job, JobFilters, JobOptions
from hrqueue.jobs.queues import queue_for
from hrqueue.jobs.service import BackgroundJobService
from hrqueue.jobs.types import JobPriority, JobStatus, JobType, QueueHealth


def _options(**overrides) -> JobOptions:
    base = {"source_module": "payroll", "created_by": "user-1"}
    base.update(overrides)
    return JobOptions(**base)


async def _succeed(job, ctx):
    return {"ok": True}


async def _boom(job, ctx):
    raise RuntimeError("bank file rejected")


async def _run_tick(service: BackgroundJobService) -> int:
    dispatched = await service.process_once()
    await service.drain()
    return dispatched


class TestQueueJob:
    @pytest.mark.asyncio
    async def test_queue_job_persists_queued(self, job_service, bus, recorder):
        job_service.register_handler(JobType.PAYROLL_PROCESSING, _succeed)
        bus.on("job_queued", recorder)

        job_id = await job_service.queue_job(
            JobType.PAYROLL_PROCESSING, "March payroll", {"run_id": 7}, _options()
        )

        job = await job_service.get_job(job_id)
        assert job.status == JobStatus.QUEUED
        assert job.payload == {"run_id": 7}
        assert job.max_attempts == 3
        assert job.retry_count == 0
        assert job.completed_at is None
        assert len(recorder.events) == 1
        event = recorder.events[0]
        assert event["job_id"] == job_id
        assert event["type"] == "payroll_processing"
        assert event["source_module"] == "payroll"
        assert event["queue"] == "payroll"

    @pytest.mark.asyncio
    async def test_queue_job_accepts_type_string(self, job_service):
        job_service.register_handler(JobType.REPORT_GENERATION, _succeed)
        job_id = await job_service.queue_job("report_generation", "Headcount", None, _options())
        job = await job_service.get_job(job_id)
        assert job.type == JobType.REPORT_GENERATION

    @pytest.mark.asyncio
    async def test_unknown_type_rejected_and_nothing_persisted(self, job_service, job_store):
        with pytest.raises(UnknownJobTypeError):
            await job_service.queue_job("bogus_type", "x", {}, _options())
        _, total = await job_store.list_jobs(JobFilters())
        assert total == 0

    @pytest.mark.asyncio
    async def test_type_without_handler_rejected(self, job_service):
        with pytest.raises(UnknownJobTypeError):
            await job_service.queue_job(JobType.BENEFITS_SYNC, "sync", {}, _options())

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides,field",
        [
            ({"source_module": ""}, "source_module"),
            ({"created_by": ""}, "created_by"),
            ({"delay_seconds": -1}, "delay"),
            ({"retry_attempts": -2}, "retry_attempts"),
            ({"timeout_seconds": 0}, "timeout"),
        ],
    )
    async def test_invalid_options_rejected(self, job_service, job_store, overrides, field):
        job_service.register_handler(JobType.PAYROLL_PROCESSING, _succeed)
        with pytest.raises(JobValidationError) as exc_info:
            await job_service.queue_job(
                JobType.PAYROLL_PROCESSING, "run", {}, _options(**overrides)
            )
        assert exc_info.value.field == field
        _, total = await job_store.list_jobs(JobFilters())
        assert total == 0

    @pytest.mark.asyncio
    async def test_delayed_job_waits_for_schedule(self, job_service, clock):
        job_service.register_handler(JobType.DATA_EXPORT, _succeed)
        job_id = await job_service.queue_job(
            JobType.DATA_EXPORT, "export", {}, _options(delay_seconds=300)
        )

        assert await _run_tick(job_service) == 0
        clock.advance(minutes=5)
        assert await _run_tick(job_service) == 1

        job = await job_service.get_job(job_id)
        assert job.status == JobStatus.COMPLETED


class TestExecution:
    @pytest.mark.asyncio
    async def test_successful_job_completes_with_result(self, job_service, bus, recorder):
        for event_type in ("job_started", "job_completed", "job_failed"):
            bus.on(event_type, recorder)
        job_service.register_handler(JobType.TAX_CALCULATION, _succeed)

        job_id = await job_service.queue_job(JobType.TAX_CALCULATION, "Q1 tax", {}, _options())
        assert await _run_tick(job_service) == 1

        job = await job_service.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.result == {"ok": True}
        assert job.started_at is not None
        assert job.completed_at is not None
        assert [e["status"] for e in recorder.events] == ["processing", "completed"]

    @pytest.mark.asyncio
    async def test_always_failing_job_backs_off_then_fails(
        self, job_service, clock, bus, recorder
    ):
        bus.on("job_failed", recorder)
        job_service.register_handler(JobType.PAYROLL_PROCESSING, _boom)
        job_id = await job_service.queue_job(
            JobType.PAYROLL_PROCESSING, "March payroll", {}, _options(retry_attempts=3)
        )

        gaps = []
        for expected_count in (1, 2, 3):
            assert await _run_tick(job_service) == 1
            job = await job_service.get_job(job_id)
            assert job.status == JobStatus.RETRY
            assert job.retry_count == expected_count
            gaps.append(job.next_retry_at - clock.now)

            # Not eligible until the backoff elapses
            assert await _run_tick(job_service) == 0
            clock.now = job.next_retry_at

        assert gaps == [timedelta(minutes=2), timedelta(minutes=4), timedelta(minutes=8)]

        assert await _run_tick(job_service) == 1
        job = await job_service.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.retry_count == 3
        assert job.error == "bank file rejected"
        assert job.completed_at is not None
        assert len(recorder.events) == 1

        # Terminal: never re-dispatched
        clock.advance(hours=1)
        assert await _run_tick(job_service) == 0

    @pytest.mark.asyncio
    async def test_error_is_recorded_in_logs(self, job_service):
        job_service.register_handler(JobType.PAYROLL_PROCESSING, _boom)
        job_id = await job_service.queue_job(
            JobType.PAYROLL_PROCESSING, "run", {}, _options(retry_attempts=0)
        )
        await _run_tick(job_service)

        job = await job_service.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert any(
            entry.level == "error" and entry.message == "bank file rejected"
            for entry in job.logs
        )

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self, job_service):
        async def slow(job, ctx):
            await asyncio.sleep(5)

        job_service.register_handler(JobType.DATA_IMPORT, slow)
        job_id = await job_service.queue_job(
            JobType.DATA_IMPORT, "import", {}, _options(timeout_seconds=0.01)
        )
        await _run_tick(job_service)

        job = await job_service.get_job(job_id)
        assert job.status == JobStatus.RETRY
        assert job.retry_count == 1
        assert job.error == "Job timed out after 0.01s"

    @pytest.mark.asyncio
    async def test_missing_handler_fails_without_retry(self, job_service, job_store, clock):
        job = Job(
            id=uuid4(),
            type=JobType.COMPLIANCE_CHECK,
            name="orphan",
            status=JobStatus.QUEUED,
            payload={},
            source_module="compliance",
            created_by="user-1",
            created_at=clock.now,
            scheduled_at=clock.now,
        )
        await job_store.create(job)

        assert await _run_tick(job_service) == 1
        stored = await job_service.get_job(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.retry_count == 0
        assert "No handler registered" in stored.error

    @pytest.mark.asyncio
    async def test_progress_is_published(self, job_service, bus, recorder):
        bus.on("job_progress", recorder)

        async def stepped(job, ctx):
            await ctx.report_progress(1, 4, "first quarter")
            ctx.log("info", "Halfway", step=2)
            await ctx.report_progress(2)
            return {"steps": 4}

        job_service.register_handler(JobType.PAY_STUB_GENERATION, stepped)
        job_id = await job_service.queue_job(
            JobType.PAY_STUB_GENERATION, "stubs", {}, _options()
        )
        await _run_tick(job_service)

        percentages = [e["progress"]["percentage"] for e in recorder.events]
        assert percentages == [25.0, 50.0]
        assert recorder.events[1]["progress"]["message"] == "first quarter"

        job = await job_service.get_job(job_id)
        assert job.progress.current == 4
        assert any(entry.message == "Halfway" for entry in job.logs)

    @pytest.mark.asyncio
    async def test_second_registration_replaces_first(self, job_service):
        async def first(job, ctx):
            return "first"

        async def second(job, ctx):
            return "second"

        job_service.register_handler(JobType.COMPLIANCE_CHECK, first)
        job_service.register_handler(JobType.COMPLIANCE_CHECK, second)
        job_id = await job_service.queue_job(JobType.COMPLIANCE_CHECK, "I-9 audit", {}, _options())
        await _run_tick(job_service)

        assert (await job_service.get_job(job_id)).result == "second"


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_processing_never_exceeds_capacity(self, job_store, bus, clock):
        service = BackgroundJobService(
            store=job_store,
            bus=bus,
            settings=Settings(_env_file=None, max_concurrent_jobs=2),
            clock=clock,
        )
        release = asyncio.Event()
        running = 0
        peak = 0

        async def held(job, ctx):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await release.wait()
            running -= 1

        service.register_handler(JobType.BENEFITS_SYNC, held)
        for i in range(5):
            await service.queue_job(JobType.BENEFITS_SYNC, f"sync {i}", {}, _options())

        assert await service.process_once() == 2
        assert await service.process_once() == 0
        await asyncio.sleep(0)

        counts = await job_store.status_counts()
        assert counts[JobStatus.PROCESSING] == 2
        assert counts[JobStatus.QUEUED] == 3
        assert service.active_count == 2

        release.set()
        await service.drain()
        while await _run_tick(service):
            pass

        counts = await job_store.status_counts()
        assert counts[JobStatus.COMPLETED] == 5
        assert peak <= 2

    @pytest.mark.asyncio
    async def test_twelve_jobs_with_ten_slots(self, job_service, job_store):
        release = asyncio.Event()
        # Per-queue limits are advisory; only max_concurrent_jobs gates dispatch
        assert queue_for(JobType.PAY_STUB_GENERATION).max_concurrency < 10

        async def held(job, ctx):
            await release.wait()

        job_service.register_handler(JobType.PAY_STUB_GENERATION, held)
        for i in range(12):
            await job_service.queue_job(JobType.PAY_STUB_GENERATION, f"stub {i}", {}, _options())

        assert await job_service.process_once() == 10
        counts = await job_store.status_counts()
        assert counts[JobStatus.PROCESSING] == 10
        assert counts[JobStatus.QUEUED] == 2

        release.set()
        await job_service.drain()
        assert await job_service.process_once() == 2
        await job_service.drain()
        counts = await job_store.status_counts()
        assert counts[JobStatus.COMPLETED] == 12

    @pytest.mark.asyncio
    async def test_dispatch_order_follows_priority(self, job_store, bus, clock):
        service = BackgroundJobService(
            store=job_store,
            bus=bus,
            settings=Settings(_env_file=None, max_concurrent_jobs=1),
            clock=clock,
        )
        order = []

        async def record(job, ctx):
            order.append(job.name)

        service.register_handler(JobType.REPORT_GENERATION, record)
        for priority in (
            JobPriority.LOW,
            JobPriority.NORMAL,
            JobPriority.CRITICAL,
            JobPriority.HIGH,
        ):
            await service.queue_job(
                JobType.REPORT_GENERATION, priority.value, {}, _options(priority=priority)
            )
            clock.advance(seconds=1)

        while await _run_tick(service):
            pass

        assert order == ["critical", "high", "normal", "low"]


class TestCancelAndRetry:
    @pytest.mark.asyncio
    async def test_cancel_queued_job(self, job_service, bus, recorder):
        bus.on("job_cancelled", recorder)
        job_service.register_handler(JobType.DATA_EXPORT, _succeed)
        job_id = await job_service.queue_job(JobType.DATA_EXPORT, "export", {}, _options())

        assert await job_service.cancel_job(job_id) is True
        job = await job_service.get_job(job_id)
        assert job.status == JobStatus.CANCELLED
        assert job.completed_at is not None
        assert len(recorder.events) == 1

        # Terminal: a second cancel and dispatch are no-ops
        assert await job_service.cancel_job(job_id) is False
        assert await _run_tick(job_service) == 0

    @pytest.mark.asyncio
    async def test_cancel_retry_job(self, job_service):
        job_service.register_handler(JobType.PAYROLL_PROCESSING, _boom)
        job_id = await job_service.queue_job(JobType.PAYROLL_PROCESSING, "run", {}, _options())
        await _run_tick(job_service)
        assert (await job_service.get_job(job_id)).status == JobStatus.RETRY

        assert await job_service.cancel_job(job_id) is True
        assert (await job_service.get_job(job_id)).status == JobStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cannot_cancel_processing_job(self, job_service):
        release = asyncio.Event()

        async def held(job, ctx):
            await release.wait()

        job_service.register_handler(JobType.DOCUMENT_GENERATION, held)
        job_id = await job_service.queue_job(
            JobType.DOCUMENT_GENERATION, "w2", {}, _options()
        )
        await job_service.process_once()

        assert await job_service.cancel_job(job_id) is False
        release.set()
        await job_service.drain()
        assert (await job_service.get_job(job_id)).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cannot_cancel_finished_jobs(self, job_service):
        job_service.register_handler(JobType.TAX_CALCULATION, _succeed)
        job_service.register_handler(JobType.PAYROLL_PROCESSING, _boom)
        done = await job_service.queue_job(JobType.TAX_CALCULATION, "ok", {}, _options())
        failed = await job_service.queue_job(
            JobType.PAYROLL_PROCESSING, "bad", {}, _options(retry_attempts=0)
        )
        await _run_tick(job_service)

        assert await job_service.cancel_job(done) is False
        assert await job_service.cancel_job(failed) is False
        assert await job_service.cancel_job(uuid4()) is False

    @pytest.mark.asyncio
    async def test_retry_failed_job(self, job_service):
        job_service.register_handler(JobType.PAYROLL_PROCESSING, _boom)
        job_id = await job_service.queue_job(
            JobType.PAYROLL_PROCESSING, "run", {}, _options(retry_attempts=0)
        )
        await _run_tick(job_service)

        assert await job_service.retry_job(job_id) is True
        job = await job_service.get_job(job_id)
        assert job.status == JobStatus.QUEUED
        assert job.retry_count == 1
        assert job.error is None
        assert job.completed_at is None
        assert job.next_retry_at is None

        # Still failing: manual retries do not buy automatic ones
        await _run_tick(job_service)
        job = await job_service.get_job(job_id)
        assert job.status == JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_retry_only_from_failed(self, job_service):
        job_service.register_handler(JobType.TAX_CALCULATION, _succeed)
        job_id = await job_service.queue_job(JobType.TAX_CALCULATION, "ok", {}, _options())

        assert await job_service.retry_job(job_id) is False
        await _run_tick(job_service)
        assert await job_service.retry_job(job_id) is False
        assert (await job_service.get_job(job_id)).status == JobStatus.COMPLETED


class TestStatsAndCleanup:
    def _job(self, clock, status, **fields) -> Job:
        return Job(
            id=uuid4(),
            type=fields.pop("type", JobType.PAYROLL_PROCESSING),
            name="seeded",
            status=status,
            payload={},
            source_module="payroll",
            created_by="user-1",
            created_at=clock.now,
            scheduled_at=clock.now,
            **fields,
        )

    @pytest.mark.asyncio
    async def test_stats_health_classification(self, job_service, job_store, clock):
        for _ in range(9):
            await job_store.create(
                self._job(
                    clock,
                    JobStatus.COMPLETED,
                    started_at=clock.now - timedelta(seconds=10),
                    completed_at=clock.now,
                )
            )
        await job_store.create(self._job(clock, JobStatus.FAILED, completed_at=clock.now))

        stats = await job_service.get_job_stats()
        assert stats.total == 10
        assert stats.error_rate == pytest.approx(0.1)
        assert stats.avg_processing_seconds == pytest.approx(10.0)
        assert stats.health == QueueHealth.WARNING

        for _ in range(3):
            await job_store.create(self._job(clock, JobStatus.FAILED, completed_at=clock.now))
        stats = await job_service.get_job_stats()
        assert stats.health == QueueHealth.CRITICAL

    @pytest.mark.asyncio
    async def test_empty_queue_is_healthy(self, job_service):
        stats = await job_service.get_job_stats()
        assert stats.total == 0
        assert stats.error_rate == 0.0
        assert stats.health == QueueHealth.HEALTHY

    @pytest.mark.asyncio
    async def test_queues_aggregate_by_job_type(self, job_service, job_store, clock):
        await job_store.create(self._job(clock, JobStatus.QUEUED))
        await job_store.create(self._job(clock, JobStatus.RETRY, type=JobType.TAX_CALCULATION))
        await job_store.create(self._job(clock, JobStatus.FAILED, type=JobType.EMAIL_BATCH))

        queues = {q.name: q for q in await job_service.get_queues()}
        assert queues["payroll"].queued == 2
        assert queues["communications"].failed == 1
        assert queues["maintenance"].queued == 0

    @pytest.mark.asyncio
    async def test_query_jobs_clamps_limit(self, job_service, job_store, clock):
        for _ in range(3):
            await job_store.create(self._job(clock, JobStatus.QUEUED))
            clock.advance(seconds=1)

        filters = JobFilters(limit=10_000)
        jobs, total = await job_service.query_jobs(filters)
        assert filters.limit == 500
        assert total == 3
        assert jobs[0].created_at > jobs[-1].created_at

    @pytest.mark.asyncio
    async def test_cleanup_deletes_old_terminal_and_reaps_stale(
        self, job_service, job_store, clock
    ):
        old = self._job(clock, JobStatus.COMPLETED, completed_at=clock.now - timedelta(days=31))
        recent = self._job(clock, JobStatus.FAILED, completed_at=clock.now - timedelta(days=2))
        stuck = self._job(
            clock, JobStatus.PROCESSING, started_at=clock.now - timedelta(minutes=45)
        )
        for job in (old, recent, stuck):
            await job_store.create(job)

        assert await job_service.cleanup() == 1
        assert await job_store.get(old.id) is None
        assert await job_store.get(recent.id) is not None
        reaped = await job_store.get(stuck.id)
        assert reaped.status == JobStatus.RETRY
        assert reaped.retry_count == 1
        assert reaped.next_retry_at == clock.now + timedelta(minutes=2)
        assert reaped.error == "Job exceeded stale timeout of 30 minutes"

    @pytest.mark.asyncio
    async def test_reap_stale_applies_backoff_then_fails(
        self, job_service, job_store, clock, bus, recorder
    ):
        bus.on("job_failed", recorder)
        stuck = self._job(
            clock,
            JobStatus.PROCESSING,
            started_at=clock.now - timedelta(minutes=31),
            retry_count=2,
            max_attempts=3,
        )
        await job_store.create(stuck)

        assert await job_service.reap_stale() == 1
        job = await job_store.get(stuck.id)
        assert job.status == JobStatus.RETRY
        assert job.retry_count == 3
        assert job.next_retry_at == clock.now + timedelta(minutes=8)

        # Attempts used up: the next stale pass fails it for good
        job.status = JobStatus.PROCESSING
        job.started_at = clock.now
        await job_store.save(job)
        clock.advance(minutes=31)

        assert await job_service.reap_stale() == 1
        job = await job_store.get(stuck.id)
        assert job.status == JobStatus.FAILED
        assert job.retry_count == 3
        assert job.next_retry_at is None
        assert job.completed_at == clock.now
        await bus.wait_idle()
        assert [e["job_id"] for e in recorder.events] == [stuck.id]

    @pytest.mark.asyncio
    async def test_reap_stale_leaves_recent_jobs(self, job_service, job_store, clock):
        fresh = self._job(
            clock, JobStatus.PROCESSING, started_at=clock.now - timedelta(minutes=5)
        )
        await job_store.create(fresh)

        assert await job_service.reap_stale() == 0
        assert (await job_store.get(fresh.id)).status == JobStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_lost_outcome_write_is_recovered_with_backoff(
        self, job_service, job_store, clock, monkeypatch
    ):
        job_service.register_handler(JobType.DATA_EXPORT, _succeed)
        job_id = await job_service.queue_job(JobType.DATA_EXPORT, "export", {}, _options())

        real_cas = job_store.compare_and_set
        calls = {"n": 0}

        async def flaky_cas(job, expected):
            calls["n"] += 1
            # First call is the claim; the second records the outcome
            if calls["n"] == 2:
                raise ConnectionError("db down")
            return await real_cas(job, expected)

        monkeypatch.setattr(job_store, "compare_and_set", flaky_cas)
        await _run_tick(job_service)
        assert (await job_store.get(job_id)).status == JobStatus.PROCESSING

        clock.advance(minutes=31)
        assert await job_service.reap_stale() == 1

        job = await job_store.get(job_id)
        assert job.status == JobStatus.RETRY
        assert job.retry_count == 1
        assert job.next_retry_at == clock.now + timedelta(minutes=2)

    @pytest.mark.asyncio
    async def test_reap_loop_runs_on_its_own_interval(self, job_store, bus, clock):
        settings = Settings(_env_file=None, job_reap_interval_s=0.01)
        service = BackgroundJobService(store=job_store, bus=bus, settings=settings, clock=clock)
        stuck = self._job(
            clock, JobStatus.PROCESSING, started_at=clock.now - timedelta(hours=1)
        )
        await job_store.create(stuck)

        await service.start()
        try:
            for _ in range(100):
                if (await job_store.get(stuck.id)).status == JobStatus.RETRY:
                    break
                await asyncio.sleep(0.01)
        finally:
            await service.stop()
        assert (await job_store.get(stuck.id)).status == JobStatus.RETRY


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_loop_dispatches_on_wake(self, job_service):
        job_service.register_handler(JobType.TAX_CALCULATION, _succeed)
        await job_service.start()
        try:
            job_id = await job_service.queue_job(JobType.TAX_CALCULATION, "q", {}, _options())
            for _ in range(50):
                job = await job_service.get_job(job_id)
                if job.status == JobStatus.COMPLETED:
                    break
                await asyncio.sleep(0.01)
            assert job.status == JobStatus.COMPLETED
        finally:
            await job_service.stop()
        assert job_service.is_running is False

    @pytest.mark.asyncio
    async def test_stop_returns_interrupted_job_to_retry(self, job_service):
        async def forever(job, ctx):
            await asyncio.Event().wait()

        job_service.register_handler(JobType.DATA_IMPORT, forever)
        await job_service.start()
        job_id = await job_service.queue_job(JobType.DATA_IMPORT, "import", {}, _options())
        for _ in range(50):
            if job_service.active_count:
                break
            await asyncio.sleep(0.01)

        await job_service.stop(timeout=0.01)

        job = await job_service.get_job(job_id)
        assert job.status == JobStatus.RETRY
        assert job.retry_count == 0
