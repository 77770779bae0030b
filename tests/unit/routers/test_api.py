"""Unit tests for the HTTP API."""

import asyncio
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from hrqueue.container import build_container
from hrqueue.jobs.models import JobOptions
from hrqueue.jobs.types import JobType
from hrqueue.main import create_app
from hrqueue.services.notifications.models import Channel, NotificationRequest, Recipient


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def container(settings, clock):
    return build_container(settings, senders={}, clock=clock)


@pytest.fixture
def client(settings, container):
    app = create_app(settings, use_lifespan=False)
    app.state.container = container
    with TestClient(app) as test_client:
        yield test_client


def _options(**overrides) -> JobOptions:
    return JobOptions(source_module="payroll", created_by="user-1", **overrides)


async def _boom(job, ctx):
    raise RuntimeError("ledger locked")


def _queue(container, job_type=JobType.DATA_EXPORT, **overrides):
    async def noop(job, ctx):
        return None

    if not container.jobs.registry.has_handler(job_type):
        container.jobs.register_handler(job_type, noop)
    return asyncio.run(container.jobs.queue_job(job_type, "export", {}, _options(**overrides)))


def _failed_job(container):
    container.jobs.register_handler(JobType.PAYROLL_PROCESSING, _boom)

    async def run():
        job_id = await container.jobs.queue_job(
            JobType.PAYROLL_PROCESSING, "payroll", {}, _options(retry_attempts=0)
        )
        await container.jobs.process_once()
        await container.jobs.drain()
        return job_id

    return asyncio.run(run())


# =============================================================================
# Jobs
# =============================================================================


class TestJobsEndpoints:
    def test_list_jobs(self, client, container):
        _queue(container)
        _queue(container)
        failed_id = _failed_job(container)

        response = client.get("/jobs")
        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 3
        assert data["limit"] == 50

        response = client.get("/jobs", params={"status": "failed"})
        data = response.json()
        assert data["total"] == 1
        assert data["items"][0]["id"] == str(failed_id)
        assert data["items"][0]["error"] == "ledger locked"

    def test_list_jobs_rejects_bad_filters(self, client):
        assert client.get("/jobs", params={"status": "exploded"}).status_code == 422
        assert client.get("/jobs", params={"limit": 0}).status_code == 422
        assert client.get("/jobs", params={"limit": 501}).status_code == 422

    def test_get_job(self, client, container):
        job_id = _queue(container)

        response = client.get(f"/jobs/{job_id}")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "queued"
        assert data["logs"][0]["message"] == "Job queued"

    def test_get_job_not_found(self, client):
        response = client.get(f"/jobs/{uuid4()}")
        assert response.status_code == 404
        assert response.json()["retryable"] is False

    def test_get_job_bad_id(self, client):
        assert client.get("/jobs/not-a-uuid").status_code == 422

    def test_cancel_job(self, client, container):
        job_id = _queue(container)

        response = client.post(f"/jobs/{job_id}/cancel")
        assert response.status_code == 200
        assert response.json() == {"job_id": str(job_id), "status": "cancelled"}

        response = client.post(f"/jobs/{job_id}/cancel")
        assert response.status_code == 409
        assert "cancelled" in response.json()["detail"]

    def test_cancel_unknown_job(self, client):
        assert client.post(f"/jobs/{uuid4()}/cancel").status_code == 404

    def test_retry_job(self, client, container):
        failed_id = _failed_job(container)

        response = client.post(f"/jobs/{failed_id}/retry")
        assert response.status_code == 200
        assert response.json()["status"] == "queued"

        response = client.post(f"/jobs/{failed_id}/retry")
        assert response.status_code == 409

    def test_stats(self, client, container):
        _queue(container)
        _failed_job(container)

        data = client.get("/jobs/stats").json()

        assert data["total"] == 2
        assert data["queued"] == 1
        assert data["failed"] == 1
        assert data["error_rate"] == 1.0
        assert data["health"] == "critical"

    def test_queues(self, client, container):
        _queue(container, JobType.DATA_EXPORT)

        data = client.get("/jobs/queues").json()

        queues = {q["name"]: q for q in data["queues"]}
        assert set(queues) == {"payroll", "integrations", "communications", "reporting", "maintenance"}
        assert queues["integrations"]["queued"] == 1
        assert "data_export" in queues["integrations"]["job_types"]


# =============================================================================
# Notifications
# =============================================================================


class TestNotificationEndpoints:
    def test_stats_default_window(self, client):
        data = client.get("/notifications/stats").json()
        assert data["delivered"] == 0
        assert data["failed"] == 0
        assert data["pending"] == 0

    def test_stats_counts_messages_in_window(self, client, container, clock):
        recipient = Recipient(user_id="u-1")
        asyncio.run(
            container.notifications.publish(
                NotificationRequest(title="Hi", body="x", recipients=[recipient])
            )
        )

        response = client.get(
            "/notifications/stats",
            params={
                "start": (clock.now.replace(hour=0)).isoformat(),
                "end": (clock.now.replace(hour=23)).isoformat(),
            },
        )

        assert response.status_code == 200
        assert response.json()["delivered"] == 1

    def test_stats_rejects_inverted_window(self, client):
        response = client.get(
            "/notifications/stats",
            params={"start": "2026-03-02T00:00:00Z", "end": "2026-03-01T00:00:00Z"},
        )
        assert response.status_code == 422

    def test_retry_failed(self, client, container, no_automatic_retry):
        async def seed():
            await container.notifications.publish(
                NotificationRequest(
                    title="Hi",
                    body="x",
                    recipients=[Recipient(user_id="u-1", email="a@example.com")],
                    channels=[Channel.EMAIL],
                )
            )
            # No email sender configured: the pair fails
            await container.notifications.process_pending()

        asyncio.run(seed())

        response = client.post("/notifications/retry-failed")

        assert response.status_code == 200
        assert response.json() == {"retried": 1}


# =============================================================================
# Health, metrics, root
# =============================================================================


class TestServiceEndpoints:
    def test_health_without_running_dispatch_is_degraded(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "degraded"
        assert data["dispatch_running"] is False
        assert data["store_backend"] == "memory"
        assert data["database"] is None
        assert data["channels"] == ["in_app"]
        assert data["jobs"]["health"] == "healthy"

    def test_metrics(self, client):
        client.get("/")
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "hrqueue_requests_total" in response.text

    def test_request_id_echoed(self, client):
        response = client.get("/", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["health"] == "/health"

    def test_uninitialized_container(self, settings):
        app = create_app(settings, use_lifespan=False)
        with TestClient(app) as test_client:
            response = test_client.get("/jobs")
        assert response.status_code == 503
