"""Tests for job completion/failure notifications."""

import pytest

from hrqueue.jobs.models import JobOptions
from hrqueue.jobs.types import JobType
from hrqueue.services.notifications.job_alerts import JobNotificationBridge
from hrqueue.services.notifications.models import Channel, NotificationStatus


@pytest.fixture
def bridge(bus, job_service, notification_service):
    bridge = JobNotificationBridge(bus, job_service, notification_service)
    bridge.attach()
    yield bridge
    bridge.detach()


@pytest.fixture
def in_app(bus):
    events = []
    bus.on("notification_in_app", events.append)
    return events


async def _succeed(job, ctx):
    return {"rows": 12}


async def _boom(job, ctx):
    raise RuntimeError("SFTP login refused")


async def _run(job_service, bus, handler, **options):
    job_service.register_handler(JobType.BENEFITS_SYNC, handler)
    job_id = await job_service.queue_job(
        JobType.BENEFITS_SYNC,
        "Carrier sync",
        {},
        JobOptions(source_module="benefits", created_by="hr-admin", **options),
    )
    await job_service.process_once()
    await job_service.drain()
    await bus.wait_idle()
    return job_id


class TestJobNotificationBridge:
    @pytest.mark.asyncio
    async def test_failure_notifies_in_app_and_email(
        self, bridge, job_service, bus, in_app, notification_store
    ):
        job_id = await _run(
            job_service, bus, _boom, retry_attempts=0, notify_user_ids=["u-alice"]
        )

        assert len(in_app) == 1
        event = in_app[0]
        assert event["user_id"] == "u-alice"
        assert event["title"] == "Job failed: Carrier sync"
        assert event["notification_type"] == "error"
        assert "failed after 1 attempt." in event["body"]
        assert "SFTP login refused" in event["body"]

        # Email pair waits for the delivery pass
        messages = await notification_store.list_by_status(NotificationStatus.SENDING)
        assert len(messages) == 1
        assert messages[0].channels == [Channel.IN_APP, Channel.EMAIL]
        assert messages[0].metadata == {"job_id": str(job_id), "job_type": "benefits_sync"}

    @pytest.mark.asyncio
    async def test_retry_does_not_notify(self, bridge, job_service, bus, in_app):
        await _run(job_service, bus, _boom, retry_attempts=2, notify_user_ids=["u-alice"])
        assert in_app == []

    @pytest.mark.asyncio
    async def test_failure_notification_can_be_disabled(self, bridge, job_service, bus, in_app):
        await _run(
            job_service,
            bus,
            _boom,
            retry_attempts=0,
            notify_user_ids=["u-alice"],
            notify_on_failure=False,
        )
        assert in_app == []

    @pytest.mark.asyncio
    async def test_completion_notifies_when_requested(
        self, bridge, job_service, bus, in_app, notification_store
    ):
        await _run(
            job_service,
            bus,
            _succeed,
            notify_user_ids=["u-alice", "u-bob"],
            notify_on_completion=True,
        )

        assert [e["user_id"] for e in in_app] == ["u-alice", "u-bob"]
        assert in_app[0]["title"] == "Job completed: Carrier sync"
        assert in_app[0]["notification_type"] == "success"
        delivered = await notification_store.list_by_status(NotificationStatus.DELIVERED)
        assert len(delivered) == 1

    @pytest.mark.asyncio
    async def test_completion_silent_by_default(self, bridge, job_service, bus, in_app):
        await _run(job_service, bus, _succeed, notify_user_ids=["u-alice"])
        assert in_app == []

    @pytest.mark.asyncio
    async def test_no_users_no_notification(self, bridge, job_service, bus, in_app):
        await _run(job_service, bus, _boom, retry_attempts=0)
        assert in_app == []

    @pytest.mark.asyncio
    async def test_unresolved_users_are_logged_not_raised(
        self, bridge, job_service, bus, in_app, notification_store
    ):
        await _run(job_service, bus, _boom, retry_attempts=0, notify_user_ids=["u-ghost"])
        assert in_app == []
        assert await notification_store.list_by_status(NotificationStatus.SENDING) == []

    @pytest.mark.asyncio
    async def test_detach_stops_notifications(self, bridge, job_service, bus, in_app):
        bridge.detach()
        await _run(job_service, bus, _boom, retry_attempts=0, notify_user_ids=["u-alice"])
        assert in_app == []
