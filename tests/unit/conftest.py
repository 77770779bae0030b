"""Shared fixtures for unit tests."""

from datetime import datetime, timedelta, timezone

import pytest

from hrqueue.config import Settings
from hrqueue.jobs.service import BackgroundJobService
from hrqueue.repositories import (
    InMemoryJobStore,
    InMemoryNotificationStore,
    InMemoryRecipientDirectory,
    InMemoryTemplateStore,
)
from hrqueue.services.events import EventBus
from hrqueue.services.notifications.models import Channel, Recipient
from hrqueue.services.notifications.service import NotificationService


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingListener:
    """Collects every event it receives."""

    def __init__(self):
        self.events = []

    def __call__(self, event):
        self.events.append(event)


class FakeSender:
    """Channel sender with scripted results."""

    def __init__(self, channel: Channel, results=None):
        self.channel = channel
        self.results = list(results or [])
        self.calls = []

    async def send(self, message, recipient):
        from hrqueue.services.notifications.channels.base import SendResult

        self.calls.append((message.id, recipient.key))
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return SendResult(ok=True, message_id=f"provider-{len(self.calls)}")


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        max_concurrent_jobs=10,
        job_backoff_base_minutes=1.0,
        job_default_retry_attempts=3,
        notification_max_retries=3,
        notification_backoff_base_minutes=1.0,
        resend_api_key=None,
        twilio_account_sid=None,
    )


@pytest.fixture
def no_automatic_retry(settings, monkeypatch):
    """Failed email/SMS pairs fail the message on the first attempt."""
    monkeypatch.setattr(settings, "notification_max_retries", 0)


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def job_store():
    return InMemoryJobStore()


@pytest.fixture
def job_service(job_store, bus, settings, clock):
    return BackgroundJobService(store=job_store, bus=bus, settings=settings, clock=clock)


@pytest.fixture
def alice():
    return Recipient(user_id="u-alice", name="Alice", email="alice@example.com", phone="+15550001")


@pytest.fixture
def bob():
    return Recipient(user_id="u-bob", name="Bob", email="bob@example.com")


@pytest.fixture
def directory(alice, bob):
    return InMemoryRecipientDirectory([alice, bob])


@pytest.fixture
def template_store():
    return InMemoryTemplateStore()


@pytest.fixture
def email_sender():
    return FakeSender(Channel.EMAIL)


@pytest.fixture
def notification_store():
    return InMemoryNotificationStore()


@pytest.fixture
def notification_service(
    notification_store, bus, directory, template_store, email_sender, settings, clock
):
    return NotificationService(
        store=notification_store,
        bus=bus,
        directory=directory,
        templates=template_store,
        senders={Channel.EMAIL: email_sender},
        settings=settings,
        clock=clock,
    )


@pytest.fixture
def recorder():
    return RecordingListener()


@pytest.fixture
def make_sender():
    return FakeSender
