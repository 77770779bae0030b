"""Service container: one event bus, job service and notification service.

Constructed once at startup and stored on app.state; everything that needs a
service receives it from here instead of reaching for a module global.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import structlog

from hrqueue.config import Settings
from hrqueue.jobs.handlers import register_builtin_handlers
from hrqueue.jobs.registry import JobRegistry
from hrqueue.jobs.service import BackgroundJobService
from hrqueue.repositories import (
    InMemoryJobStore,
    InMemoryNotificationStore,
    InMemoryRecipientDirectory,
    InMemoryTemplateStore,
    JobRepository,
    NotificationRepository,
    TemplateRepository,
    UserProfileDirectory,
)
from hrqueue.services.events import EventBus
from hrqueue.services.notifications.channels import ChannelSender, build_senders
from hrqueue.services.notifications.job_alerts import JobNotificationBridge
from hrqueue.services.notifications.models import Channel
from hrqueue.services.notifications.service import NotificationService

logger = structlog.get_logger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    bus: EventBus
    jobs: BackgroundJobService
    notifications: NotificationService
    bridge: JobNotificationBridge
    pool: Optional[object] = None

    async def start(self) -> None:
        """Start the job dispatch and notification delivery loops."""
        self.bridge.attach()
        await self.jobs.start()
        await self.notifications.start()

    async def stop(self) -> None:
        await self.jobs.stop()
        await self.notifications.stop()
        await self.bus.wait_idle()
        self.bridge.detach()


def build_container(
    settings: Settings,
    pool=None,
    senders: Optional[dict[Channel, ChannelSender]] = None,
    registry: Optional[JobRegistry] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> ServiceContainer:
    """
    Wire the services together.

    With a pool the Postgres repositories are used; without one everything
    lives in process memory.

    Args:
        settings: Application settings
        pool: asyncpg pool, or None for in-memory stores
        senders: External channel senders (default: built from settings)
        registry: Job handler registry (default: a new one)
        clock: Time source shared by both services
    """
    bus = EventBus()

    if pool is not None:
        job_store = JobRepository(pool)
        notification_store = NotificationRepository(pool)
        directory = UserProfileDirectory(pool)
        templates = TemplateRepository(pool)
    else:
        job_store = InMemoryJobStore()
        notification_store = InMemoryNotificationStore()
        directory = InMemoryRecipientDirectory()
        templates = InMemoryTemplateStore()

    if senders is None:
        senders = build_senders(settings)

    jobs = BackgroundJobService(
        store=job_store,
        bus=bus,
        registry=registry,
        settings=settings,
        clock=clock,
    )
    notifications = NotificationService(
        store=notification_store,
        bus=bus,
        directory=directory,
        templates=templates,
        senders=senders,
        settings=settings,
        clock=clock,
    )
    register_builtin_handlers(jobs, notifications)
    bridge = JobNotificationBridge(bus, jobs, notifications)

    logger.info(
        "service_container_built",
        store_backend="postgres" if pool is not None else "memory",
        channels=[c.value for c in notifications.channels],
    )
    return ServiceContainer(
        settings=settings,
        bus=bus,
        jobs=jobs,
        notifications=notifications,
        bridge=bridge,
        pool=pool,
    )
