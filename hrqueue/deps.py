"""FastAPI dependencies."""

from fastapi import HTTPException, Request, status

from hrqueue.container import ServiceContainer
from hrqueue.jobs.service import BackgroundJobService
from hrqueue.services.notifications.service import NotificationService


def get_container(request: Request) -> ServiceContainer:
    """The container built at startup, or 503 before startup completes."""
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not initialized",
        )
    return container


def get_job_service(request: Request) -> BackgroundJobService:
    return get_container(request).jobs


def get_notification_service(request: Request) -> NotificationService:
    return get_container(request).notifications
