"""Notification dashboard endpoints."""

from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status

from hrqueue.deps import get_notification_service
from hrqueue.schemas import DeliveryStatsResponse
from hrqueue.services.notifications.service import NotificationService

router = APIRouter(prefix="/notifications", tags=["Notifications"])
logger = structlog.get_logger(__name__)

DEFAULT_STATS_WINDOW = timedelta(days=7)


@router.get("/stats", response_model=DeliveryStatsResponse)
async def delivery_stats(
    start: Optional[datetime] = Query(None, description="Window start (default: 7 days ago)"),
    end: Optional[datetime] = Query(None, description="Window end (default: now)"),
    notifications: NotificationService = Depends(get_notification_service),
):
    """Delivered/failed/pending message counts for messages created in the window."""
    end = _aware(end) if end else datetime.now(timezone.utc)
    start = _aware(start) if start else end - DEFAULT_STATS_WINDOW
    if start >= end:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="start must be before end",
        )
    stats = await notifications.get_delivery_stats(start, end)
    return {"start": start.isoformat(), "end": end.isoformat(), **stats.to_dict()}


@router.post("/retry-failed")
async def retry_failed(
    notifications: NotificationService = Depends(get_notification_service),
):
    """Put every failed message back for delivery."""
    retried = await notifications.retry_failed_notifications()
    logger.info("notification_retry_requested", retried=retried)
    return {"retried": retried}


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
