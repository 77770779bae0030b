"""Health check endpoint."""

import time
from typing import Optional

import structlog
from fastapi import APIRouter, Depends

from hrqueue import __version__
from hrqueue.container import ServiceContainer
from hrqueue.deps import get_container
from hrqueue.jobs.types import QueueHealth
from hrqueue.schemas import DependencyHealth, HealthResponse, QueueHealthSummary

router = APIRouter()
logger = structlog.get_logger(__name__)


async def check_database_health(pool) -> Optional[DependencyHealth]:
    """Round-trip a trivial query through the pool."""
    if pool is None:
        return None
    start = time.perf_counter()
    try:
        async with pool.acquire() as conn:
            await conn.fetchval("SELECT 1")
        return DependencyHealth(
            status="ok", latency_ms=(time.perf_counter() - start) * 1000
        )
    except Exception as e:
        latency = (time.perf_counter() - start) * 1000
        return DependencyHealth(status="error", latency_ms=latency, error=str(e))


@router.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check(
    container: ServiceContainer = Depends(get_container),
) -> HealthResponse:
    """Queue health plus database reachability."""
    database = await check_database_health(container.pool)

    try:
        stats = await container.jobs.get_job_stats()
        jobs = QueueHealthSummary(
            health=stats.health.value,
            queue_depth=stats.queue_depth,
            processing=stats.processing,
            active_in_process=container.jobs.active_count,
            error_rate=round(stats.error_rate, 4),
        )
    except Exception as e:
        logger.warning("health_job_stats_failed", error=str(e))
        jobs = QueueHealthSummary(
            health=QueueHealth.CRITICAL.value,
            queue_depth=0,
            processing=0,
            active_in_process=container.jobs.active_count,
            error_rate=0.0,
        )

    degraded = (
        jobs.health != QueueHealth.HEALTHY.value
        or (database is not None and database.status != "ok")
        or not container.jobs.is_running
    )
    overall_status = "degraded" if degraded else "ok"

    logger.info("health_check_completed", status=overall_status, jobs=jobs.health)
    return HealthResponse(
        status=overall_status,
        jobs=jobs,
        database=database,
        store_backend="postgres" if container.pool is not None else "memory",
        channels=[c.value for c in container.notifications.channels],
        dispatch_running=container.jobs.is_running,
        version=__version__,
    )
