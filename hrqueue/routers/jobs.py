"""Job queue dashboard endpoints."""

from typing import Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status

from hrqueue.deps import get_job_service
from hrqueue.exceptions import JobNotFoundError
from hrqueue.jobs.models import JobFilters
from hrqueue.jobs.service import MAX_QUERY_LIMIT, BackgroundJobService
from hrqueue.jobs.types import JobStatus, JobType
from hrqueue.schemas import JobActionResponse, JobListResponse

router = APIRouter(prefix="/jobs", tags=["Jobs"])
logger = structlog.get_logger(__name__)


@router.get("", response_model=JobListResponse)
async def list_jobs(
    status_filter: Optional[JobStatus] = Query(
        None, alias="status", description="Filter by status"
    ),
    type_filter: Optional[JobType] = Query(
        None, alias="type", description="Filter by job type"
    ),
    company_id: Optional[UUID] = Query(None, description="Filter by company"),
    source_module: Optional[str] = Query(None, description="Filter by submitting module"),
    limit: int = Query(50, ge=1, le=MAX_QUERY_LIMIT, description="Max results"),
    offset: int = Query(0, ge=0, description="Pagination offset"),
    jobs: BackgroundJobService = Depends(get_job_service),
):
    """List jobs, newest first."""
    filters = JobFilters(
        status=status_filter,
        type=type_filter,
        company_id=company_id,
        source_module=source_module,
        limit=limit,
        offset=offset,
    )
    items, total = await jobs.query_jobs(filters)
    return {
        "items": [job.to_dict() for job in items],
        "total": total,
        "limit": filters.limit,
        "offset": filters.offset,
    }


@router.get("/stats")
async def job_stats(
    company_id: Optional[UUID] = Query(None, description="Scope to one company"),
    jobs: BackgroundJobService = Depends(get_job_service),
):
    """Counts by status, error rate and health classification."""
    stats = await jobs.get_job_stats(company_id)
    return stats.to_dict()


@router.get("/queues")
async def job_queues(jobs: BackgroundJobService = Depends(get_job_service)):
    """Per-queue aggregates for the dashboard."""
    queues = await jobs.get_queues()
    return {"queues": [queue.to_dict() for queue in queues]}


@router.get("/{job_id}")
async def get_job(job_id: UUID, jobs: BackgroundJobService = Depends(get_job_service)):
    """Full job detail including progress and logs."""
    job = await jobs.get_job(job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    return job.to_dict()


@router.post("/{job_id}/cancel", response_model=JobActionResponse)
async def cancel_job(
    job_id: UUID, jobs: BackgroundJobService = Depends(get_job_service)
):
    """
    Cancel a job that has not started.

    Returns:
        200: Job cancelled
        404: Job not found
        409: Job is processing or already finished
    """
    if not await jobs.cancel_job(job_id):
        job = await jobs.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Job cannot be cancelled from status {job.status.value}",
        )
    logger.info("job_cancel_requested", job_id=str(job_id))
    return {"job_id": str(job_id), "status": JobStatus.CANCELLED.value}


@router.post("/{job_id}/retry", response_model=JobActionResponse)
async def retry_job(job_id: UUID, jobs: BackgroundJobService = Depends(get_job_service)):
    """
    Re-queue a failed job.

    Returns:
        200: Job queued again
        404: Job not found
        409: Job is not failed
    """
    if not await jobs.retry_job(job_id):
        job = await jobs.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Only failed jobs can be retried (status is {job.status.value})",
        )
    logger.info("job_retry_requested", job_id=str(job_id))
    return {"job_id": str(job_id), "status": JobStatus.QUEUED.value}
