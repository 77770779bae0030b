"""Pydantic response models for the HTTP API."""

from typing import Any, Optional

from pydantic import BaseModel, Field


class DependencyHealth(BaseModel):
    """Health status for a dependency."""

    status: str = Field(..., description="Dependency status (ok/error)")
    latency_ms: Optional[float] = Field(None, description="Response latency in ms")
    error: Optional[str] = Field(None, description="Error message if unhealthy")


class QueueHealthSummary(BaseModel):
    """Job queue health snapshot."""

    health: str = Field(..., description="healthy, warning or critical")
    queue_depth: int = Field(..., description="Jobs queued or awaiting retry")
    processing: int = Field(..., description="Jobs processing (all workers)")
    active_in_process: int = Field(..., description="Jobs running in this process")
    error_rate: float = Field(..., description="failed / (completed + failed)")


class HealthResponse(BaseModel):
    """Response for health endpoint."""

    status: str = Field(..., description="Overall service status (ok/degraded)")
    jobs: QueueHealthSummary = Field(..., description="Job queue health")
    database: Optional[DependencyHealth] = Field(
        None, description="Postgres health (absent for the memory backend)"
    )
    store_backend: str = Field(..., description="Active persistence backend")
    channels: list[str] = Field(..., description="Deliverable notification channels")
    dispatch_running: bool = Field(..., description="Dispatch loop is running")
    version: str = Field(..., description="Service version")


class JobListResponse(BaseModel):
    """Paginated job list."""

    items: list[dict[str, Any]]
    total: int
    limit: int
    offset: int


class JobActionResponse(BaseModel):
    """Result of a cancel or retry request."""

    job_id: str
    status: str


class DeliveryStatsResponse(BaseModel):
    """Notification delivery counts for a window."""

    start: str
    end: str
    delivered: int
    failed: int
    pending: int
