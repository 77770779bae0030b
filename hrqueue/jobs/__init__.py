"""Background jobs: types, models, handler registry and the job service.

Import BackgroundJobService from hrqueue.jobs.service.
"""

from hrqueue.jobs.models import Job, JobFilters, JobOptions, JobProgress, JobStats
from hrqueue.jobs.registry import JobHandler, JobRegistry
from hrqueue.jobs.types import JobPriority, JobStatus, JobType, QueueHealth

__all__ = [
    "Job",
    "JobFilters",
    "JobOptions",
    "JobProgress",
    "JobStats",
    "JobHandler",
    "JobRegistry",
    "JobPriority",
    "JobStatus",
    "JobType",
    "QueueHealth",
]
