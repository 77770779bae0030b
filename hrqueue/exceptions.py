"""Exception hierarchy for the job and notification services."""

from typing import Optional


class HRQueueError(Exception):
    """Base class for service errors."""

    pass


class JobValidationError(HRQueueError):
    """Raised when a job submission is rejected before it enters the queue."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class UnknownJobTypeError(JobValidationError):
    """Raised for job types outside the supported set or without a handler."""

    def __init__(self, job_type: str):
        super().__init__(f"Unsupported job type: {job_type}", field="type")
        self.job_type = job_type


class DuplicateHandlerError(HRQueueError):
    """Raised by a strict registry when a job type is registered twice."""

    pass


class JobNotFoundError(HRQueueError):
    """Raised when a job id does not exist."""

    def __init__(self, job_id):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class StoreError(HRQueueError):
    """Raised when the persistence layer fails."""

    pass


class NotificationValidationError(HRQueueError):
    """Raised when a notification request cannot be accepted."""

    pass


class UnresolvedRecipientsError(NotificationValidationError):
    """Raised by send_to_users when no user id resolves to a recipient."""

    def __init__(self, user_ids: list[str]):
        super().__init__(f"None of the {len(user_ids)} user ids could be resolved")
        self.user_ids = user_ids


class TemplateRenderError(NotificationValidationError):
    """Raised when a notification template fails to render."""

    def __init__(self, message: str, template_id: Optional[str] = None):
        super().__init__(message)
        self.template_id = template_id
