"""Job handler registry."""

from typing import Any, Callable, Coroutine, Optional

import structlog

from hrqueue.exceptions import DuplicateHandlerError
from hrqueue.jobs.models import Job
from hrqueue.jobs.types import JobType

logger = structlog.get_logger(__name__)

# Handler signature: async def handler(job: Job, ctx: JobContext) -> Any
JobHandler = Callable[[Job, Any], Coroutine[Any, Any, Any]]

# Raises JobValidationError for a payload the handler can never run
PayloadValidator = Callable[[dict[str, Any]], None]


class JobRegistry:
    """Registry mapping job types to their handlers.

    Re-registering a type replaces the previous handler (and its payload
    validator) and logs a warning. A strict registry raises
    DuplicateHandlerError instead.
    """

    def __init__(self, strict: bool = False):
        self._handlers: dict[JobType, JobHandler] = {}
        self._validators: dict[JobType, PayloadValidator] = {}
        self._strict = strict

    def register(
        self,
        job_type: JobType,
        handler: JobHandler,
        validate_payload: Optional[PayloadValidator] = None,
    ) -> None:
        """Register a handler, and optionally its payload validator, for a job type."""
        job_type = JobType(job_type)
        previous = self._handlers.get(job_type)
        if previous is not None and previous is not handler:
            if self._strict:
                raise DuplicateHandlerError(
                    f"Handler already registered for job type: {job_type.value}"
                )
            logger.warning(
                "job_handler_overridden",
                job_type=job_type.value,
                previous=getattr(previous, "__qualname__", repr(previous)),
                handler=getattr(handler, "__qualname__", repr(handler)),
            )
        self._handlers[job_type] = handler
        if validate_payload is not None:
            self._validators[job_type] = validate_payload
        else:
            self._validators.pop(job_type, None)

    def get_handler(self, job_type: JobType) -> JobHandler:
        """Get the handler for a job type. Raises KeyError if not found."""
        if job_type not in self._handlers:
            raise KeyError(f"No handler registered for job type: {job_type}")
        return self._handlers[job_type]

    def has_handler(self, job_type: JobType) -> bool:
        return job_type in self._handlers

    def validate_payload(self, job_type: JobType, payload: dict[str, Any]) -> None:
        """Run the type's payload validator, if it has one."""
        validator = self._validators.get(job_type)
        if validator is not None:
            validator(payload)

    def registered_types(self) -> list[JobType]:
        return list(self._handlers)

    def handler(self, job_type: JobType) -> Callable[[JobHandler], JobHandler]:
        """Decorator to register a handler."""

        def decorator(fn: JobHandler) -> JobHandler:
            self.register(job_type, fn)
            return fn

        return decorator
