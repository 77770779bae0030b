"""HR background jobs & notifications - FastAPI application."""

import logging
import time
import uuid
from typing import Optional

import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from hrqueue import __version__
from hrqueue.config import Settings, get_settings
from hrqueue.core.lifespan import lifespan
from hrqueue.core.sentry import init_sentry
from hrqueue.exceptions import (
    JobNotFoundError,
    JobValidationError,
    NotificationValidationError,
)
from hrqueue.routers import health, jobs, metrics, notifications


def configure_logging(level: str = "INFO") -> None:
    """Structured JSON logging through the stdlib logger."""
    logging.basicConfig(format="%(message)s", level=level.upper())
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None, use_lifespan: bool = True
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Settings override (default: get_settings())
        use_lifespan: Build the service container on startup. Tests pass
            False and set app.state.container themselves.
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    init_sentry(settings)

    app = FastAPI(
        title="HR Background Jobs & Notifications",
        description="Job queue and multi-channel notification dispatch",
        version=__version__,
        lifespan=lifespan if use_lifespan else None,
    )

    @app.exception_handler(JobNotFoundError)
    async def job_not_found_handler(request: Request, exc: JobNotFoundError):
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"detail": str(exc), "retryable": False},
        )

    @app.exception_handler(JobValidationError)
    async def job_validation_handler(request: Request, exc: JobValidationError):
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": str(exc), "field": exc.field, "retryable": False},
        )

    @app.exception_handler(NotificationValidationError)
    async def notification_validation_handler(
        request: Request, exc: NotificationValidationError
    ):
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": str(exc), "retryable": False},
        )

    @app.middleware("http")
    async def request_middleware(request: Request, call_next):
        """Add request ID and timing, record request metrics."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        start_time = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as e:
            logger.exception("request_failed", error=str(e))
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"detail": "Internal server error", "retryable": True},
                headers={"X-Request-ID": request_id, "X-API-Version": __version__},
            )

        duration_seconds = time.perf_counter() - start_time
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time-Ms"] = f"{duration_seconds * 1000:.2f}"
        response.headers["X-API-Version"] = __version__

        # Skip /metrics to avoid recursion
        if request.url.path != "/metrics":
            route = request.scope.get("route")
            metrics.record_request(
                method=request.method,
                endpoint=getattr(route, "path", request.url.path),
                status_code=response.status_code,
                duration=duration_seconds,
            )

        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_ms=round(duration_seconds * 1000, 2),
        )
        return response

    app.include_router(health.router)
    app.include_router(jobs.router)
    app.include_router(notifications.router)
    app.include_router(metrics.router)

    @app.get("/")
    async def root():
        """Root endpoint with service info."""
        return {
            "service": "HR Background Jobs & Notifications",
            "version": __version__,
            "docs": "/docs",
            "health": "/health",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(
        "hrqueue.main:app",
        host=_settings.service_host,
        port=_settings.service_port,
    )
