"""Sentry initialization and configuration."""

import os
from typing import Any, Optional

import sentry_sdk
import structlog
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

from hrqueue import __version__
from hrqueue.config import Settings

logger = structlog.get_logger(__name__)

# Scraped constantly; tracing them only adds noise
UNSAMPLED_PATHS = ("/health", "/metrics")


def _before_send(event: dict, hint: dict) -> Optional[dict]:
    """Drop 4xx client errors; only server errors are worth an event."""
    if "exc_info" in hint:
        _, exc_value, _ = hint["exc_info"]
        status_code = getattr(exc_value, "status_code", None)
        if isinstance(status_code, int) and 400 <= status_code < 500:
            return None

    response = event.get("contexts", {}).get("response", {})
    status_code = response.get("status_code", 0)
    if 400 <= status_code < 500:
        return None

    return event


def _create_traces_sampler(settings: Settings) -> Any:
    def traces_sampler(sampling_context: dict) -> float:
        tx_name = sampling_context.get("transaction_context", {}).get("name", "")
        if any(path in tx_name for path in UNSAMPLED_PATHS):
            return 0.0

        parent = sampling_context.get("parent_sampled")
        if parent is not None:
            return float(parent)

        return settings.sentry_traces_sample_rate

    return traces_sampler


def init_sentry(settings: Settings) -> bool:
    """
    Initialize Sentry if DSN is configured.

    Returns True if Sentry was initialized, False otherwise.
    """
    if not settings.sentry_dsn:
        return False

    # Only send ERROR-level logs as Sentry events
    sentry_logging = LoggingIntegration(level=None, event_level="ERROR")

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.sentry_environment,
        release=os.environ.get("GIT_SHA", f"hrqueue@{__version__}"),
        integrations=[
            sentry_logging,
            StarletteIntegration(transaction_style="endpoint"),
            FastApiIntegration(transaction_style="endpoint"),
        ],
        traces_sampler=_create_traces_sampler(settings),
        send_default_pii=False,
        attach_stacktrace=True,
        before_send=_before_send,
    )

    sentry_sdk.set_tag("service", "hrqueue")
    sentry_sdk.set_tag("store_backend", settings.store_backend)
    sentry_sdk.set_tag("max_concurrent_jobs", settings.max_concurrent_jobs)

    logger.info(
        "sentry_initialized",
        environment=settings.sentry_environment,
        traces_sample_rate=settings.sentry_traces_sample_rate,
    )
    return True
