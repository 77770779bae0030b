"""Configuration management using Pydantic Settings."""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Service Configuration
    service_host: str = Field(default="0.0.0.0", description="Service host")
    service_port: int = Field(default=8000, description="Service port")
    log_level: str = Field(default="INFO", description="Logging level")

    # Supabase Configuration
    supabase_url: Optional[str] = Field(
        default=None, description="Supabase project URL"
    )
    supabase_service_role_key: Optional[str] = Field(
        default=None, description="Supabase service role key"
    )
    supabase_db_password: Optional[str] = Field(
        default=None, description="Supabase database password for direct PostgreSQL connection"
    )
    database_url: Optional[str] = Field(
        default=None, description="Direct PostgreSQL connection URL (overrides Supabase URL construction)"
    )
    db_pool_max_size: int = Field(default=20, description="Maximum connection pool size")
    store_backend: Literal["memory", "postgres"] = Field(
        default="memory",
        description="Persistence backend for jobs and notifications",
    )

    # Job processing
    max_concurrent_jobs: int = Field(
        default=10, ge=1, description="Maximum jobs in processing at once"
    )
    job_poll_interval_s: float = Field(
        default=5.0, gt=0, description="Seconds between dispatch ticks"
    )
    job_cleanup_interval_hours: float = Field(
        default=24.0, gt=0, description="Hours between cleanup sweeps"
    )
    job_retention_days: int = Field(
        default=30, ge=1, description="Days to keep terminal jobs before cleanup"
    )
    job_stale_timeout_minutes: int = Field(
        default=30, ge=1, description="Minutes before a processing job is considered stuck"
    )
    job_reap_interval_s: float = Field(
        default=60.0, gt=0, description="Seconds between stale job sweeps"
    )
    job_backoff_base_minutes: float = Field(
        default=1.0,
        gt=0,
        description="Backoff unit: retry delay is base * 2^retry_count minutes",
    )
    job_default_retry_attempts: int = Field(
        default=3, ge=0, description="Retry attempts when a submission does not set one"
    )

    # Job health thresholds
    job_health_warning_error_rate: float = Field(default=0.10, ge=0.0, le=1.0)
    job_health_critical_error_rate: float = Field(default=0.25, ge=0.0, le=1.0)
    job_health_warning_queue_depth: int = Field(default=100, ge=0)
    job_health_critical_queue_depth: int = Field(default=500, ge=0)

    # Notifications
    notification_poll_interval_s: float = Field(
        default=5.0, gt=0, description="Seconds between external delivery passes"
    )
    notification_max_retries: int = Field(
        default=3,
        ge=0,
        description="Automatic retries of failed email/SMS pairs before a message fails",
    )
    notification_backoff_base_minutes: float = Field(
        default=1.0,
        gt=0,
        description="Notification retry delay is base * 2^retry_count minutes",
    )
    resend_api_key: Optional[str] = Field(
        default=None, description="Resend API key for email delivery"
    )
    email_from_address: str = Field(
        default="notifications@example.com", description="Sender address for email"
    )
    twilio_account_sid: Optional[str] = Field(default=None, description="Twilio account SID")
    twilio_auth_token: Optional[str] = Field(default=None, description="Twilio auth token")
    twilio_from_number: Optional[str] = Field(
        default=None, description="Twilio sender phone number (E.164)"
    )
    transport_timeout_s: float = Field(
        default=10.0, gt=0, description="HTTP timeout for email/SMS transports"
    )

    # Sentry Observability
    sentry_dsn: Optional[str] = Field(
        default=None,
        description="Sentry DSN for error tracking and performance monitoring"
    )
    sentry_environment: str = Field(
        default="development",
        description="Sentry environment tag (development, staging, production)"
    )
    sentry_traces_sample_rate: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="Sentry performance tracing sample rate (0.0-1.0)"
    )

    @property
    def email_enabled(self) -> bool:
        """Email transport is configured."""
        return bool(self.resend_api_key)

    @property
    def sms_enabled(self) -> bool:
        """SMS transport is configured."""
        return bool(
            self.twilio_account_sid and self.twilio_auth_token and self.twilio_from_number
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
