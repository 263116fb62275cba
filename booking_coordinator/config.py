"""Application configuration via pydantic-settings."""

from __future__ import annotations

from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "Booking Coordinator"
    app_version: str = "1.0.0"
    environment: Literal["development", "staging", "production", "test"] = "development"
    debug: bool = False
    api_prefix: str = "/api/v1"
    log_level: str = "INFO"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    workers: int = 4

    # Database
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "bookings"
    postgres_password: str = Field(default="bookings_secret")
    postgres_db: str = "bookings"
    db_pool_size: int = 20
    db_max_overflow: int = 10

    @computed_field
    @property
    def database_url(self) -> str:
        """Async PostgreSQL connection URL."""
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @computed_field
    @property
    def sync_database_url(self) -> str:
        """Sync PostgreSQL connection URL for Alembic."""
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # Redis (Celery broker and result backend)
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: Optional[str] = None
    redis_db: int = 0

    @computed_field
    @property
    def redis_url(self) -> str:
        """Redis connection URL."""
        auth = f":{self.redis_password}@" if self.redis_password else ""
        return f"redis://{auth}{self.redis_host}:{self.redis_port}/{self.redis_db}"

    # Identity provider session tokens
    auth_jwt_secret: str = Field(default="identity-provider-shared-secret")
    auth_jwt_algorithm: str = "HS256"
    auth_jwt_audience: Optional[str] = None
    auth_roles_claim: str = "roles"

    # Stripe
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_checkout_success_url: str = "http://localhost:3000/booking/confirmation?booking_id={booking_id}"
    stripe_checkout_cancel_url: str = "http://localhost:3000/booking/recovery?booking_id={booking_id}"

    # Calendly
    calendly_api_token: Optional[str] = None
    calendly_api_base_url: str = "https://api.calendly.com"
    calendly_organization_uri: Optional[str] = None
    calendly_webhook_signing_key: Optional[str] = None
    calendly_webhook_signing_key_secondary: Optional[str] = None

    # Webhook verification
    webhook_tolerance_seconds: int = 300

    # Email (SendGrid)
    sendgrid_api_key: Optional[str] = None
    email_from_address: str = "bookings@buildappswith.com"
    email_from_name: str = "Build Apps With"

    # Coordinator
    version_conflict_max_retries: int = 5
    external_call_timeout_seconds: float = 10.0
    directive_max_attempts: int = 5
    directive_backoff_base_seconds: float = 0.5
    directive_backoff_max_seconds: float = 30.0
    deferred_event_max_attempts: int = 10
    deferred_event_retry_seconds: int = 60

    # Recovery job
    recovery_interval_minutes: int = 5
    run_recovery_in_process: bool = False
    awaiting_payment_timeout_minutes: int = 15
    pending_timeout_hours: int = 24
    payment_failed_timeout_hours: int = 24
    session_completion_grace_minutes: int = 60
    stale_directive_minutes: int = 10
    recovery_batch_size: int = 100

    # Refund policy (hours of notice before session start)
    refund_policy: str = "notice_period"
    refund_full_notice_hours: int = 24
    refund_partial_notice_hours: int = 12
    refund_partial_percent: int = 50

    # CORS
    cors_origins: List[str] = ["http://localhost:3000"]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
