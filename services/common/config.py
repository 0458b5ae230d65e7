from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_APP_NAME = "notification-dispatch"


class ServiceSettings(BaseSettings):
    """Settings for the notification dispatch service."""

    app_name: str = Field(default=DEFAULT_APP_NAME)
    environment: Literal["local", "dev", "staging", "prod"] = Field(default="local")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    service_host: str = Field(default="0.0.0.0")
    service_port: int = Field(default=8000)
    enable_metrics: bool = Field(default=True)
    enable_tracing: bool = Field(default=False)
    tracing_endpoint: str | None = Field(default=None)
    tracing_protocol: Literal["http/protobuf", "grpc"] = Field(default="http/protobuf")
    tracing_insecure: bool = Field(default=True)
    tracing_sample_rate: float = Field(default=1.0, ge=0.0, le=1.0)
    database_url: str | None = Field(default=None)
    kafka_bootstrap_servers: str | None = Field(default=None)

    # Dispatch
    notification_default_language: str = Field(default="en", min_length=2, max_length=10)
    notification_default_tenant_name: str = Field(default="Our Business")
    notification_max_retries: int = Field(default=3, ge=1)
    notification_backoff_base_minutes: int = Field(default=5, ge=1)
    notification_provider_timeout_seconds: float = Field(default=10.0, gt=0.0)

    # Retry worker
    notification_retry_worker_enabled: bool = Field(default=True)
    notification_retry_interval_seconds: float = Field(default=300.0, gt=0.0)
    notification_retry_batch_size: int = Field(default=50, ge=1)
    notification_retry_concurrency: int = Field(default=4, ge=1)
    notification_claim_timeout_seconds: int = Field(default=900, ge=1)

    # Provider endpoints
    sendgrid_api_url: str = Field(default="https://api.sendgrid.com/v3/mail/send")
    resend_api_url: str = Field(default="https://api.resend.com/emails")
    twilio_api_base_url: str = Field(default="https://api.twilio.com/2010-04-01")

    model_config = SettingsConfigDict(
        env_file=(".env", ".env.local"), env_prefix="SERVICE_", extra="ignore"
    )


@lru_cache
def get_settings() -> ServiceSettings:
    """Return cached service settings."""

    return ServiceSettings()
