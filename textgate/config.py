"""
Application configuration using pydantic-settings.
All config is validated at startup - fail fast if anything is missing.
"""
from functools import lru_cache
from typing import Literal
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Application
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    log_level: str = "INFO"

    # Database
    database_url: str
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Redis
    redis_url: str = "redis://localhost:6379/0"

    # Rate governor bucket store: "memory" (single process) or "redis" (fleet-wide)
    rate_limit_backend: Literal["memory", "redis"] = "memory"
    default_rate_capacity: int = 75
    default_refill_rate: float = 1.25  # tokens per second

    # Upstream carrier gateway (Telnyx-compatible v2 messages API)
    gateway_base_url: str = "https://api.telnyx.com/v2"
    gateway_api_key: str = ""
    gateway_messaging_profile_id: str = ""
    gateway_timeout_seconds: float = 10.0

    # Webhook verification
    webhook_signing_secret: str = ""
    webhook_tolerance_seconds: int = 300
    allow_unsigned_webhooks: bool = False  # development only, ignored in production

    # Dispatch retries (transient gateway failures)
    dispatch_max_retries: int = 3
    dispatch_backoff_base_seconds: float = 1.0
    dispatch_backoff_max_seconds: float = 30.0
    dispatch_claim_lease_seconds: int = 300  # a claim older than this is presumed abandoned

    # Keyword replies are dispatched after the webhook is acknowledged
    reply_dispatch_poll_seconds: int = 5
    reply_dispatch_batch_size: int = 25

    # Webhook processing retries
    webhook_max_retries: int = 5
    webhook_retry_base_seconds: float = 30.0
    webhook_retry_max_seconds: float = 3600.0
    webhook_retry_poll_seconds: int = 15
    webhook_retry_batch_size: int = 25
    webhook_processing_lease_seconds: int = 300

    # Time window (recipient local time)
    quiet_hours_start: int = 21
    quiet_hours_end: int = 8
    default_timezone: str = "America/New_York"

    # Content policy rule table (JSON file; built-in table when empty)
    content_rules_path: str = ""

    # Campaign/brand registry service (in-memory registry when empty)
    registry_base_url: str = ""
    registry_api_key: str = ""
    registry_cache_ttl_seconds: int = 60

    # Automated replies
    stop_confirmation_text: str = Field(
        default="You have been unsubscribed and will no longer receive messages. Reply HELP for help.",
    )
    help_reply_text: str = Field(
        default="Msg & data rates may apply. Reply STOP to unsubscribe. For support contact the sender directly.",
    )

    # Alerting
    alert_webhook_url: str = ""  # Discord/Slack webhook URL for critical alerts

    # Sentry
    sentry_dsn: str = ""

    @field_validator("quiet_hours_start", "quiet_hours_end")
    @classmethod
    def hour_of_day(cls, v: int) -> int:
        if not 0 <= v <= 24:
            raise ValueError(f"hour must be within 0-24, got {v}")
        return v

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
