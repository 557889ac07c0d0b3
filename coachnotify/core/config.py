"""Application configuration using Pydantic settings."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    """Service configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="COACHNOTIFY_",
        extra="ignore",
    )

    environment: Literal["local", "test", "staging", "production"] = Field(default="local")
    service_name: str = Field(default="coachnotify")
    database_url: str = Field(default="sqlite:///./data/coachnotify.db")
    sql_echo: bool = Field(default=False)
    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=True)

    # Inbound provider webhooks
    webhook_secret: Optional[str] = Field(default=None)
    webhook_signature_header: str = Field(default="Stripe-Signature")
    webhook_tolerance_seconds: int = Field(default=300, ge=0)
    max_payload_bytes: int = Field(default=1024 * 1024, gt=0)
    event_retry_ceiling: int = Field(default=3, ge=1)
    event_retry_sweep_interval_seconds: float = Field(default=180.0, gt=0)
    event_retry_min_age_seconds: float = Field(default=60.0, ge=0)
    event_retry_batch_size: int = Field(default=50, ge=1)
    event_retention_days: int = Field(default=90, ge=1)

    # Notification delivery
    delivery_worker_count: int = Field(default=4, ge=1)
    delivery_channel_concurrency: int = Field(default=2, ge=1)
    delivery_max_attempts: int = Field(default=3, ge=1)
    delivery_backoff_base_seconds: float = Field(default=1.0, ge=0)
    delivery_timeout_seconds: float = Field(default=5.0, gt=0)
    scheduler_interval_seconds: float = Field(default=60.0, gt=0)
    scheduler_batch_size: int = Field(default=100, ge=1)
    shutdown_grace_seconds: float = Field(default=10.0, ge=0)
    background_workers_enabled: bool = Field(default=True)
    realtime_backfill_limit: int = Field(default=20, ge=0)

    # Preference cache
    redis_url: Optional[str] = Field(default=None)
    redis_token: Optional[str] = Field(default=None)
    redis_cache_prefix: str = Field(default="coachnotify")
    preference_cache_ttl: int = Field(default=300)

    # Channel adapters
    aws_region: str = Field(default="us-east-1")
    ses_sender: Optional[str] = Field(default=None)
    sms_enabled: bool = Field(default=False)
    push_gateway_url: Optional[str] = Field(default=None)
    push_gateway_token: Optional[str] = Field(default=None)

    # Billing
    coach_revenue_share: float = Field(default=80.0, ge=0, le=100)

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, value: str) -> str:
        return value.upper()

    @field_validator(
        "webhook_secret",
        "redis_url",
        "redis_token",
        "ses_sender",
        "push_gateway_url",
        "push_gateway_token",
        mode="before",
    )
    @classmethod
    def empty_string_to_none(cls, value: str | None) -> str | None:
        if value == "":
            return None
        return value

    @field_validator("preference_cache_ttl", mode="before")
    @classmethod
    def ensure_int_ttl(cls, value: int | str | None) -> int | str | None:
        if value in (None, ""):
            return 300
        return value


@lru_cache
def get_settings() -> AppSettings:
    """Return cached application settings instance."""

    return AppSettings()
