from functools import lru_cache
from typing import Literal

from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    project_name: str = "Age Gate Verification Service"
    environment: Literal["local", "dev", "staging", "prod", "test"] = Field("local", alias="ENVIRONMENT")
    api_v1_prefix: str = "/api/v1"

    # Database
    database_url: str = Field(..., alias="DATABASE_URL")
    database_pool_pre_ping: bool = Field(True, alias="DATABASE_POOL_PRE_PING")

    # Verification rules
    minimum_age: int = Field(21, alias="MINIMUM_AGE")

    # Live sessions
    session_ttl_minutes: int = Field(15, alias="VERIFICATION_EXPIRY_MINUTES")
    session_sweep_interval_seconds: int = Field(300, alias="SESSION_SWEEP_INTERVAL_SECONDS")
    heartbeat_timeout_seconds: int = Field(10, alias="HEARTBEAT_TIMEOUT_SECONDS")
    session_log_limit: int = Field(50, alias="SESSION_LOG_LIMIT")

    # POS platform
    pos_base_url: AnyHttpUrl | None = Field(default=None, alias="POS_BASE_URL")
    pos_api_token: str | None = Field(default=None, alias="POS_API_TOKEN")
    pos_timeout_seconds: float = Field(15.0, alias="POS_TIMEOUT_SECONDS")
    pos_mock_mode: bool = Field(False, alias="POS_MOCK_MODE")
    pos_writes_enabled: bool = Field(True, alias="POS_WRITES_ENABLED")

    # Webhooks
    webhook_client_secret: str | None = Field(default=None, alias="WEBHOOK_CLIENT_SECRET")
    webhook_store_raw_body: bool = Field(False, alias="WEBHOOK_STORE_RAW_BODY")

    # Job queues
    queue_batch_limit: int = Field(100, alias="QUEUE_BATCH_LIMIT")
    queue_max_duration_ms: int = Field(8000, alias="QUEUE_MAX_DURATION_MS")
    queue_concurrency: int = Field(3, alias="QUEUE_CONCURRENCY")
    queue_stale_processing_minutes: int = Field(15, alias="QUEUE_STALE_PROCESSING_MINUTES")
    reconcile_initial_delay_seconds: int = Field(5, alias="RECONCILE_INITIAL_DELAY_SECONDS")
    reconcile_max_attempts: int = Field(25, alias="RECONCILE_MAX_ATTEMPTS")
    reconcile_max_age_minutes: int = Field(240, alias="RECONCILE_MAX_AGE_MINUTES")
    webhook_max_attempts: int = Field(10, alias="WEBHOOK_MAX_ATTEMPTS")
    retention_done_days: int = Field(3, alias="QUEUE_RETENTION_DONE_DAYS")
    retention_pending_days: int = Field(2, alias="QUEUE_RETENTION_PENDING_DAYS")

    # Scheduler triggers
    cron_secret: str | None = Field(default=None, alias="CRON_SECRET")

    # Observability
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_format: Literal["json", "text"] = Field("json", alias="LOG_FORMAT")

    @field_validator(
        "pos_base_url",
        "pos_api_token",
        "webhook_client_secret",
        "cron_secret",
        mode="before",
    )
    @classmethod
    def blank_to_none(cls, value: str | None):
        if isinstance(value, str) and value.strip() == "":
            return None
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]


settings = get_settings()
