from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    log_level: str = "INFO"
    database_url: str = "sqlite+aiosqlite:///./rewardloop.db"
    redis_url: str = "redis://localhost:6379/0"
    celery_broker_url: str | None = None
    celery_result_backend: str | None = None
    celery_default_queue: str = "rewardloop-default"
    celery_events_queue: str = "rewardloop-events"

    # Internal API security
    internal_api_key: str = ""

    # Rule engine
    rule_cache_ttl_seconds: float = 5.0
    referral_code_length: int = 8

    # Points ledger
    ledger_default_expiry_days: int | None = None
    ledger_expiry_batch_size: int = 200

    # Expiry sweep worker
    expiry_sweep_worker_enabled: bool = False
    expiry_sweep_interval_seconds: int = 300

    # Communication dispatcher
    communication_dispatch_worker_enabled: bool = False
    communication_dispatch_interval_seconds: int = 30
    communication_batch_size: int = 50
    communication_max_attempts: int = 5
    communication_backoff_base_seconds: float = 30.0
    communication_backoff_max_seconds: float = 3600.0
    communication_send_timeout_seconds: float = 15.0
    communication_send_concurrency: int = 5
    communication_claim_lease_seconds: int = 120
    communication_simulate_delivery: bool = True
    rewards_link_base_url: str = "http://localhost:3000/rewards"

    # Email / notification settings
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_username: str | None = None
    smtp_password: str | None = None
    smtp_use_tls: bool = True
    smtp_sender_email: str | None = None

    # SMS / WhatsApp providers
    sms_provider_url: str | None = None
    sms_provider_token: str | None = None
    sms_sender_id: str | None = None
    whatsapp_provider_url: str | None = None
    whatsapp_provider_token: str | None = None

    # Scheduled jobs
    job_scheduler_enabled: bool = False
    job_schedule_path: str = "config/schedules.toml"

    # Channels disabled for every tenant regardless of their own settings
    disabled_channels: Annotated[list[str], NoDecode] = Field(default_factory=list)

    @field_validator("disabled_channels", mode="before")
    @classmethod
    def _parse_channel_list(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip().lower() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip().lower() for item in value if str(item).strip()]
        return []


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
