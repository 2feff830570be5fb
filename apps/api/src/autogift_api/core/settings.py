from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./autogift.db"
    secret_key: str = "change-me"

    # Stripe configuration
    stripe_secret_key: str = ""
    stripe_api_version: str | None = None

    # Application URLs
    frontend_url: str = "http://localhost:3000"
    api_base_url: str = "http://localhost:8000"

    # Internal API security
    pipeline_api_key: str = ""

    # Pipeline timing
    notification_lead_days: int = 7
    payment_commitment_lead_days: int = 4
    capture_lead_days: int = 4
    shipping_buffer_days: int = 3
    approval_hold_threshold_days: int = 7
    captured_payment_status: str = "captured"
    address_token_ttl_days: int = 7
    payment_retry_delays_hours: Annotated[list[int], NoDecode] = Field(default_factory=lambda: [12, 24, 36])
    payment_retry_max_attempts: int = 3
    currency: str = "usd"

    @field_validator("payment_retry_delays_hours", mode="before")
    @classmethod
    def _parse_retry_delays(cls, value: object) -> list[int]:
        if value is None:
            return []
        if isinstance(value, str):
            return [int(item.strip()) for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple)):
            return [int(item) for item in value]
        return []

    # External collaborators
    fulfillment_api_url: str = "http://localhost:9000"
    fulfillment_api_key: str = ""
    fulfillment_timeout_seconds: float = 15.0
    catalog_api_url: str = "http://localhost:9100"
    catalog_timeout_seconds: float = 10.0

    # Pipeline scheduler
    pipeline_scheduler_enabled: bool = False
    pipeline_schedule_path: str = "config/schedules.toml"

    # Email / notification settings
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_username: str | None = None
    smtp_password: str | None = None
    smtp_use_tls: bool = True
    smtp_sender_email: str | None = None


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
