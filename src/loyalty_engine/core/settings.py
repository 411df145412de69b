from functools import lru_cache
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="LOYALTY_",
        extra="allow",
    )

    environment: Literal["development", "staging", "production"] = "development"
    service_name: str = "loyalty-engine"
    version: str = "0.1.0"
    database_url: str = "sqlite+aiosqlite:///./loyalty.db"
    database_echo: bool = False
    log_level: str = "INFO"

    # Wheel quotas reset at midnight in this timezone for every brand
    quota_timezone: str = "UTC"
    probability_epsilon: float = Field(default=1e-6, gt=0)

    # Ledger
    history_max_page_size: int = Field(default=100, ge=1)
    default_points_per_currency_unit: float = Field(default=1.0, ge=0)

    # Optimistic concurrency retries
    conflict_retry_max_tries: int = Field(default=4, ge=1)
    conflict_retry_base_seconds: float = Field(default=0.02, ge=0)
    conflict_retry_max_seconds: float = Field(default=0.5, ge=0)

    # Maintenance scheduler
    job_scheduler_enabled: bool = True
    job_schedule_path: str = "config/schedules.toml"

    @field_validator("quota_timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as error:
            raise ValueError(f"Unknown timezone: {value}") from error
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
