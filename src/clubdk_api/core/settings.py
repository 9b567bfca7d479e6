from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./clubdk.db"
    database_echo: bool = False
    secret_key: str = "change-me"

    # Internal API security (operator dashboard + gateway collaborators)
    checkout_api_key: str = ""

    # Tracing
    tracing_enabled: bool = False

    # Coupon lifecycle
    coupon_expiry_days: int = 90
    coupon_attach_policy: Literal["reject", "drop"] = "reject"

    # Tier window (trailing spend in calendar months)
    tier_window_months: int = 6

    # Ledger reconciliation worker
    ledger_reconciliation_worker_enabled: bool = False
    ledger_reconciliation_interval_seconds: int = 3600

    # Fallback bonus amounts used when a loyalty setting row is missing
    loyalty_default_birthday_bonus: int = 0
    loyalty_default_referral_bonus: int = 0
    loyalty_default_ticket_threshold: float = 0.0
    loyalty_default_ticket_bonus: int = 0
    loyalty_default_recurrence_bonuses: list[int] = Field(default_factory=lambda: [0, 0, 0])

    @field_validator("loyalty_default_recurrence_bonuses", mode="before")
    @classmethod
    def _parse_recurrence_list(cls, value: object) -> list[int]:
        if value is None:
            return [0, 0, 0]
        if isinstance(value, str):
            return [int(item.strip()) for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple)):
            return [int(item) for item in value]
        return [0, 0, 0]


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
