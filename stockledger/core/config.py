from decimal import Decimal
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Stock Ledger Service"
    env: str = "dev"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # DATABASE
    database_url: str = "sqlite:///./stockledger.db"
    db_pool_size: int = Field(default=10, ge=1, le=100)
    db_max_overflow: int = Field(default=20, ge=0, le=200)
    db_pool_timeout_seconds: int = Field(default=30, ge=1, le=300)
    db_pool_recycle_seconds: int = Field(default=1800, ge=30, le=86_400)
    report_statement_timeout_ms: int = Field(default=30_000, ge=1_000, le=600_000)

    # LEDGER
    business_timezone: str = "UTC"
    allow_negative_stock: bool = False
    reconciliation_tolerance: Decimal = Field(default=Decimal("0.0001"), gt=0)
    drift_policy: Literal["estimate", "refuse"] = "estimate"

    # RECONCILIATION
    variance_investigate_percent: Decimal = Field(default=Decimal("5"), ge=0)
    variance_investigate_units: Decimal = Field(default=Decimal("10"), ge=0)
    variance_investigate_value: Decimal = Field(default=Decimal("1000"), ge=0)
    variance_high_activity_count: int = Field(default=100, ge=1)
    variance_activity_window_days: int = Field(default=30, ge=1, le=365)

    @field_validator("business_timezone")
    @classmethod
    def validate_business_timezone(cls, value: str) -> str:
        cleaned = value.strip()
        try:
            ZoneInfo(cleaned)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown BUSINESS_TIMEZONE '{value}'") from exc
        return cleaned

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, value: str) -> str:
        return str(value).strip().upper()

    @field_validator("drift_policy", mode="before")
    @classmethod
    def normalize_drift_policy(cls, value: str) -> str:
        return str(value).strip().lower()

    @model_validator(mode="after")
    def validate_production_safety(self) -> "Settings":
        env_value = self.env.lower().strip()
        if env_value not in {"prod", "production"}:
            return self

        if self.database_url.lower().startswith("sqlite"):
            raise ValueError("DATABASE_URL cannot point at SQLite in production")
        if self.allow_negative_stock:
            raise ValueError("ALLOW_NEGATIVE_STOCK must be disabled in production")

        return self

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()
