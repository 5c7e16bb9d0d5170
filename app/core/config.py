from decimal import Decimal
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    school_api_base_url: str = Field("http://localhost:5000", alias="SCHOOL_API_BASE_URL")
    school_api_timeout_seconds: float = Field(10.0, alias="SCHOOL_API_TIMEOUT_SECONDS")
    default_school_id: Optional[int] = Field(None, alias="DEFAULT_SCHOOL_ID")
    ledger_page_size: int = Field(100, alias="LEDGER_PAGE_SIZE")
    guardian_lookup_concurrency: int = Field(10, alias="GUARDIAN_LOOKUP_CONCURRENCY")

    default_tuition_amount: Decimal = Field(Decimal("200000"), alias="DEFAULT_TUITION_AMOUNT")
    eligibility_threshold: Decimal = Field(Decimal("33.33"), alias="ELIGIBILITY_THRESHOLD")

    demo_fallback_enabled: bool = Field(True, alias="DEMO_FALLBACK_ENABLED")

    # Local store for mutation idempotency keys only; billing data lives upstream.
    database_url: str = Field("sqlite+aiosqlite:///./billing_gateway.db", alias="DATABASE_URL")

    log_level: str = Field("INFO", alias="LOG_LEVEL")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


settings = Settings()
