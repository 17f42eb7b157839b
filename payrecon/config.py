# payrecon/config.py

from datetime import timedelta, timezone
from decimal import Decimal
from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # App
    app_name: str = "Payrecon API"
    app_env: str = "development"
    debug: bool = True
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:3000"]

    # Supabase
    supabase_url: str = ""
    supabase_service_role_key: str = ""

    # Tables
    payments_table: str = "payments_v2"
    queue_table: str = "payment_reconcile_queue"
    audit_table: str = "audit_logs"

    # Provider
    default_provider: str = "bepaid"
    default_currency: str = "BYN"
    provider_utc_offset_hours: int = 3
    bepaid_shop_id: str = ""
    bepaid_secret_key: str = ""
    bepaid_timeout_seconds: float = 15.0

    # Safety gate
    stop_guard_invalid_rate: float = 0.10

    # Discrepancy tolerances
    amount_tolerance: Decimal = Decimal("0.01")
    totals_tolerance: Decimal = Decimal("0.01")

    # Run bounds
    sample_limit: int = 10
    error_sample_limit: int = 20
    existing_lookup_chunk: int = 50
    materialize_concurrency: int = 4
    max_statement_rows: int = 5000
    default_queue_limit: int = 200
    max_queue_batch: int = 1000
    audit_default_limit: int = 20
    audit_max_payments: int = 200

    @property
    def provider_tz(self) -> timezone:
        """Fixed UTC offset the provider reports local times in."""
        return timezone(timedelta(hours=self.provider_utc_offset_hours))

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()
