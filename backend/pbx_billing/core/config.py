from decimal import Decimal
from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Billing engine settings.
    Read from environment variables and the .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Project
    project_name: str = "PBX Billing Engine"
    debug: bool = False
    log_level: str = "INFO"
    log_file: Optional[str] = None

    # Database
    database_url: str = "sqlite:///./billing.db"

    # Pricing (all amounts in integer cents)
    billing_currency: str = "usd"
    billing_tax_rate: Decimal = Decimal("0.08")
    billing_call_minutes_per_concurrent_call: int = 1000
    billing_call_overage_unit_cents: int = 5
    billing_seat_overage_unit_cents: int = 1000
    billing_seat_allowance_field: str = "max_users"
    billing_invoice_due_days: int = 30
    billing_trial_days: int = 0

    # Payment retries / dunning
    billing_max_retries: int = 3
    billing_retry_base_delay_minutes: int = 60
    billing_retry_exponential_backoff: bool = True
    billing_retry_reasons: List[str] = [
        "insufficient_funds",
        "card_declined",
        "processing_error",
        "network_error",
        "rate_limit_exceeded",
    ]
    billing_retry_interval_minutes: int = 15

    # Gateways
    billing_default_gateway: str = "manual"
    billing_card_gateway_url: Optional[str] = None
    billing_card_gateway_api_key: Optional[str] = None
    billing_gateway_timeout_seconds: float = 30.0
    billing_pending_payment_timeout_minutes: int = 60

    # Billing cycle guard
    billing_cycle_lock_backend: str = "memory"
    billing_cycle_lock_ttl_minutes: int = 120


@lru_cache
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()


settings = get_settings()
