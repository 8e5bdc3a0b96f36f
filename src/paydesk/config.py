"""
Application configuration module using Pydantic BaseSettings v2.

This module provides centralized configuration management for the Paydesk
payment core, loading settings from environment variables and .env files.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings can be configured via environment variables or a .env file.
    Environment variable names are case-insensitive.
    """

    # M-PESA Configuration
    mpesa_consumer_key: str = ""
    mpesa_consumer_secret: str = ""
    mpesa_shortcode: str = "174379"
    mpesa_passkey: str = ""
    mpesa_callback_url: str = "https://localhost/payments/stk/callback"
    mpesa_environment: str = "sandbox"  # "sandbox" or "production"
    mpesa_payment_type: str = "paybill"  # "paybill" or "till"

    # Gateway resilience
    mpesa_request_timeout: float = 30.0
    mpesa_retry_attempts: int = 3
    mpesa_breaker_fail_max: int = 5
    mpesa_breaker_reset_timeout: int = 60
    stk_rate_limit: str = "10/minute"

    # Status polling (5s x 24 = two minutes of wall time)
    poll_interval_seconds: float = 5.0
    poll_max_attempts: int = 24
    receipt_retry_attempts: int = 5
    receipt_retry_interval_seconds: float = 1.0

    # Ledger
    ledger_conflict_retries: int = 5

    # Checkout sessions left idle or settled this long are dropped
    session_idle_ttl_seconds: float = 1800.0

    # Database Configuration
    database_url: str = "sqlite+aiosqlite:///./paydesk.db"

    # External C2B producer (separate Supabase project); SQL table used when unset
    c2b_supabase_url: str | None = None
    c2b_supabase_key: str | None = None
    c2b_table: str = "c2b_transactions"
    c2b_list_limit: int = 20

    # Application Configuration
    app_name: str = "Paydesk"
    currency: str = "KES"
    debug: bool = False
    environment: str = "development"

    # Pydantic v2 configuration using model_config
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


# Create singleton settings instance
# Settings will be loaded from environment variables or .env file
settings = Settings()
