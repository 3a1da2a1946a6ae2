"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Card rail (Stripe)
    stripe_secret_key: str = Field(..., description="Stripe secret API key (sk_test_...)")
    stripe_publishable_key: str = Field(..., description="Stripe publishable key (pk_test_...)")
    stripe_webhook_secret: str = Field(..., description="Stripe webhook signing secret")
    stripe_api_version: str = Field(default="2023-10-16", description="Stripe API version")

    # Wallet rail (PayPal)
    paypal_client_id: str = Field(..., description="PayPal REST client ID")
    paypal_client_secret: str = Field(..., description="PayPal REST client secret")
    paypal_webhook_id: str = Field(default="", description="PayPal webhook ID for signature checks")
    paypal_sandbox_mode: bool = Field(default=True, description="Use the PayPal sandbox API")
    paypal_return_url: str = Field(
        default="http://localhost:3000/payment/success", description="Payer approval return URL"
    )
    paypal_cancel_url: str = Field(
        default="http://localhost:3000/payment/cancel", description="Payer approval cancel URL"
    )
    paypal_brand_name: str = Field(default="OnGoPool", description="Brand shown on PayPal pages")

    # Database Configuration
    database_url: str = Field(..., description="PostgreSQL connection URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration (webhook dedup fast path; empty disables it)
    redis_url: str = Field(default="", description="Redis connection URL")
    webhook_dedup_ttl: int = Field(
        default=86400 * 7, description="Redis webhook dedup marker TTL (seconds)"
    )

    # Application Configuration
    app_name: str = Field(default="seatpay", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)"
    )

    # Settlement policy
    response_window_hours: float = Field(
        default=12.0, description="Time a driver has to accept before the hold is released"
    )
    approval_timeout_seconds: int = Field(
        default=3600, description="Age after which an unapproved order is marked failed"
    )
    sweep_interval_seconds: float = Field(default=60.0, description="Expiry sweep cadence")
    sweep_batch_size: int = Field(default=100, description="Rows handled per sweep step")
    sweeper_stale_after_seconds: int = Field(
        default=300, description="Heartbeat age after which the sweeper is reported unhealthy"
    )
    void_max_attempts: int = Field(
        default=5, description="Failed voids before a hold is escalated for manual review"
    )
    settlement_claim_ttl_seconds: int = Field(
        default=300, description="Lifetime of a settlement claim before another resolver may take over"
    )
    settlement_claim_wait_seconds: float = Field(
        default=5.0, description="How long a losing resolver waits for the winner's outcome"
    )
    settlement_claim_poll_seconds: float = Field(
        default=0.1, description="Polling interval while waiting for a concurrent resolver"
    )
    service_fee_percentage: float = Field(
        default=15.0, description="Platform service fee deducted from driver earnings"
    )
    default_currency: str = Field(default="CAD", description="Default booking currency")
    outbox_max_attempts: int = Field(
        default=10, description="Delivery failures before an outbox event is parked"
    )

    # Provider calls
    provider_timeout_seconds: float = Field(default=15.0, description="Per-call provider timeout")
    payment_retry_max_attempts: int = Field(default=3, description="Max provider retry attempts")
    payment_retry_base_delay: float = Field(
        default=1.0, description="Base delay for retry backoff (seconds)"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: str) -> str:
        """Validate that Stripe secret key starts with sk_test_ or sk_live_."""
        if not v.startswith("sk_test_") and not v.startswith("sk_live_"):
            raise ValueError(
                "Invalid Stripe secret key format. Must start with 'sk_test_' or 'sk_live_'"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator(
        "response_window_hours",
        "sweep_interval_seconds",
        "provider_timeout_seconds",
        "settlement_claim_poll_seconds",
    )
    @classmethod
    def validate_positive(cls, v: float) -> float:
        """Durations must be positive."""
        if v <= 0:
            raise ValueError("Duration must be positive")
        return v

    @field_validator("service_fee_percentage")
    @classmethod
    def validate_fee(cls, v: float) -> float:
        """Service fee is a percentage of the gross fare."""
        if not 0 <= v < 100:
            raise ValueError("Service fee percentage must be in [0, 100)")
        return v

    @field_validator("default_currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Currency must be a 3-letter code."""
        if len(v) != 3:
            raise ValueError("Currency must be 3-letter code")
        return v.upper()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """Check if using Stripe test mode."""
        return self.stripe_secret_key.startswith("sk_test_")

    @property
    def paypal_base_url(self) -> str:
        """PayPal REST base URL for the configured mode."""
        if self.paypal_sandbox_mode:
            return "https://api-m.sandbox.paypal.com"
        return "https://api-m.paypal.com"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
