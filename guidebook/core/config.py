# guidebook/core/config.py
import json
import logging
import os
from typing import Any, Dict, List, Literal, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


def is_running_tests() -> bool:
    """
    Detect if code is running under pytest.

    PYTEST_CURRENT_TEST is set automatically by pytest during test runs, and is
    not expected to be present in production environments.
    """
    return os.getenv("PYTEST_CURRENT_TEST") is not None


_DEFAULT_CHECK_IN_SECRET = SecretStr("guidebook-dev-check-in-secret")


class Settings(BaseSettings):
    environment: str = Field(default="development", alias="ENVIRONMENT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    database_url: str = Field(
        default="sqlite:///./guidebook.db",
        alias="DATABASE_URL",
        description="SQLAlchemy database URL",
    )

    # Booking rules
    currency: str = Field(default="usd", description="Single platform currency")
    default_deposit_percentage: int = Field(
        default=25,
        ge=0,
        le=100,
        alias="DEFAULT_DEPOSIT_PERCENTAGE",
        description="Deposit share applied when a service does not set its own",
    )
    booking_timezone: str = Field(default="UTC", alias="BOOKING_TIMEZONE")
    booking_min_notice_hours: int = Field(default=0, ge=0, alias="BOOKING_MIN_NOTICE_HOURS")
    cancellation_policy_table: Optional[Dict[str, List[List[float]]]] = Field(
        default=None,
        alias="CANCELLATION_POLICY_TABLE",
        description="Optional override: {kind: [[min_hours, refund_percentage], ...]}",
    )

    # Check-in
    check_in_secret: SecretStr = Field(
        default=_DEFAULT_CHECK_IN_SECRET,
        alias="CHECK_IN_SECRET",
        description="HMAC key for check-in codes",
    )

    # Payments
    payment_gateway: Literal["stripe", "http"] = Field(default="stripe", alias="PAYMENT_GATEWAY")
    stripe_secret_key: SecretStr = Field(
        default=SecretStr(""),
        alias="STRIPE_SECRET_KEY",
        description="Stripe secret key (optional in dev)",
    )
    payment_intent_endpoints: List[str] = Field(
        default_factory=lambda: [
            "http://localhost:8787/api/bookings/create-deposit-payment",
            "http://localhost:8787/api/create-payment-intent",
        ],
        alias="PAYMENT_INTENT_ENDPOINTS",
        description="Ordered backing endpoints for the HTTP intent gateway",
    )
    payment_refund_endpoint: Optional[str] = Field(
        default="http://localhost:8787/api/refunds", alias="PAYMENT_REFUND_ENDPOINT"
    )
    payment_intent_lookup_endpoint: Optional[str] = Field(
        default="http://localhost:8787/api/payment-intents/{intent_id}",
        alias="PAYMENT_INTENT_LOOKUP_ENDPOINT",
    )
    payment_intent_action_endpoint: Optional[str] = Field(
        default="http://localhost:8787/api/payment-intents/{intent_id}/{action}",
        alias="PAYMENT_INTENT_ACTION_ENDPOINT",
        description="Capture/cancel endpoint template; {action} is capture or cancel",
    )
    payment_timeout_seconds: float = Field(default=10.0, gt=0, alias="PAYMENT_TIMEOUT_SECONDS")
    payment_max_attempts: int = Field(default=3, ge=1, alias="PAYMENT_MAX_ATTEMPTS")
    payment_retry_backoff_seconds: float = Field(
        default=0.5, ge=0, alias="PAYMENT_RETRY_BACKOFF_SECONDS"
    )

    # Slot locking
    slot_lock_backend: Literal["local", "redis"] = Field(default="local", alias="SLOT_LOCK_BACKEND")
    redis_url: str = Field(default="redis://localhost:6379", alias="REDIS_URL")
    slot_lock_ttl_seconds: int = Field(default=30, ge=1, alias="SLOT_LOCK_TTL_SECONDS")
    slot_lock_namespace: str = Field(default="guidebook", alias="SLOT_LOCK_NAMESPACE")

    model_config = SettingsConfigDict(
        env_file=".env" if not os.getenv("CI") else None,
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("cancellation_policy_table", mode="before")
    @classmethod
    def _parse_policy_table(cls, value: Any) -> Any:
        if isinstance(value, str):
            cleaned = value.strip()
            if not cleaned:
                return None
            return json.loads(cleaned)
        return value

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        return (value or "INFO").strip().upper()

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() in {"prod", "production", "live"}


settings = Settings()

if settings.is_production and settings.check_in_secret == _DEFAULT_CHECK_IN_SECRET:
    logger.warning("[CONFIG] CHECK_IN_SECRET is not set; using the development default")
