"""
Booking Engine Configuration
============================

Settings are read once from the environment and passed to every component
through its constructor.
"""

import os
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class Settings(BaseModel):
    """Runtime configuration for the booking engine."""

    DATABASE_URL: str = "postgresql+asyncpg://localhost/bookings"
    REDIS_URL: str = "redis://localhost:6379/0"

    # Wall-clock zone used for "today" (check-in / checkout) and the beat schedule
    TIMEZONE: str = "Africa/Lagos"
    CURRENCY: str = "NGN"

    # Auto-cancel (overridden by the booking_configs row "auto_cancel_hours")
    AUTO_CANCEL_HOURS: float = Field(default=24, gt=0)

    # Fallback fees when the fee table cannot be used
    DEFAULT_SERVICE_FEE_PERCENT: Decimal = Decimal("5")
    DEFAULT_TAX_PERCENT: Decimal = Decimal("2")

    # Upper bound for wallet / notification calls, in seconds
    EXTERNAL_CALL_TIMEOUT: float = Field(default=10.0, gt=0)
    NOTIFICATION_SERVICE_URL: str = "http://localhost:8080/api/v1/notifications"

    # Single-flight lock TTL for scheduled jobs
    JOB_LOCK_TTL: int = 3600

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "Settings":
        """Build settings from environment variables named after the fields."""
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {
            name: environ[name]
            for name in cls.model_fields
            if name in environ
        }
        return cls(**values)


settings = Settings.from_env()
