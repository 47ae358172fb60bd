"""
Runtime configuration.

All settings come from environment variables so the same image runs against
SQLite in development and PostgreSQL + live Stripe in production.
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    return int(raw) if raw else default


def _env_decimal(name: str, default: str) -> Decimal:
    return Decimal(os.environ.get(name) or default)


@dataclass
class Settings:
    """Configuration for the metering service."""
    database_url: str = "sqlite:///meterline.db"
    api_key: str = "dev-key-change-in-production"

    # Payment provider
    stripe_api_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_timeout_seconds: int = 10
    stripe_max_retries: int = 2

    # Billing defaults applied when a tenant's configuration leaves a field empty
    default_currency: str = "NOK"
    default_tax_rate: Decimal = Decimal("25.00")
    default_email_limit: int = 500
    default_email_overage_rate: Decimal = Decimal("0.10")
    default_sms_overage_rate: Decimal = Decimal("1.00")
    invoice_due_days: int = 30

    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.environ.get("DATABASE_URL", "sqlite:///meterline.db"),
            api_key=os.environ.get("API_KEY", "dev-key-change-in-production"),
            stripe_api_key=os.environ.get("STRIPE_API_KEY") or None,
            stripe_webhook_secret=os.environ.get("STRIPE_WEBHOOK_SECRET") or None,
            stripe_timeout_seconds=_env_int("STRIPE_TIMEOUT_SECONDS", 10),
            stripe_max_retries=_env_int("STRIPE_MAX_RETRIES", 2),
            default_currency=os.environ.get("DEFAULT_CURRENCY", "NOK"),
            default_tax_rate=_env_decimal("DEFAULT_TAX_RATE", "25.00"),
            default_email_limit=_env_int("DEFAULT_EMAIL_LIMIT", 500),
            default_email_overage_rate=_env_decimal("DEFAULT_EMAIL_OVERAGE_RATE", "0.10"),
            default_sms_overage_rate=_env_decimal("DEFAULT_SMS_OVERAGE_RATE", "1.00"),
            invoice_due_days=_env_int("INVOICE_DUE_DAYS", 30),
            cors_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
            port=_env_int("PORT", 8000),
        )
