"""
Runtime configuration

Everything is read from environment variables (a local .env file is
honoured). The module exposes a single ``settings`` object; read it at call
time so tests can patch individual values.
"""

import os
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


class Settings(BaseModel):
    database_url: Optional[str] = None
    database_name: Optional[str] = None
    use_transactions: bool = False

    jwt_secret: str = "change-me-in-production"
    jwt_refresh_secret: str = "change-me-too"
    jwt_expire_minutes: int = 60
    jwt_refresh_expire_days: int = 30

    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_webhook_tolerance: int = 300

    frontend_url: str = "http://localhost:3000"
    backend_url: str = "http://localhost:8000"
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])

    resend_api_key: Optional[str] = None
    email_from: str = "Storefront <no-reply@storefront.local>"
    enable_email_verification: bool = False

    # Pricing rules, shared by order creation and cart totals
    currency: str = "usd"
    tax_rate_bps: int = Field(1000, ge=0, description="Tax rate in basis points")
    free_shipping_threshold_cents: int = Field(10000, ge=0)
    flat_shipping_cents: int = Field(1000, ge=0)

    low_stock_threshold: int = 10
    max_login_attempts: int = 5
    lock_minutes: int = 120
    bcrypt_rounds: int = 12

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
        return cls(
            database_url=os.getenv("DATABASE_URL"),
            database_name=os.getenv("DATABASE_NAME"),
            use_transactions=_env_bool("USE_TRANSACTIONS"),
            jwt_secret=os.getenv("JWT_SECRET", "change-me-in-production"),
            jwt_refresh_secret=os.getenv("JWT_REFRESH_SECRET", "change-me-too"),
            jwt_expire_minutes=_env_int("JWT_EXPIRE_MINUTES", 60),
            jwt_refresh_expire_days=_env_int("JWT_REFRESH_EXPIRE_DAYS", 30),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY"),
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET"),
            stripe_webhook_tolerance=_env_int("STRIPE_WEBHOOK_TOLERANCE", 300),
            frontend_url=os.getenv("FRONTEND_URL", "http://localhost:3000"),
            backend_url=os.getenv("BACKEND_URL", "http://localhost:8000"),
            cors_origins=origins or ["*"],
            resend_api_key=os.getenv("RESEND_API_KEY"),
            email_from=os.getenv("EMAIL_FROM", "Storefront <no-reply@storefront.local>"),
            enable_email_verification=_env_bool("ENABLE_EMAIL_VERIFICATION"),
            currency=os.getenv("CURRENCY", "usd"),
            tax_rate_bps=_env_int("TAX_RATE_BPS", 1000),
            free_shipping_threshold_cents=_env_int("FREE_SHIPPING_THRESHOLD_CENTS", 10000),
            flat_shipping_cents=_env_int("FLAT_SHIPPING_CENTS", 1000),
            low_stock_threshold=_env_int("LOW_STOCK_THRESHOLD", 10),
            max_login_attempts=_env_int("MAX_LOGIN_ATTEMPTS", 5),
            lock_minutes=_env_int("LOCK_MINUTES", 120),
            bcrypt_rounds=_env_int("BCRYPT_ROUNDS", 12),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


settings = Settings.from_env()
