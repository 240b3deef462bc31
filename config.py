import os
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()

SUPPORTED_GATEWAYS = ("razorpay", "stripe")


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    database_url: Optional[str] = None
    database_name: Optional[str] = None
    mongo_transactions: bool = True

    jwt_secret: str = "dev-secret-key-change-me"
    jwt_algorithm: str = "HS256"
    jwt_expire_hours: int = 24

    payment_gateway: str = "razorpay"
    payment_currency: str = "inr"
    razorpay_key_id: Optional[str] = None
    razorpay_key_secret: Optional[str] = None
    razorpay_webhook_secret: Optional[str] = None
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None

    resend_api_key: Optional[str] = None
    mail_from: str = "no-reply@example.com"
    public_base_url: str = "http://localhost:8000"

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL"),
            database_name=os.getenv("DATABASE_NAME"),
            mongo_transactions=_env_flag("MONGO_TRANSACTIONS", True),
            jwt_secret=os.getenv("JWT_SECRET", "dev-secret-key-change-me"),
            jwt_expire_hours=int(os.getenv("JWT_EXPIRE_HOURS", "24")),
            payment_gateway=os.getenv("PAYMENT_GATEWAY", "razorpay").strip().lower(),
            payment_currency=os.getenv("PAYMENT_CURRENCY", "inr").strip().lower(),
            razorpay_key_id=os.getenv("RAZORPAY_KEY_ID"),
            razorpay_key_secret=os.getenv("RAZORPAY_KEY_SECRET"),
            razorpay_webhook_secret=os.getenv("RAZORPAY_WEBHOOK_SECRET"),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY"),
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET"),
            resend_api_key=(os.getenv("RESEND_API_KEY") or "").strip() or None,
            mail_from=os.getenv("MAIL_FROM", "no-reply@example.com"),
            public_base_url=os.getenv("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


def validate_settings(settings: Settings) -> None:
    """Fail fast when the configured payment gateway cannot sign or verify."""
    if settings.payment_gateway not in SUPPORTED_GATEWAYS:
        raise RuntimeError(f"Unsupported PAYMENT_GATEWAY: {settings.payment_gateway}")
    if settings.payment_gateway == "razorpay":
        required = {
            "RAZORPAY_KEY_SECRET": settings.razorpay_key_secret,
            "RAZORPAY_WEBHOOK_SECRET": settings.razorpay_webhook_secret,
        }
    else:
        required = {
            "STRIPE_SECRET_KEY": settings.stripe_secret_key,
            "STRIPE_WEBHOOK_SECRET": settings.stripe_webhook_secret,
        }
    missing = [name for name, value in required.items() if not value]
    if missing:
        raise RuntimeError(f"Missing payment configuration: {', '.join(missing)}")


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
