import logging
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    DATABASE_URL: str = "mongodb://localhost:27017"
    DATABASE_NAME: str = "storefront"

    ADMIN_KEY: str = "demo-admin-key"
    JWT_SECRET: str = "change-me-in-production"
    JWT_EXPIRES_DAYS: int = 7

    RAZORPAY_KEY_ID: Optional[str] = None
    RAZORPAY_KEY_SECRET: str = "demo-key-secret"
    RAZORPAY_WEBHOOK_SECRET: str = "demo-webhook-secret"
    RAZORPAY_BASE_URL: str = "https://api.razorpay.com/v1"
    CURRENCY: str = "INR"

    ESTIMATED_DELIVERY_DAYS: int = 7

    RESEND_API_KEY: Optional[str] = None
    EMAIL_FROM: str = "Storefront <orders@example.com>"

    LOG_LEVEL: str = "INFO"
    PORT: int = 8000
    CORS_ORIGINS: List[str] = ["*"]


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
