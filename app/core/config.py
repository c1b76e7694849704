# app/core/config.py

import os
from functools import lru_cache
from typing import List, Annotated
from pydantic import ConfigDict, BeforeValidator
from pydantic_settings import BaseSettings


def _parse_email_list(value):
    if value in (None, "", []):
        return []
    if isinstance(value, str):
        return [email.strip() for email in value.split(",") if email.strip()]
    if isinstance(value, (list, tuple, set)):
        return [str(email).strip() for email in value if str(email).strip()]
    return []


class Settings(BaseSettings):
    """
    Application settings.
    Loads values from environment variables (.env file)
    """
    # Database settings
    DATABASE_URL: str = ""

    # Security
    WEBHOOK_SECRET_TOKEN: str = ""
    BASIC_AUTH_USERNAME: str = "admin"
    BASIC_AUTH_PASSWORD: str = ""

    # Marketplace OAuth
    MARKETPLACE_CLIENT_ID: str = ""
    MARKETPLACE_CLIENT_SECRET: str = ""
    MARKETPLACE_REDIRECT_URI: str = ""
    MARKETPLACE_API_BASE_URL: str = "https://api.mercadolibre.com"
    MARKETPLACE_AUTH_URL: str = "https://auth.mercadolivre.com.br/authorization"
    MARKETPLACE_TOKEN_URL: str = "https://api.mercadolibre.com/oauth/token"

    # Marketplace fetch behaviour
    SYNC_RATE_LIMIT_DELAY_MS: int = 500
    SYNC_RATE_LIMIT_BACKOFF_MULTIPLIER: float = 5.0
    SYNC_REQUEST_TIMEOUT_SECONDS: float = 30.0
    SYNC_PAGE_SIZE: int = 50

    # Token lifecycle
    TOKEN_SAFETY_MARGIN_SECONDS: int = 300      # get_valid_token refreshes inside this margin
    TOKEN_REFRESH_WINDOW_SECONDS: int = 3600    # status reports needs_refresh inside this window

    # Product sync state
    PRODUCT_STALE_AFTER_HOURS: int = 24

    # Payment provider
    PAYMENT_API_BASE_URL: str = "https://api.mercadopago.com"
    PAYMENT_ACCESS_TOKEN: str = ""

    # Webhook ingestion
    WEBHOOK_RATE_LIMIT_MAX_REQUESTS: int = 20
    WEBHOOK_RATE_LIMIT_WINDOW_SECONDS: int = 60

    # Webhook retry
    WEBHOOK_RETRY_MAX_ATTEMPTS: int = 4         # first attempt + 3 retries
    WEBHOOK_RETRY_BASE_DELAY_SECONDS: int = 30
    WEBHOOK_RETRY_MAX_DELAY_SECONDS: int = 3600
    WEBHOOK_RETRY_BATCH_SIZE: int = 50
    WEBHOOK_UNPROCESSED_GRACE_SECONDS: int = 120  # RECEIVED events older than this are picked up by the retry pass

    # Scheduler
    SYNC_SCHEDULE_ENABLED: bool = False
    DELTA_SYNC_INTERVAL_MINUTES: int = 60
    TOKEN_REFRESH_INTERVAL_MINUTES: int = 60
    WEBHOOK_RETRY_INTERVAL_MINUTES: int = 5
    NOTIFICATION_DISPATCH_INTERVAL_SECONDS: int = 60
    ORPHANED_JOB_SWEEP_INTERVAL_MINUTES: int = 10
    ORPHANED_JOB_TIMEOUT_MINUTES: int = 30

    # Local user whose marketplace account is used when a request names none
    DEFAULT_USER_ID: int = 1

    # Email notifications
    NOTIFICATION_EMAILS: Annotated[List[str], BeforeValidator(lambda v: _parse_email_list(v))] = []
    SMTP_HOST: str = ""
    SMTP_PORT: int = 587
    SMTP_USERNAME: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_USE_TLS: bool = True
    SMTP_USE_SSL: bool = False
    SMTP_TIMEOUT: int = 30
    SMTP_FROM_EMAIL: str = ""
    SMTP_FROM_NAME: str = ""
    NOTIFICATION_MAX_ATTEMPTS: int = 5

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = False

    model_config = ConfigDict(
        env_file=os.environ.get('ENV_FILE', '.env') if os.path.exists(os.environ.get('ENV_FILE', '.env')) else None,
        case_sensitive=True,
        extra="ignore",
    )


@lru_cache()
def get_settings():
    """Cached settings to avoid loading .env file for every request"""
    return Settings()
