# stocksync/core/config.py

import os
from functools import lru_cache
from typing import Annotated, List
from pydantic import ConfigDict, BeforeValidator
from pydantic_settings import BaseSettings


def _parse_scope_list(value):
    if value in (None, "", []):
        return []
    if isinstance(value, str):
        return [scope.strip() for scope in value.replace(",", " ").split() if scope.strip()]
    if isinstance(value, (list, tuple, set)):
        return [str(scope).strip() for scope in value if str(scope).strip()]
    return []


class Settings(BaseSettings):
    """
    Application settings.
    Loads values from environment variables (.env file)
    """
    # Database settings
    DATABASE_URL: str = ""

    # Security
    SECRET_KEY: str
    WEBHOOK_SECRET: str = ""

    # ERP API (OAuth2 authorization code flow, one grant per linked account)
    ERP_API_URL: str = "https://www.bling.com.br/Api/v3"
    ERP_CLIENT_ID: str = ""
    ERP_CLIENT_SECRET: str = ""
    ERP_REDIRECT_URI: str = ""
    ERP_OAUTH_SCOPES: Annotated[List[str], BeforeValidator(lambda v: _parse_scope_list(v))] = []
    ERP_REQUEST_TIMEOUT: float = 30.0
    ERP_MIN_REQUEST_INTERVAL: float = 0.35     # upstream quota is ~3 req/s per app
    ERP_MAX_RATE_LIMIT_RETRIES: int = 2
    ERP_DEFAULT_RETRY_AFTER: float = 1.0
    ERP_TOKEN_REFRESH_MARGIN: int = 60         # seconds before expiry
    ERP_VERIFY_WRITES: bool = False
    ERP_VERIFY_DELAY: float = 0.5

    # Broker
    REDIS_URL: str = ""
    QUEUE_NAME: str = "stock-events"
    QUEUE_CONCURRENCY: int = 5
    QUEUE_MAX_RETRIES: int = 3
    QUEUE_BACKOFF_SECONDS: float = 2.0
    QUEUE_COMPLETED_TTL_SECONDS: int = 24 * 3600
    QUEUE_DEAD_LETTER_TTL_SECONDS: int = 7 * 24 * 3600
    LEDGER_CLAIM_LEASE_SECONDS: int = 600     # an unfinished claim older than this may be taken over

    # In-memory caches
    SUPPRESSION_TTL_SECONDS: float = 30.0
    SUPPRESSION_MAX_ENTRIES: int = 5
    RESERVE_CACHE_TTL_SECONDS: float = 7 * 24 * 3600
    CACHE_SWEEP_SECONDS: int = 60

    # Reconciliation sweep
    RECONCILE_ENABLED: bool = True
    RECONCILE_TICK_SECONDS: int = 60
    RECONCILE_FIRST_RUN_DELAY: int = 5
    RECONCILE_DEFAULT_INTERVAL_MINUTES: int = 30
    RECONCILE_MAX_PRODUCTS: int = 100
    RECONCILE_COOLDOWN_MINUTES: int = 5

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    model_config = ConfigDict(
        env_file=os.environ.get('ENV_FILE', '.env') if os.path.exists('.env') else None,
        case_sensitive=True,
        extra="ignore",
    )


@lru_cache()
def get_settings():
    """Cached settings to avoid loading .env file for every request"""
    return Settings()


def clear_settings_cache():
    """Clear the settings cache - useful when switching between environments"""
    get_settings.cache_clear()
