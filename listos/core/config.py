import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Entitlement cache
    CACHE_BACKEND: str = "memory"  # memory | redis
    REDIS_URL: str = "redis://localhost:6379"
    CACHE_KEY_PREFIX: str = "listos"
    DEFAULT_CACHE_TTL_SECONDS: int = 300
    STATUS_CACHE_TTL_SECONDS: int = 120
    CAN_GENERATE_CACHE_TTL_SECONDS: int = 60

    # Quota
    FREE_LIMIT: int = 2

    # Retry policy
    RETRY_MAX_RETRIES: int = 3
    RETRY_INITIAL_DELAY_SECONDS: float = 0.5
    RETRY_MAX_DELAY_SECONDS: float = 5.0
    RETRY_BACKOFF_FACTOR: float = 2.0
    RETRY_JITTER: float = 0.2
    WEBHOOK_RETRY_INITIAL_DELAY_SECONDS: float = 1.0
    REQUEST_TIMEOUT_SECONDS: float = 10.0

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300
    WEBHOOK_ORDERING_GUARD: bool = True

    # HTTP
    CORS_ALLOWED_ORIGINS: str = "http://localhost:3000"  # comma-separated

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("listos")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
