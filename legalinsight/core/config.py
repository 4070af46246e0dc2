import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database & Cache
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    REDIS_URL: str = "redis://localhost:6379"

    # Auth (HS256 tokens issued by the hosted auth provider)
    JWT_SECRET: Optional[str] = None
    JWT_AUDIENCE: Optional[str] = "authenticated"

    # Admin access
    ADMIN_KEY: Optional[str] = None

    # Gumroad webhook (optional shared secret passed as ?token=)
    GUMROAD_WEBHOOK_TOKEN: Optional[str] = None

    # Plan quotas
    FREE_MONTHLY_CREDITS: int = 1
    BASIC_MONTHLY_CREDITS: int = 10
    PAY_PER_USE_CREDITS: int = 1

    # Plan terms
    SUBSCRIPTION_TERM_DAYS: int = 30
    REFERRAL_REWARD_DAYS: int = 30
    EXPIRING_SOON_DAYS: int = 7

    # Expiration sweep
    EXPIRATION_SWEEP_INTERVAL_SECONDS: int = 60
    EXPIRATION_SWEEP_BATCH_SIZE: int = 500

    # Count soft-deleted documents against the metering window
    USAGE_COUNT_INCLUDES_DELETED: bool = False

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
    log = logger or logging.getLogger("legalinsight")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "JWT_SECRET",
        "ADMIN_KEY",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
