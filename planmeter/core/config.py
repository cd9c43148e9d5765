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
    DB_ECHO: bool = False

    # Locking: fail fast instead of waiting on a held feature lock
    LOCK_NOWAIT: bool = False

    # Expired credit purge job
    CREDIT_PURGE_BATCH_SIZE: int = 1000
    CREDIT_PURGE_DRY_RUN: bool = False

    # Renewal job: renew subscriptions ending within this many days
    RENEWAL_WINDOW_DAYS: int = 7

    # Catalog
    DEFAULT_CURRENCY: str = "USD"
    SEED_DEFAULT_PLANS: bool = False

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
    log = logger or logging.getLogger("planmeter")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if cfg.CREDIT_PURGE_BATCH_SIZE <= 0:
        message = "CREDIT_PURGE_BATCH_SIZE must be positive"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
