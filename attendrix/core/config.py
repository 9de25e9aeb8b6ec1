import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Authoritative store (remote procedures)
    AUTHORITATIVE_API_URL: Optional[str] = None
    AUTHORITATIVE_API_KEY: Optional[str] = None
    RPC_TIMEOUT_SECONDS: float = 10.0
    ATTENDANCE_GOAL: float = 80.0

    # Mirror document store
    MIRROR_DATABASE_URL: Optional[str] = None
    TEST_MIRROR_DATABASE_URL: Optional[str] = None
    MIRROR_TX_MAX_RETRIES: int = 5

    # Streak calendar
    STREAK_TIMEZONE: str = "Asia/Kolkata"

    # Write buffer
    WRITE_BUFFER_FLUSH_INTERVAL_SECONDS: float = 15.0
    WRITE_BUFFER_DEBOUNCE_SECONDS: float = 15.0

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
    log = logger or logging.getLogger("attendrix")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "AUTHORITATIVE_API_URL",
        "MIRROR_DATABASE_URL",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if cfg.WRITE_BUFFER_FLUSH_INTERVAL_SECONDS <= 0:
        message = "WRITE_BUFFER_FLUSH_INTERVAL_SECONDS must be positive"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
