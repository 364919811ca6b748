import logging
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Local store (SQL when set, in-memory otherwise)
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Remote store (PostgREST-style hosted backend)
    REMOTE_URL: Optional[str] = None
    REMOTE_API_KEY: Optional[str] = None
    REMOTE_TIMEOUT_SECONDS: float = 10.0

    # Sync scheduling
    SYNC_TIMEOUT_SECONDS: float = 30.0
    SYNC_INTERVAL_SECONDS: int = 300
    SYNC_BACKOFF_BASE_SECONDS: int = 5
    SYNC_BACKOFF_CAP_SECONDS: int = 900
    SYNC_MAX_RETRIES: int = 8  # consecutive failures before "stalled"

    # Streak policy
    AT_RISK_CUTOFF_HOUR: int = 20  # local hour, 0-23
    DEFAULT_TIMEZONE: str = "UTC"
    BANK_LOOKBACK_DAYS: int = 30
    CLOCK_SKEW_TOLERANCE_DAYS: int = 1

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()


def _config_problems(cfg) -> List[str]:
    problems = []
    missing = [key for key in ("REMOTE_URL", "REMOTE_API_KEY") if not getattr(cfg, key, None)]
    if missing:
        # Names only; values may be secrets.
        problems.append(f"Missing required configuration: {', '.join(missing)}")
    if not 0 <= cfg.AT_RISK_CUTOFF_HOUR <= 23:
        problems.append(f"AT_RISK_CUTOFF_HOUR must be within 0-23, got {cfg.AT_RISK_CUTOFF_HOUR}")
    base = getattr(cfg, "SYNC_BACKOFF_BASE_SECONDS", 1)
    cap = getattr(cfg, "SYNC_BACKOFF_CAP_SECONDS", base)
    if base <= 0 or cap < base:
        problems.append("SYNC_BACKOFF_BASE_SECONDS must be positive and not exceed SYNC_BACKOFF_CAP_SECONDS")
    tz_name = getattr(cfg, "DEFAULT_TIMEZONE", "UTC")
    try:
        ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        problems.append(f"DEFAULT_TIMEZONE is not a known timezone: {tz_name}")
    return problems


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Warn about bad configuration, or raise RuntimeError listing every problem in strict mode."""
    cfg = settings_obj or settings
    log = logger or logging.getLogger("mentor")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    problems = _config_problems(cfg)
    if problems and strict_mode:
        raise RuntimeError("; ".join(problems))
    for problem in problems:
        log.warning(problem)
    return True
