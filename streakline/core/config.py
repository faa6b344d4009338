import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import List, Optional


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "auto"  # auto | json | console

    # Database
    DATABASE_URL: Optional[str] = "sqlite:///./streakline.db"
    TEST_DATABASE_URL: Optional[str] = None
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 3600
    DB_STATEMENT_TIMEOUT_MS: int = 5000  # PostgreSQL only

    # Task-list cache (redis primary, in-process fallback)
    REDIS_URL: str = "redis://localhost:6379/0"
    CACHE_ENABLED: bool = True
    CACHE_PREFIX: str = "streakline"
    CACHE_TTL_SECONDS: int = 60
    CACHE_SOCKET_TIMEOUT_SECONDS: float = 0.5
    CACHE_RECONNECT_INTERVAL_SECONDS: float = 5.0

    # Engagement rules
    COMPLIANCE_THRESHOLD_DEFAULT: float = 0.80
    STREAK_UPDATE_MAX_ATTEMPTS: int = 5

    # Nightly compliance batch
    BATCH_ENABLED: bool = False
    BATCH_HOUR: int = 23
    BATCH_MINUTE: int = 59
    BATCH_TIMEZONE: str = "UTC"

    # Auth boundary
    JWT_SECRET: Optional[str] = None
    ALLOW_HEADER_AUTH: bool = True

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()


def config_problems(cfg: Settings) -> List[str]:
    """Missing keys and out-of-range engagement rules. Never includes secret values."""
    required = ["DATABASE_URL"]
    if not cfg.ALLOW_HEADER_AUTH:
        required.append("JWT_SECRET")
    if cfg.CACHE_ENABLED:
        required.append("REDIS_URL")

    problems = []
    missing = [key for key in required if not getattr(cfg, key, None)]
    if missing:
        problems.append(f"Missing required configuration: {', '.join(missing)}")
    if not 0 < cfg.COMPLIANCE_THRESHOLD_DEFAULT <= 1:
        problems.append(f"COMPLIANCE_THRESHOLD_DEFAULT must be in (0, 1], got {cfg.COMPLIANCE_THRESHOLD_DEFAULT}")
    if cfg.STREAK_UPDATE_MAX_ATTEMPTS < 1:
        problems.append("STREAK_UPDATE_MAX_ATTEMPTS must be at least 1")
    return problems


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Raise RuntimeError in strict mode, otherwise log each problem as a warning."""
    cfg = settings_obj or settings
    log = logger or logging.getLogger("streakline")
    problems = config_problems(cfg)
    if problems and (cfg.CONFIG_STRICT if strict is None else strict):
        raise RuntimeError("; ".join(problems))
    for problem in problems:
        log.warning(problem)
    return True
