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

    # Content model (challenge generation)
    GROQ_API_KEY: Optional[str] = None
    GROQ_MODEL: str = "llama-3.1-8b-instant"
    GROQ_TEMPERATURE: float = 0.7
    CONTENT_MODEL_TIMEOUT_SECONDS: float = 20.0

    # Challenge engine
    CHALLENGE_TARGET_ACTIVE_COUNT: int = 3
    CHALLENGE_MAX_CONFLICT_RETRIES: int = 3
    CHALLENGE_SWEEP_ACTIVITY_DAYS: int = 7
    CHALLENGE_DEFAULT_REWARD_POINTS: int = 50

    # Background jobs (sweep fan-out)
    REDIS_URL: str = "redis://localhost:6379/0"
    CHALLENGE_SWEEP_QUEUE: str = "challenges"

    # Observability / Tracing
    OTEL_ENABLED: bool = False
    OTEL_EXPORTER: str = "console"  # console | memory

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
    log = logger or logging.getLogger("finquest")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "GROQ_API_KEY",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if cfg.CHALLENGE_TARGET_ACTIVE_COUNT < 0:
        raise RuntimeError("CHALLENGE_TARGET_ACTIVE_COUNT must be >= 0")
    if cfg.CHALLENGE_MAX_CONFLICT_RETRIES < 1:
        raise RuntimeError("CHALLENGE_MAX_CONFLICT_RETRIES must be >= 1")

    return True
