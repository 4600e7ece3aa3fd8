"""
Service configuration loaded from environment variables.

Values are read once from the process environment (and `.env.local` if present)
and cached. Tests call `reset_settings()` after patching the environment.
"""
import os
import logging
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Invalid integer for {name}: {value!r}, using {default}")
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"Invalid number for {name}: {value!r}, using {default}")
        return default


@dataclass
class Settings:
    """Runtime settings for the analyzer service."""
    openrouter_api_key: Optional[str] = None
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    query_timeout_seconds: float = 20.0
    max_queries: int = 1000
    max_concurrent_requests: int = 2
    timeout_threshold: int = 3
    timeout_reset_seconds: float = 600.0
    batch_delay_seconds: float = 0.5
    ai_presence_detection: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv('.env.local')
        return cls(
            openrouter_api_key=os.getenv("OPENROUTER_API_KEY") or os.getenv("OPENAI_API_KEY"),
            openrouter_base_url=os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1"),
            query_timeout_seconds=_env_float("QUERY_TIMEOUT_SECONDS", 20.0),
            max_queries=_env_int("MAX_QUERIES", 1000),
            max_concurrent_requests=_env_int("MAX_CONCURRENT_REQUESTS", 2),
            timeout_threshold=_env_int("TIMEOUT_THRESHOLD", 3),
            timeout_reset_seconds=_env_float("TIMEOUT_RESET_SECONDS", 600.0),
            batch_delay_seconds=_env_float("BATCH_DELAY_SECONDS", 0.5),
            ai_presence_detection=_env_bool("AI_PRESENCE_DETECTION", False),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


_settings = None

def get_settings() -> Settings:
    """Get settings instance (lazy initialization)."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reset_settings() -> None:
    """Drop cached settings so the next call re-reads the environment."""
    global _settings
    _settings = None
