"""
Centralized configuration for RingStreak.

All configuration is loaded from environment variables with sensible defaults.

Usage:
    from ringstreak.config import get_config
    cfg = get_config()
    print(cfg.streak.api_base)     # "https://api.streak.com/api"
    print(cfg.pop_cooldown)        # 15.0
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field


class ConfigurationError(RuntimeError):
    """Raised when an environment variable holds an unusable value."""


@dataclass(frozen=True)
class StreakConfig:
    """Streak CRM API parameters."""

    api_base: str = "https://api.streak.com/api"
    api_key: str = ""
    web_base: str = "https://www.streak.com"
    timeout: float = 15.0
    retries: int = 2
    backoff: float = 0.25

    @property
    def configured(self) -> bool:
        return bool(self.api_key)


@dataclass(frozen=True)
class RedisConfig:
    """Redis connection parameters for the call event stream."""

    host: str = "127.0.0.1"
    port: int = 6379
    db: int = 0
    password: str = ""

    @property
    def url(self) -> str:
        auth = f":{self.password}@" if self.password else ""
        return f"redis://{auth}{self.host}:{self.port}/{self.db}"


@dataclass(frozen=True)
class Config:
    """Top-level RingStreak configuration."""

    streak: StreakConfig = field(default_factory=StreakConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)

    # Call ingestion
    shared_secret: str = ""
    pop_cooldown: float = 15.0
    max_matches: int = 12

    # Service
    host: str = "127.0.0.1"
    port: int = 8081
    log_level: str = "INFO"


# Singleton
_config: Config | None = None


def get_config() -> Config:
    """Get or create the singleton config from environment variables."""
    global _config
    if _config is not None:
        return _config
    _config = _load_from_env()
    return _config


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, str(default))
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, str(default))
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc


def _load_from_env() -> Config:
    """Load configuration from environment variables."""
    streak = StreakConfig(
        api_base=os.environ.get("STREAK_API_BASE", "https://api.streak.com/api").rstrip("/"),
        api_key=os.environ.get("STREAK_API_KEY", ""),
        web_base=os.environ.get("STREAK_WEB_BASE", "https://www.streak.com").rstrip("/"),
        timeout=_env_float("RINGSTREAK_HTTP_TIMEOUT", 15.0),
        retries=_env_int("RINGSTREAK_HTTP_RETRIES", 2),
    )

    redis_cfg = RedisConfig(
        host=os.environ.get("RINGSTREAK_REDIS_HOST", "127.0.0.1"),
        port=_env_int("RINGSTREAK_REDIS_PORT", 6379),
        db=_env_int("RINGSTREAK_REDIS_DB", 0),
        password=os.environ.get("RINGSTREAK_REDIS_PASSWORD", ""),
    )

    return Config(
        streak=streak,
        redis=redis_cfg,
        shared_secret=os.environ.get("RINGSTREAK_SHARED_SECRET", ""),
        pop_cooldown=_env_float("RINGSTREAK_POP_COOLDOWN", 15.0),
        max_matches=_env_int("RINGSTREAK_MAX_MATCHES", 12),
        host=os.environ.get("RINGSTREAK_HOST", "127.0.0.1"),
        port=_env_int("RINGSTREAK_PORT", 8081),
        log_level=os.environ.get("RINGSTREAK_LOG_LEVEL", "INFO").upper(),
    )


def reset_config() -> None:
    """Reset the singleton config (for testing)."""
    global _config
    _config = None
