from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from kioskapi.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings read from the environment, then from ``.env``."""

    database_url: str = env_field(
        "postgresql://localhost:5432/kioskapi", "DATABASE_URL"
    )
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Login rate limits use Redis when set; otherwise an in-process counter",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allows runtime resets and tolerates an unreachable Redis.",
    )
    access_token_ttl_seconds: int = env_field(
        3600, "ACCESS_TOKEN_TTL_SECONDS", ge=0
    )
    login_rate_limit_per_minute: int = env_field(5, "LOGIN_RATE_LIMIT_PER_MINUTE")
    login_rate_limit_window_seconds: int = env_field(
        60, "LOGIN_RATE_LIMIT_WINDOW_SECONDS"
    )
    token_sweep_interval_seconds: int = env_field(
        0,
        "TOKEN_SWEEP_INTERVAL_SECONDS",
        ge=0,
        description="Seconds between expired-token sweeps; 0 disables the sweep",
    )
    search_page_size: int = env_field(10, "SEARCH_PAGE_SIZE", gt=0)
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    log_level: str = env_field("INFO", "LOG_LEVEL")
    log_json: bool = env_field(True, "LOG_JSON")
    log_dev_mode: bool = env_field(False, "LOG_DEV_MODE")
    build_sha: str = env_field("dev", "BUILD_SHA")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("login_rate_limit_window_seconds")
    @classmethod
    def _positive_window(cls, value: int) -> int:
        if value <= 0:
            logger.warning("login_rate_limit_window_invalid", configured=value, using=60)
            return 60
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
