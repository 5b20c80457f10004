from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tutorauth.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    """Deployment environments; only production gets Secure/Strict cookies."""

    PRODUCTION = "production"
    STAGING = "staging"
    DEVELOPMENT = "development"
    LOCAL = "local"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service."""

    database_url: str | None = env_field(None, "DATABASE_URL")
    redis_url: str | None = env_field(None, "REDIS_URL")
    redis_token: str | None = env_field(
        None, "REDIS_TOKEN", description="Password for the rate limit counter store"
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    cookie_domain: str | None = env_field(None, "COOKIE_DOMAIN")
    environment: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; allows runtime resets",
    )
    request_timeout_seconds: float = env_field(
        5.0,
        "REQUEST_TIMEOUT_SECONDS",
        description="Upper bound for store, counter and hashing calls per request",
    )
    # Failed-login gate: read before verification, written only on failure
    login_failed_max_attempts: int = env_field(10, "LOGIN_FAILED_MAX_ATTEMPTS")
    login_failed_window_seconds: int = env_field(15 * 60, "LOGIN_FAILED_WINDOW_SECONDS")
    general_rate_limit_max: int = env_field(10, "GENERAL_RATE_LIMIT_MAX")
    general_rate_limit_window_seconds: int = env_field(
        60 * 60, "GENERAL_RATE_LIMIT_WINDOW_SECONDS"
    )
    session_cleanup_interval_seconds: int = env_field(
        24 * 60 * 60, "SESSION_CLEANUP_INTERVAL_SECONDS"
    )
    # Email delivery; unset host means codes are logged instead of sent
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("TutorCat", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")

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

    @field_validator("environment", mode="before")
    @classmethod
    def _validate_environment(cls, value: Any) -> Environment:
        if isinstance(value, str):
            value = value.strip().lower()
        return Environment(value)

    @field_validator("database_url", "redis_url", "redis_token", "jwt_secret", "cookie_domain")
    @classmethod
    def _blank_as_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @field_validator("request_timeout_seconds")
    @classmethod
    def _validate_timeout(cls, value: float) -> float:
        if value <= 0:
            logger.warning("request_timeout_invalid", value=value, fallback=5.0)
            return 5.0
        return value

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def is_local(self) -> bool:
        """Local deployments never get a cookie Domain attribute."""
        if self.is_production:
            return False
        return not self.cookie_domain or self.cookie_domain == "localhost"


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
