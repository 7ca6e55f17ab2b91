from __future__ import annotations

import os
import re
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from koauth.logging import get_logger

logger = get_logger(__name__)

_NAMESPACE_RE = re.compile(r"^[a-z0-9]{2,16}$")
_RESERVED_NAMESPACES = {"sess", "oat", "ort", "oac"}


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential authority."""

    database_url: str = env_field("postgresql://localhost:5432/koauth", "DATABASE_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; allows a generated token pepper.",
    )
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    initial_admin_email: str | None = env_field(None, "INITIAL_ADMIN_EMAIL")

    # Sessions
    session_ttl_days: int = env_field(7, "SESSION_TTL_DAYS")
    session_cookie_secure: bool = env_field(True, "SESSION_COOKIE_SECURE")

    # API keys
    api_key_namespace: str = env_field(
        "koa",
        "API_KEY_NAMESPACE",
        description="Leading segment of issued API keys, e.g. koa_ab12cd_<secret>",
    )

    # OAuth
    authorization_code_ttl_seconds: int = env_field(600, "AUTHORIZATION_CODE_TTL_SECONDS")
    oauth_access_token_ttl_minutes: int = env_field(60, "OAUTH_ACCESS_TOKEN_TTL_MINUTES")
    oauth_refresh_token_ttl_days: int = env_field(30, "OAUTH_REFRESH_TOKEN_TTL_DAYS")

    # HMAC key for lookup digests of refresh tokens, codes and OAuth tokens
    token_pepper: str | None = env_field(None, "TOKEN_PEPPER", validate_default=True)

    # Store adapter
    store_retry_attempts: int = env_field(3, "STORE_RETRY_ATTEMPTS")
    store_retry_backoff_seconds: float = env_field(0.05, "STORE_RETRY_BACKOFF_SECONDS")
    store_pool_min_size: int = env_field(2, "STORE_POOL_MIN_SIZE")
    store_pool_max_size: int = env_field(10, "STORE_POOL_MAX_SIZE")

    sweep_interval_seconds: int = env_field(
        300,
        "SWEEP_INTERVAL_SECONDS",
        description="Interval for the background expiry sweep; 0 disables it",
    )

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

    @field_validator("api_key_namespace")
    @classmethod
    def _validate_namespace(cls, value: str) -> str:
        if not _NAMESPACE_RE.match(value):
            raise ValueError("api_key_namespace must be 2-16 lowercase letters or digits")
        if value in _RESERVED_NAMESPACES:
            raise ValueError("api_key_namespace collides with a built-in credential prefix")
        return value

    @field_validator("session_ttl_days", "oauth_refresh_token_ttl_days")
    @classmethod
    def _validate_days(cls, value: int) -> int:
        if value < 1 or value > 365:
            raise ValueError("ttl in days must be between 1 and 365")
        return value

    @field_validator("oauth_access_token_ttl_minutes")
    @classmethod
    def _validate_access_ttl(cls, value: int) -> int:
        if value < 1 or value > 24 * 60:
            raise ValueError("access token ttl must be between 1 minute and 1 day")
        return value

    @field_validator("authorization_code_ttl_seconds")
    @classmethod
    def _validate_code_ttl(cls, value: int) -> int:
        # Authorization codes are short lived
        if value < 60 or value > 600:
            raise ValueError("authorization_code_ttl_seconds must be between 60 and 600")
        return value

    @field_validator("store_retry_attempts")
    @classmethod
    def _validate_retry_attempts(cls, value: int) -> int:
        if value < 1 or value > 10:
            raise ValueError("store_retry_attempts must be between 1 and 10")
        return value

    @field_validator("token_pepper")
    @classmethod
    def _ensure_token_pepper(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            if len(value) < 32:
                raise ValueError("TOKEN_PEPPER must be at least 32 characters")
            return value
        if info.data.get("test_mode") or info.data.get("use_memory_store"):
            # Digests are only stable for the life of the process
            logger.warning("token_pepper_generated", test_mode=info.data.get("test_mode"))
            return secrets.token_urlsafe(48)
        raise ValueError("TOKEN_PEPPER must be set when using the persistent store")


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
