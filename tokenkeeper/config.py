from __future__ import annotations

import os
from typing import Any, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tokenkeeper.logging import get_logger

logger = get_logger(__name__)

THIRTY_DAYS_SECONDS = 60 * 60 * 24 * 30


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the client application and its token lifecycle."""

    # Cache
    redis_url: Optional[str] = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_max_retries: int = env_field(
        3,
        "REDIS_MAX_RETRIES",
        description="Reconnect attempts before switching to the in-memory fallback",
    )
    redis_retry_base_ms: int = env_field(50, "REDIS_RETRY_BASE_MS")
    redis_retry_cap_ms: int = env_field(2000, "REDIS_RETRY_CAP_MS")
    redis_socket_timeout: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT")
    # Identity provider
    issuer_base_url: str = env_field("http://localhost:4444/", "ISSUER_BASE_URL")
    client_id: str = env_field("client-app", "CLIENT_ID")
    client_secret: Optional[str] = env_field("client-secret", "CLIENT_SECRET")
    base_url: str = env_field("http://localhost:5555", "BASE_URL")
    oauth_scope: str = env_field("openid offline_access profile email", "OAUTH_SCOPE")
    oauth_audience: Optional[str] = env_field(None, "OAUTH_AUDIENCE")
    http_timeout_seconds: float = env_field(10.0, "HTTP_TIMEOUT_SECONDS")
    discovery_retries: int = env_field(3, "DISCOVERY_RETRIES")
    # Backend API
    api_url: str = env_field("http://localhost:8000", "API_URL")
    # Token lifecycle
    refresh_threshold_seconds: int = env_field(
        300,
        "REFRESH_THRESHOLD_SECONDS",
        description="Refresh access tokens with less than this many seconds left",
    )
    default_token_ttl_seconds: int = env_field(3600, "DEFAULT_TOKEN_TTL_SECONDS")
    blacklist_ttl_seconds: int = env_field(THIRTY_DAYS_SECONDS, "BLACKLIST_TTL_SECONDS")
    blacklist_fail_closed: bool = env_field(
        True,
        "BLACKLIST_FAIL_CLOSED",
        description="Treat refresh tokens as revoked when the blacklist cannot be read",
    )
    revoke_on_logout: bool = env_field(True, "REVOKE_ON_LOGOUT")
    # Sessions
    session_ttl_seconds: int = env_field(60 * 60 * 24, "SESSION_TTL_SECONDS")
    pkce_ttl_seconds: int = env_field(600, "PKCE_TTL_SECONDS")
    session_cookie_name: str = env_field("session_id", "SESSION_COOKIE_NAME")
    session_cookie_secure: bool = env_field(False, "SESSION_COOKIE_SECURE")
    test_mode: bool = env_field(False, "TEST_MODE")

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

    @field_validator("redis_url", "oauth_audience", "client_secret")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not str(value).strip():
            return None
        return value

    @field_validator("issuer_base_url", "base_url", "api_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("redis_max_retries", "discovery_retries")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("retry counts must be >= 0")
        return value

    @property
    def redirect_uri(self) -> str:
        return f"{self.base_url}/callback"


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.debug("settings_loaded", issuer=_settings_cache.issuer_base_url)
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
