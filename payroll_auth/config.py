from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from payroll_auth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the token service, sourced from the environment."""

    redis_host: str = env_field("localhost", "REDIS_HOST")
    redis_port: int = env_field(6379, "REDIS_PORT")
    redis_password: str | None = env_field(None, "REDIS_PASSWORD")
    redis_db: int = env_field(0, "REDIS_DB")
    redis_socket_timeout: float = env_field(
        5.0,
        "REDIS_SOCKET_TIMEOUT",
        description="Socket connect/read timeout in seconds for Redis commands",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    refresh_secret: str | None = env_field(
        None,
        "REFRESH_SECRET",
        description="Signing key for refresh tokens; falls back to JWT_SECRET",
    )
    access_token_ttl_minutes: int = env_field(8 * 60, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES"
    )
    blacklist_fail_closed: bool = env_field(
        False,
        "BLACKLIST_FAIL_CLOSED",
        description=(
            "Treat tokens as revoked when Redis is unreachable. Off by default: "
            "an outage lets tokens through instead of locking every user out."
        ),
    )
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

    @field_validator("jwt_secret")
    @classmethod
    def _require_jwt_secret(cls, value: str | None) -> str:
        if not value:
            raise ValueError("JWT_SECRET is not set in environment variables")
        return value

    @field_validator("access_token_ttl_minutes", "refresh_token_ttl_minutes")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token TTL must be a positive number of minutes")
        return value

    @model_validator(mode="after")
    def _default_refresh_secret(self) -> "Settings":
        if not self.refresh_secret:
            logger.warning(
                "refresh_secret_missing",
                message="REFRESH_SECRET not set; refresh tokens are signed with JWT_SECRET",
            )
            self.refresh_secret = self.jwt_secret
        return self


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
