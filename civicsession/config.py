from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from civicsession.logging import get_logger

logger = get_logger(__name__)


class CredentialBackend(str, Enum):
    """Durable key-value stores the credential store can sit on."""

    MEMORY = "memory"
    FILE = "file"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Client settings for the session and alert layer."""

    api_base_url: str = env_field("http://localhost:5000/api", "CIVIC_API_BASE_URL")
    request_timeout_seconds: float = env_field(
        30.0,
        "CIVIC_REQUEST_TIMEOUT_SECONDS",
        description="Timeout for ordinary authenticated API calls",
    )
    refresh_timeout_seconds: float = env_field(
        10.0,
        "CIVIC_REFRESH_TIMEOUT_SECONDS",
        description="Timeout for the token refresh exchange",
    )
    credential_backend: CredentialBackend = env_field(
        CredentialBackend.FILE,
        "CIVIC_CREDENTIAL_BACKEND",
        description="Where access/refresh tokens are persisted: memory, file, or redis",
    )
    credential_path: str = env_field(
        os.path.join(os.path.expanduser("~"), ".civicsession", "credentials.json"),
        "CIVIC_CREDENTIAL_PATH",
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    credential_key_prefix: str = env_field("", "CIVIC_CREDENTIAL_KEY_PREFIX")
    alerts_page_limit: int = env_field(50, "CIVIC_ALERTS_PAGE_LIMIT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets between tests",
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

    @field_validator("credential_backend")
    @classmethod
    def _validate_backend(cls, value: CredentialBackend) -> CredentialBackend:
        return CredentialBackend(value)

    @field_validator("api_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("alerts_page_limit")
    @classmethod
    def _validate_page_limit(cls, value: int) -> int:
        if value < 1:
            raise ValueError("alerts_page_limit must be positive")
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.debug(
            "settings_loaded",
            api_base_url=_settings_cache.api_base_url,
            credential_backend=_settings_cache.credential_backend.value,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
