from __future__ import annotations

import os
import secrets
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from usergate.logging import get_logger

logger = get_logger(__name__)

TOKEN_TTL_SECONDS = 2 * 24 * 60 * 60
LIST_CACHE_TTL_SECONDS = 1800
DETAIL_CACHE_TTL_SECONDS = 900


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the user service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/usergate", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors: sync Redis client, generated JWT secret.",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    token_ttl_seconds: int = env_field(
        TOKEN_TTL_SECONDS, "TOKEN_TTL_SECONDS", gt=0
    )
    list_cache_ttl_seconds: int = env_field(
        LIST_CACHE_TTL_SECONDS, "LIST_CACHE_TTL_SECONDS", gt=0
    )
    detail_cache_ttl_seconds: int = env_field(
        DETAIL_CACHE_TTL_SECONDS, "DETAIL_CACHE_TTL_SECONDS", gt=0
    )
    cache_invalidate_on_write: bool = env_field(
        True,
        "CACHE_INVALIDATE_ON_WRITE",
        description="Drop cached user views on create/update/delete; false keeps TTL-only expiry.",
    )
    store_timeout_seconds: float = env_field(5.0, "STORE_TIMEOUT_SECONDS", gt=0)
    cache_timeout_seconds: float = env_field(2.0, "CACHE_TIMEOUT_SECONDS", gt=0)
    store_read_retries: int = env_field(
        1,
        "STORE_READ_RETRIES",
        ge=0,
        description="Extra attempts for store reads on the cache-miss path. Writes are never retried.",
    )
    email_domain_check: bool = env_field(
        True,
        "EMAIL_DOMAIN_CHECK",
        description="Require an MX record for the email domain on registration and email changes.",
    )
    dns_timeout_seconds: float = env_field(3.0, "DNS_TIMEOUT_SECONDS", gt=0)
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            if len(self.jwt_secret) < 16:
                raise ValueError("JWT_SECRET must be at least 16 characters")
            return self
        if not self.test_mode:
            raise ValueError("JWT_SECRET must be set outside TEST_MODE")
        # Tokens only need to survive the lifetime of one test process
        self.jwt_secret = secrets.token_urlsafe(48)
        logger.warning("jwt_secret_generated_for_test_mode")
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
