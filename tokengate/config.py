from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# Hard ceiling on invite codes generated per admin request.
MAX_INVITE_BATCH = 20


class RevocationBackend(str, Enum):
    """Where revoked refresh-token identifiers are tracked."""

    MEMORY = "memory"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the token service."""

    access_token_secret: str | None = env_field(None, "ACCESS_TOKEN_SECRET")
    refresh_token_secret: str | None = env_field(None, "REFRESH_TOKEN_SECRET")
    access_token_ttl_minutes: int = env_field(
        15,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Lifetime of access tokens in minutes",
        gt=0,
    )
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Lifetime of refresh tokens in minutes",
        gt=0,
    )
    jwt_issuer: str = env_field("tokengate", "JWT_ISSUER")
    jwt_audience: str = env_field("tokengate-clients", "JWT_AUDIENCE")
    token_leeway_seconds: int = env_field(
        0,
        "TOKEN_LEEWAY_SECONDS",
        description="Clock skew tolerated when checking token expiry",
        ge=0,
    )
    password_hash_time_cost: int = env_field(
        3,
        "PASSWORD_HASH_TIME_COST",
        description="argon2 iteration count (cost factor)",
        ge=1,
    )
    password_hash_memory_cost: int = env_field(
        65536,
        "PASSWORD_HASH_MEMORY_COST",
        description="argon2 memory cost in KiB",
        ge=64,
    )
    invite_batch_min: int = env_field(1, "INVITE_BATCH_MIN")
    invite_batch_max: int = env_field(MAX_INVITE_BATCH, "INVITE_BATCH_MAX")
    database_url: str = env_field(
        "postgresql://localhost:5432/tokengate", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    revocation_backend: RevocationBackend = env_field(
        RevocationBackend.MEMORY,
        "REVOCATION_BACKEND",
        description="memory for single-instance deployments, redis when shared",
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Use synchronous Redis client and allow in-memory fallbacks",
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

    @field_validator("revocation_backend")
    @classmethod
    def _validate_revocation_backend(cls, value: RevocationBackend) -> RevocationBackend:
        return RevocationBackend(value)

    @model_validator(mode="after")
    def _check_token_secrets(self) -> "Settings":
        if not self.access_token_secret or not self.refresh_token_secret:
            raise ValueError(
                "ACCESS_TOKEN_SECRET and REFRESH_TOKEN_SECRET must both be set"
            )
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("access and refresh token secrets must differ")
        return self

    @model_validator(mode="after")
    def _check_invite_batch_bounds(self) -> "Settings":
        if not 1 <= self.invite_batch_min <= self.invite_batch_max <= MAX_INVITE_BATCH:
            raise ValueError(
                f"invite batch bounds must satisfy 1 <= min <= max <= {MAX_INVITE_BATCH}"
            )
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
