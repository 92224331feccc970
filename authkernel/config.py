from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authkernel.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and session engine."""

    database_url: str = env_field(
        "postgresql://localhost:5432/authkernel", "DATABASE_URL"
    )
    db_pool_min_size: int = env_field(2, "DB_POOL_MIN_SIZE")
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE")
    db_pool_timeout_seconds: float = env_field(
        10.0,
        "DB_POOL_TIMEOUT_SECONDS",
        description="Seconds to wait for a pooled connection before failing as unavailable",
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors such as runtime resets.",
    )

    # Signing keys. Base64 env values win over file paths; a missing private
    # key is generated once and persisted under keys_dir.
    jwt_private_key_base64: str | None = env_field(None, "JWT_PRIVATE_KEY_BASE64")
    jwt_public_key_base64: str | None = env_field(None, "JWT_PUBLIC_KEY_BASE64")
    jwt_private_key_path: str | None = env_field(None, "JWT_PRIVATE_KEY_PATH")
    jwt_public_key_path: str | None = env_field(None, "JWT_PUBLIC_KEY_PATH")
    jwt_retired_public_key_paths: str = env_field(
        "",
        "JWT_RETIRED_PUBLIC_KEY_PATHS",
        description="Comma-separated PEM paths still accepted for verification",
    )
    keys_dir: str = env_field("/srv/authkernel/keys", "KEYS_DIR")
    jwt_issuer: str = env_field("authkernel", "JWT_ISSUER")
    jwt_audience: str = env_field("authkernel-api", "JWT_AUDIENCE")
    jwt_clock_tolerance_seconds: int = env_field(30, "JWT_CLOCK_TOLERANCE_SECONDS")

    access_token_ttl_seconds: int = env_field(120, "ACCESS_TOKEN_TTL_SECONDS")
    identity_token_ttl_seconds: int = env_field(15 * 60, "IDENTITY_TOKEN_TTL_SECONDS")
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 60 * 60, "REFRESH_TOKEN_TTL_SECONDS"
    )
    validation_cache_ttl_seconds: int = env_field(
        10 * 60,
        "VALIDATION_CACHE_TTL_SECONDS",
        description="Lifetime of a cached session verification; must stay below the refresh lifetime",
    )

    lockout_email_max_attempts: int = env_field(5, "LOCKOUT_EMAIL_MAX_ATTEMPTS")
    lockout_email_window_seconds: int = env_field(15 * 60, "LOCKOUT_EMAIL_WINDOW_SECONDS")
    lockout_email_lock_seconds: int = env_field(30 * 60, "LOCKOUT_EMAIL_LOCK_SECONDS")
    lockout_ip_max_attempts: int = env_field(20, "LOCKOUT_IP_MAX_ATTEMPTS")
    lockout_ip_window_seconds: int = env_field(15 * 60, "LOCKOUT_IP_WINDOW_SECONDS")
    lockout_ip_lock_seconds: int = env_field(60 * 60, "LOCKOUT_IP_LOCK_SECONDS")

    password_reset_ttl_seconds: int = env_field(60 * 60, "PASSWORD_RESET_TTL_SECONDS")

    retention_error_log_days: int = env_field(30, "RETENTION_ERROR_LOG_DAYS")
    retention_audit_log_days: int = env_field(90, "RETENTION_AUDIT_LOG_DAYS")
    retention_revoked_session_days: int = env_field(30, "RETENTION_REVOKED_SESSION_DAYS")
    retention_expired_session_days: int = env_field(7, "RETENTION_EXPIRED_SESSION_DAYS")
    retention_sweep_enabled: bool = env_field(True, "RETENTION_SWEEP_ENABLED")
    retention_sweep_interval_seconds: int = env_field(
        24 * 60 * 60,
        "RETENTION_SWEEP_INTERVAL_SECONDS",
        description="Fixed interval between retention sweeps",
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

    @field_validator(
        "access_token_ttl_seconds",
        "identity_token_ttl_seconds",
        "refresh_token_ttl_seconds",
        "validation_cache_ttl_seconds",
        "lockout_email_max_attempts",
        "lockout_email_window_seconds",
        "lockout_email_lock_seconds",
        "lockout_ip_max_attempts",
        "lockout_ip_window_seconds",
        "lockout_ip_lock_seconds",
        "password_reset_ttl_seconds",
        "retention_sweep_interval_seconds",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @model_validator(mode="after")
    def _check_cache_ttl(self) -> "Settings":
        if self.validation_cache_ttl_seconds >= self.refresh_token_ttl_seconds:
            raise ValueError(
                "VALIDATION_CACHE_TTL_SECONDS must be shorter than REFRESH_TOKEN_TTL_SECONDS"
            )
        return self

    @property
    def retired_public_key_paths(self) -> list[str]:
        return [
            path.strip()
            for path in self.jwt_retired_public_key_paths.split(",")
            if path.strip()
        ]


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
