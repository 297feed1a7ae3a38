from __future__ import annotations

import os
from datetime import timedelta
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from keyward.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity and session security services."""

    database_url: str = env_field(
        "postgresql://localhost:5432/keyward", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field("/srv/keyward", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (cheap hashing, generated keys).",
    )

    # Secret-at-rest protection for TOTP seeds
    secret_encryption_key: str | None = env_field(
        None,
        "SECRET_ENCRYPTION_KEY",
        description="Key material for the TOTP secret cipher; required outside TEST_MODE",
    )

    # TOTP engine
    totp_interval_seconds: int = env_field(30, "TOTP_INTERVAL_SECONDS")
    totp_valid_window: int = env_field(
        1,
        "TOTP_VALID_WINDOW",
        description="Adjacent time steps accepted on each side of the current one",
    )
    totp_digits: int = env_field(6, "TOTP_DIGITS")
    totp_secret_bytes: int = env_field(20, "TOTP_SECRET_BYTES")
    totp_issuer: str = env_field("Keyward", "TOTP_ISSUER")
    backup_code_count: int = env_field(10, "BACKUP_CODE_COUNT")

    # Ephemeral tokens
    password_reset_ttl_hours: int = env_field(24, "PASSWORD_RESET_TTL_HOURS")
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS")
    ephemeral_token_bytes: int = env_field(32, "EPHEMERAL_TOKEN_BYTES")

    # Session-bound credentials
    csrf_token_ttl_minutes: int = env_field(60, "CSRF_TOKEN_TTL_MINUTES")
    admin_session_timeout_minutes: int = env_field(30, "ADMIN_SESSION_TIMEOUT_MINUTES")
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")
    maintenance_interval_seconds: int = env_field(
        300,
        "MAINTENANCE_INTERVAL_SECONDS",
        description="Interval for purging expired rows; 0 disables the background task",
    )

    # Adaptive hashing (passwords and backup codes)
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST")
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM")

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Keyward", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

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
        "totp_interval_seconds",
        "totp_digits",
        "totp_secret_bytes",
        "backup_code_count",
        "password_reset_ttl_hours",
        "email_verification_ttl_hours",
        "ephemeral_token_bytes",
        "csrf_token_ttl_minutes",
        "admin_session_timeout_minutes",
        "refresh_token_ttl_days",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("totp_valid_window", "maintenance_interval_seconds")
    @classmethod
    def _require_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("totp_secret_bytes")
    @classmethod
    def _require_rfc_secret_length(cls, value: int) -> int:
        # RFC 4226 recommends at least 160 bits of shared secret
        if value < 20:
            raise ValueError("TOTP secrets must be at least 20 bytes")
        return value

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_is_none(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _require_encryption_key(self) -> "Settings":
        if not self.secret_encryption_key:
            if not self.test_mode:
                raise ValueError(
                    "SECRET_ENCRYPTION_KEY must be set unless TEST_MODE is enabled"
                )
            logger.warning(
                "secret_encryption_key_missing",
                message="using an ephemeral key; encrypted TOTP secrets will not survive restarts",
            )
        return self

    @property
    def password_reset_ttl(self) -> timedelta:
        return timedelta(hours=self.password_reset_ttl_hours)

    @property
    def email_verification_ttl(self) -> timedelta:
        return timedelta(hours=self.email_verification_ttl_hours)

    @property
    def csrf_token_ttl(self) -> timedelta:
        return timedelta(minutes=self.csrf_token_ttl_minutes)

    @property
    def admin_session_timeout(self) -> timedelta:
        return timedelta(minutes=self.admin_session_timeout_minutes)

    @property
    def refresh_token_ttl(self) -> timedelta:
        return timedelta(days=self.refresh_token_ttl_days)


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
