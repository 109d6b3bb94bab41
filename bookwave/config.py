from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_TRUSTED_TIME_URLS = (
    "https://worldtimeapi.org/api/timezone/Etc/UTC",
    "https://timeapi.io/api/Time/current/zone?timeZone=UTC",
    "https://www.google.com",
)


class DuplicateBackend(str, Enum):
    """Where duplicate-request fingerprints live."""

    MEMORY = "memory"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item).strip() for item in value if str(item).strip()]


class Settings(BaseModel):
    """Runtime settings for the session and verification service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/bookwave", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_path: str | None = env_field(
        None,
        "MEMORY_STORE_PATH",
        description="JSON file backing the in-memory store; unset keeps state in RAM only",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets",
    )

    # Sessions
    session_ttl_minutes: int = env_field(
        30 * 24 * 60, "SESSION_TTL_MINUTES", description="Full session lifetime"
    )
    refresh_grace_seconds: float = env_field(
        60,
        "REFRESH_GRACE_SECONDS",
        description="How long a superseded token keeps working after refresh",
    )
    token_sweep_interval_seconds: float = env_field(300, "TOKEN_SWEEP_INTERVAL_SECONDS")
    session_cookie_name: str = env_field("session_token", "SESSION_COOKIE_NAME")

    # Trusted time
    trusted_time_enabled: bool = env_field(True, "TRUSTED_TIME_ENABLED")
    trusted_time_urls: list[str] = env_field(
        list(DEFAULT_TRUSTED_TIME_URLS),
        "TRUSTED_TIME_URLS",
        description="Comma-separated UTC time endpoints queried in order",
    )
    trusted_time_timeout_seconds: float = env_field(2.5, "TRUSTED_TIME_TIMEOUT_SECONDS")

    # Phone verification
    phone_pending_ttl_minutes: float = env_field(10, "PHONE_PENDING_TTL_MINUTES")
    phone_code_ttl_minutes: float = env_field(5, "PHONE_CODE_TTL_MINUTES")
    phone_code_length: int = env_field(5, "PHONE_CODE_LENGTH")
    phone_max_attempts: int = env_field(5, "PHONE_MAX_ATTEMPTS")
    phone_resend_interval_seconds: float = env_field(0, "PHONE_RESEND_INTERVAL_SECONDS")

    # Email verification
    email_pending_ttl_minutes: float = env_field(10, "EMAIL_PENDING_TTL_MINUTES")
    email_code_ttl_minutes: float = env_field(5, "EMAIL_CODE_TTL_MINUTES")
    email_code_length: int = env_field(6, "EMAIL_CODE_LENGTH")
    email_max_attempts: int = env_field(5, "EMAIL_MAX_ATTEMPTS")
    email_resend_interval_seconds: float = env_field(45, "EMAIL_RESEND_INTERVAL_SECONDS")
    email_derived_token_ttl_minutes: float = env_field(
        10,
        "EMAIL_DERIVED_TOKEN_TTL_MINUTES",
        description="Lifetime of register/reset continuation tokens",
    )

    # Terms acceptance
    terms_pending_ttl_minutes: float = env_field(5, "TERMS_PENDING_TTL_MINUTES")

    # Duplicate-request guard
    duplicate_backend: DuplicateBackend = env_field(
        DuplicateBackend.MEMORY, "DUPLICATE_BACKEND"
    )
    duplicate_max_age_ms: int = env_field(
        30_000,
        "DUPLICATE_MAX_AGE_MS",
        description="In-flight entries older than this are treated as abandoned",
    )
    duplicate_retention_ms: int = env_field(
        45_000,
        "DUPLICATE_RETENTION_MS",
        description="How long a completed request keeps blocking identical ones",
    )
    duplicate_sweep_interval_ms: int = env_field(5_000, "DUPLICATE_SWEEP_INTERVAL_MS")
    duplicate_stats_history: int = env_field(1_000, "DUPLICATE_STATS_HISTORY")

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST", description="SMTP server host")
    smtp_port: int = env_field(587, "SMTP_PORT", description="SMTP server port")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Bookwave", "EMAIL_FROM_NAME")

    cors_allow_origins: list[str] = env_field(["*"], "CORS_ALLOW_ORIGINS")

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

    @field_validator("trusted_time_urls", "cors_allow_origins", mode="before")
    @classmethod
    def _parse_csv(cls, value: Any) -> list[str]:
        return _split_csv(value)

    @field_validator("duplicate_backend")
    @classmethod
    def _validate_duplicate_backend(cls, value: DuplicateBackend) -> DuplicateBackend:
        return DuplicateBackend(value)

    @field_validator(
        "phone_code_length", "email_code_length", "phone_max_attempts", "email_max_attempts"
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
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
