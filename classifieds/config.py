from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from classifieds.logging import get_logger

logger = get_logger(__name__)

_DEFAULT_SLIDING_DAYS = 30
_MIN_REAUTH_TTL_SECONDS = 30


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the marketplace auth service."""

    app_env: str = env_field(
        "development",
        "APP_ENV",
        description="'production' enables secure cookies and disables dev side channels",
    )
    database_url: str = env_field(
        "postgresql://localhost:5432/classifieds", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (runtime reset, local rate limits).",
    )
    cors_origin: str = env_field("http://localhost:5173", "CORS_ORIGIN")
    public_app_url: str = env_field("http://localhost:5173", "PUBLIC_APP_URL")

    # Token signing
    jwt_access_secret: str | None = env_field(None, "JWT_ACCESS_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("fishclassifieds", "JWT_ISSUER")
    jwt_audience: str = env_field("fishclassifieds-web", "JWT_AUDIENCE")
    jwt_access_ttl_seconds: int = env_field(900, "JWT_ACCESS_TTL_SECONDS")
    jwt_refresh_ttl_days: int = env_field(
        _DEFAULT_SLIDING_DAYS,
        "JWT_REFRESH_TTL_DAYS",
        description="Sliding refresh window; every refresh pushes expiry this far out",
    )
    jwt_refresh_max_ttl_days: int | None = env_field(
        None,
        "JWT_REFRESH_MAX_TTL_DAYS",
        description="Hard cap anchored to session creation; defaults to the sliding window",
    )
    reauth_ttl_seconds: int = env_field(600, "REAUTH_TTL_SECONDS")

    # Cookies
    cookie_domain: str | None = env_field(None, "COOKIE_DOMAIN")
    cookie_secure: bool | None = env_field(
        None, "COOKIE_SECURE", description="Defaults to True in production"
    )

    # Client address
    trust_proxy_headers: bool = env_field(
        False,
        "TRUST_PROXY_HEADERS",
        description="Take the client IP from the first X-Forwarded-For hop",
    )

    # Password hashing (argon2id); never taken from request input
    argon2_memory_cost: int = env_field(19456, "ARGON2_MEMORY_COST")
    argon2_time_cost: int = env_field(2, "ARGON2_TIME_COST")
    argon2_parallelism: int = env_field(1, "ARGON2_PARALLELISM")

    # Password reset
    reset_token_ttl_minutes: int = env_field(30, "RESET_TOKEN_TTL_MINUTES")
    reset_ip_limit_per_hour: int = env_field(10, "RESET_IP_LIMIT_PER_HOUR")
    reset_user_limit_per_hour: int = env_field(3, "RESET_USER_LIMIT_PER_HOUR")

    # Rate limits (token bucket, per minute)
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    reset_confirm_rate_limit_per_minute: int = env_field(
        10, "RESET_CONFIRM_RATE_LIMIT_PER_MINUTE"
    )

    # Email delivery; unset SMTP_HOST logs instead of sending
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Fish Classifieds", "EMAIL_FROM_NAME")

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
        # Blank values in .env files mean "unset" rather than an empty string
        merged = {k: v for k, v in merged.items() if v not in ("", None)}
        return cls(**merged)

    @field_validator("app_env")
    @classmethod
    def _normalize_env(cls, value: str) -> str:
        return (value or "development").strip().lower()

    @field_validator("jwt_refresh_ttl_days")
    @classmethod
    def _sliding_days(cls, value: int) -> int:
        return value if value > 0 else _DEFAULT_SLIDING_DAYS

    @field_validator("reauth_ttl_seconds")
    @classmethod
    def _reauth_floor(cls, value: int) -> int:
        return max(_MIN_REAUTH_TTL_SECONDS, value)

    @model_validator(mode="after")
    def _ensure_jwt_secrets(self) -> "Settings":
        for attr, env_name in (
            ("jwt_access_secret", "JWT_ACCESS_SECRET"),
            ("jwt_refresh_secret", "JWT_REFRESH_SECRET"),
        ):
            if getattr(self, attr):
                continue
            if self.is_production:
                raise ValueError(f"{env_name} must be set in production")
            logger.warning(
                "jwt_secret_generated",
                setting=env_name,
                message="Using an ephemeral secret; tokens will not survive a restart",
            )
            setattr(self, attr, secrets.token_urlsafe(48))
        return self

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def refresh_max_ttl_days(self) -> int:
        """Hard session lifetime in days; falls back to the sliding window."""
        if self.jwt_refresh_max_ttl_days is None or self.jwt_refresh_max_ttl_days <= 0:
            return self.jwt_refresh_ttl_days
        return self.jwt_refresh_max_ttl_days

    @property
    def secure_cookies(self) -> bool:
        if self.cookie_secure is None:
            return self.is_production
        return self.cookie_secure


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
