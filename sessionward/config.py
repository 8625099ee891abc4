from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from sessionward.logging import get_logger

logger = get_logger(__name__)


class AppEnv(str, Enum):
    """Deployment modes; diagnostics endpoints need an explicit non-production value."""

    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


class RateLimitBackend(str, Enum):
    MEMORY = "memory"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session service."""

    app_env: AppEnv = env_field(AppEnv.DEVELOPMENT, "APP_ENV")
    # Token signing
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_access_secret: str | None = env_field(
        None,
        "JWT_ACCESS_SECRET",
        description="Override for the access-token key (derived from JWT_SECRET if unset)",
    )
    jwt_refresh_secret: str | None = env_field(
        None,
        "JWT_REFRESH_SECRET",
        description="Override for the refresh-token key (derived from JWT_SECRET if unset)",
    )
    jwt_issuer: str = env_field("sessionward", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(60, "REFRESH_TOKEN_TTL_MINUTES")
    rotate_refresh_tokens: bool = env_field(
        True,
        "ROTATE_REFRESH_TOKENS",
        description="Issue a new refresh token on every refresh",
    )
    # One-time passcodes
    otp_ttl_minutes: int = env_field(10, "OTP_TTL_MINUTES")
    otp_resend_interval_seconds: int = env_field(60, "OTP_RESEND_INTERVAL_SECONDS")
    otp_max_attempts: int = env_field(
        5,
        "OTP_MAX_ATTEMPTS",
        description="Failed verifications before the live code is discarded",
    )
    # Passwords
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")
    allow_unverified_admin_login: bool = env_field(
        True,
        "ALLOW_UNVERIFIED_ADMIN_LOGIN",
        description="Let the first-registered admin log in before verifying email",
    )
    # Rate limits (requests per window)
    rate_limit_backend: RateLimitBackend = env_field(
        RateLimitBackend.MEMORY, "RATE_LIMIT_BACKEND"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    rate_limit_window_seconds: int = env_field(60, "RATE_LIMIT_WINDOW_SECONDS")
    register_rate_limit: int = env_field(5, "REGISTER_RATE_LIMIT")
    login_rate_limit: int = env_field(5, "LOGIN_RATE_LIMIT")
    verify_otp_rate_limit: int = env_field(10, "VERIFY_OTP_RATE_LIMIT")
    resend_otp_rate_limit: int = env_field(3, "RESEND_OTP_RATE_LIMIT")
    password_reset_rate_limit: int = env_field(3, "PASSWORD_RESET_RATE_LIMIT")
    refresh_rate_limit: int = env_field(30, "REFRESH_RATE_LIMIT")
    request_timeout_seconds: float = env_field(10.0, "REQUEST_TIMEOUT_SECONDS")
    # Cookies
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    access_cookie_name: str = env_field("access_token", "ACCESS_COOKIE_NAME")
    refresh_cookie_name: str = env_field("refresh_token", "REFRESH_COOKIE_NAME")
    refresh_cookie_path: str = env_field("/api/auth/refresh", "REFRESH_COOKIE_PATH")
    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Sessionward", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    # Storage
    state_dir: str | None = env_field(
        None,
        "STATE_DIR",
        description="Directory for persisting the in-memory user store (unset keeps it in memory only)",
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

    @property
    def is_production(self) -> bool:
        return self.app_env == AppEnv.PRODUCTION

    @property
    def diagnostics_enabled(self) -> bool:
        # The development default alone never switches them on
        return "app_env" in self.model_fields_set and not self.is_production

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "otp_ttl_minutes",
        "otp_resend_interval_seconds",
        "otp_max_attempts",
        "password_reset_ttl_minutes",
        "password_min_length",
        "rate_limit_window_seconds",
        "register_rate_limit",
        "login_rate_limit",
        "verify_otp_rate_limit",
        "resend_otp_rate_limit",
        "password_reset_rate_limit",
        "refresh_rate_limit",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("request_timeout_seconds")
    @classmethod
    def _ensure_positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("REQUEST_TIMEOUT_SECONDS must be greater than 0")
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret or (self.jwt_access_secret and self.jwt_refresh_secret):
            return self
        if self.is_production:
            raise ValueError("JWT_SECRET must be set in production")
        # Tokens signed with an ephemeral secret do not survive a restart
        logger.warning(
            "jwt_secret_generated",
            app_env=self.app_env.value,
            message="JWT_SECRET not set; using an ephemeral per-process secret",
        )
        self.jwt_secret = secrets.token_urlsafe(64)
        return self

    @model_validator(mode="after")
    def _ensure_redis_url(self) -> "Settings":
        if self.rate_limit_backend == RateLimitBackend.REDIS and not self.redis_url:
            raise ValueError("REDIS_URL is required when RATE_LIMIT_BACKEND=redis")
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
