import pytest
from pydantic import ValidationError

from sessionward.config import (
    AppEnv,
    RateLimitBackend,
    Settings,
    get_settings,
    reset_settings_cache,
)
from sessionward.logging import _redact_pii, redact_email


def test_defaults(settings):
    assert settings.app_env == AppEnv.TEST
    assert settings.access_token_ttl_minutes == 15
    assert settings.refresh_token_ttl_minutes == 60
    assert settings.otp_ttl_minutes == 10
    assert settings.otp_resend_interval_seconds == 60
    assert settings.login_rate_limit == 5
    assert settings.rate_limit_window_seconds == 60
    assert settings.rate_limit_backend == RateLimitBackend.MEMORY
    assert settings.refresh_cookie_path == "/api/auth/refresh"


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example ,")
    monkeypatch.setenv("ROTATE_REFRESH_TOKENS", "false")
    reset_settings_cache()

    settings = get_settings()

    assert settings.access_token_ttl_minutes == 5
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]
    assert settings.rotate_refresh_tokens is False
    assert get_settings() is settings


def test_production_requires_secret():
    with pytest.raises(ValidationError, match="JWT_SECRET"):
        Settings(app_env="production")


def test_production_accepts_split_secrets():
    settings = Settings(
        app_env="production", jwt_access_secret="a", jwt_refresh_secret="r"
    )
    assert settings.is_production


def test_development_generates_ephemeral_secret():
    first = Settings(app_env="development")
    second = Settings(app_env="development")
    assert first.jwt_secret and second.jwt_secret
    assert first.jwt_secret != second.jwt_secret


def test_diagnostics_need_explicit_non_production_env(monkeypatch):
    assert Settings(jwt_secret="s").app_env == AppEnv.DEVELOPMENT
    assert not Settings(jwt_secret="s").diagnostics_enabled
    assert Settings(jwt_secret="s", app_env="development").diagnostics_enabled
    assert Settings(jwt_secret="s", app_env="test").diagnostics_enabled
    assert not Settings(jwt_secret="s", app_env="production").diagnostics_enabled

    monkeypatch.delenv("APP_ENV", raising=False)
    assert not Settings.from_env().diagnostics_enabled
    monkeypatch.setenv("APP_ENV", "development")
    assert Settings.from_env().diagnostics_enabled


def test_redis_backend_requires_url():
    with pytest.raises(ValidationError, match="REDIS_URL"):
        Settings(jwt_secret="s", rate_limit_backend="redis")


@pytest.mark.parametrize("field", ["login_rate_limit", "otp_ttl_minutes", "rate_limit_window_seconds"])
def test_non_positive_values_rejected(field):
    with pytest.raises(ValidationError):
        Settings(jwt_secret="s", **{field: 0})


def test_pii_is_redacted_from_log_events():
    event = _redact_pii(
        None,
        "info",
        {"event": "login", "email": "ada@example.com", "refresh_token": "abcdefgh", "code": "1"},
    )
    assert event["event"] == "login"
    assert event["email"] == "ad***@example.com"
    assert event["refresh_token"] == "ab***gh"
    assert event["code"] == "***"


def test_redact_email():
    assert redact_email("ada@example.com") == "ad***@example.com"
    assert redact_email("nonsense") == "redacted"
