import pytest
from pydantic import ValidationError

from sessionguard.config import JWT_ALGORITHM, Settings, get_settings, reset_settings_cache


def test_defaults_match_documented_policy():
    settings = Settings(test_mode=True, jwt_secret="s" * 32)
    assert JWT_ALGORITHM == "HS256"
    assert settings.access_token_ttl_minutes == 15
    assert settings.refresh_token_ttl_days == 30
    assert settings.refresh_cookie_name == "pm_rt"
    assert settings.lockout_max_attempts == 5
    assert settings.lockout_duration_minutes == 15
    assert settings.login_ip_rate_limit == 3
    assert settings.login_ip_window_seconds == 900


def test_secret_required_outside_test_mode():
    with pytest.raises(ValidationError):
        Settings(test_mode=False)
    with pytest.raises(ValidationError):
        Settings(test_mode=False, jwt_secret="too-short")
    assert Settings(test_mode=False, jwt_secret="k" * 32).jwt_secret == "k" * 32


def test_test_mode_generates_secret():
    first = Settings(test_mode=True)
    second = Settings(test_mode=True)
    assert len(first.jwt_secret) >= 32
    assert first.jwt_secret != second.jwt_secret


def test_samesite_none_requires_secure():
    with pytest.raises(ValidationError):
        Settings(test_mode=True, refresh_cookie_samesite="None")
    settings = Settings(
        test_mode=True, refresh_cookie_samesite="None", refresh_cookie_secure=True
    )
    assert settings.refresh_cookie_samesite == "none"


def test_invalid_samesite_rejected():
    with pytest.raises(ValidationError):
        Settings(test_mode=True, refresh_cookie_samesite="sometimes")


def test_settings_are_frozen():
    settings = Settings(test_mode=True)
    with pytest.raises(ValidationError):
        settings.access_token_ttl_minutes = 60


def test_from_env_reads_named_variables(monkeypatch):
    monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
    monkeypatch.setenv("JWT_ISSUER", "  ")
    reset_settings_cache()

    settings = get_settings()
    assert settings.access_token_ttl_minutes == 5
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]
    assert settings.jwt_issuer is None
    assert settings.redis_url is None
    assert get_settings() is settings
