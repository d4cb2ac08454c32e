from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from sessionguard.logging import get_logger

logger = get_logger(__name__)

# Tokens are only ever signed and verified with this algorithm.
JWT_ALGORITHM = "HS256"

_MIN_SECRET_LENGTH = 32
_SAMESITE_VALUES = {"lax", "strict", "none"}


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Immutable runtime configuration, built once per process."""

    # Declared first so later validators can consult it through ``info.data``.
    test_mode: bool = env_field(False, "TEST_MODE")

    database_url: str = env_field(
        "postgresql://localhost:5432/sessionguard", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")

    # Access tokens
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str | None = env_field(None, "JWT_ISSUER")
    jwt_audience: str | None = env_field(None, "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)

    # Refresh sessions and the cookie that carries them
    refresh_token_ttl_days: int = env_field(30, "REFRESH_TOKEN_TTL_DAYS", gt=0)
    refresh_reuse_detection: bool = env_field(True, "REFRESH_REUSE_DETECTION")
    refresh_reuse_grace_seconds: int = env_field(
        5,
        "REFRESH_REUSE_GRACE_SECONDS",
        ge=0,
        description="A retired secret presented within this many seconds is not treated as reuse",
    )
    refresh_cookie_name: str = env_field("pm_rt", "REFRESH_COOKIE_NAME", min_length=1)
    refresh_cookie_domain: str | None = env_field(None, "REFRESH_COOKIE_DOMAIN")
    refresh_cookie_path: str = env_field("/", "REFRESH_COOKIE_PATH")
    refresh_cookie_samesite: str = env_field("lax", "REFRESH_COOKIE_SAMESITE")
    refresh_cookie_secure: bool = env_field(
        False, "REFRESH_COOKIE_SECURE", validate_default=True
    )
    session_sweep_interval_seconds: int = env_field(
        3600,
        "SESSION_SWEEP_INTERVAL_SECONDS",
        gt=0,
        description="How often expired refresh sessions are purged in the background",
    )

    # Lockout guard
    lockout_max_attempts: int = env_field(5, "LOCKOUT_MAX_ATTEMPTS", gt=0)
    lockout_window_minutes: int = env_field(15, "LOCKOUT_WINDOW_MINUTES", gt=0)
    lockout_duration_minutes: int = env_field(15, "LOCKOUT_DURATION_MINUTES", gt=0)
    lockout_backoff_multiplier: float = env_field(2.0, "LOCKOUT_BACKOFF_MULTIPLIER", ge=1)
    lockout_max_duration_minutes: int = env_field(
        60 * 24, "LOCKOUT_MAX_DURATION_MINUTES", gt=0
    )

    # Rate limits (requests per window)
    login_ip_rate_limit: int = env_field(3, "LOGIN_IP_RATE_LIMIT", gt=0)
    login_ip_window_seconds: int = env_field(15 * 60, "LOGIN_IP_WINDOW_SECONDS", gt=0)
    login_identity_rate_limit: int = env_field(3, "LOGIN_IDENTITY_RATE_LIMIT", gt=0)
    login_identity_window_seconds: int = env_field(
        15 * 60, "LOGIN_IDENTITY_WINDOW_SECONDS", gt=0
    )
    global_rate_limit: int = env_field(120, "GLOBAL_RATE_LIMIT", gt=0)
    global_window_seconds: int = env_field(60, "GLOBAL_WINDOW_SECONDS", gt=0)
    trust_proxy: bool = env_field(
        False,
        "TRUST_PROXY",
        description="Take the client IP from the first X-Forwarded-For hop",
    )

    # Password hashing (argon2id)
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST", gt=0)
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST", gt=0)
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM", gt=0)
    default_role: str = env_field("user", "DEFAULT_ROLE")
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("SessionGuard", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    # HTTP
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    build_sha: str = env_field("dev", "BUILD_SHA")

    model_config = ConfigDict(extra="ignore", frozen=True)

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

    @field_validator("redis_url", "jwt_issuer", "jwt_audience", "refresh_cookie_domain")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("refresh_cookie_samesite")
    @classmethod
    def _validate_samesite(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in _SAMESITE_VALUES:
            raise ValueError(
                f"refresh cookie SameSite must be one of {sorted(_SAMESITE_VALUES)}"
            )
        return normalized

    @field_validator("refresh_cookie_secure")
    @classmethod
    def _samesite_none_requires_secure(cls, value: bool, info: ValidationInfo) -> bool:
        # Browsers drop SameSite=None cookies that are not Secure.
        if info.data.get("refresh_cookie_samesite") == "none" and not value:
            raise ValueError("SameSite=None refresh cookies must also be Secure")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        test_mode = bool(info.data.get("test_mode"))
        if value:
            if len(value) < _MIN_SECRET_LENGTH and not test_mode:
                raise ValueError(
                    f"JWT_SECRET must be at least {_MIN_SECRET_LENGTH} characters"
                )
            return value
        if not test_mode:
            raise ValueError("JWT_SECRET is required outside TEST_MODE")
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET not set; using a per-process secret under TEST_MODE",
        )
        return secrets.token_urlsafe(64)


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
