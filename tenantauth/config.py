from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tenantauth.logging import get_logger

logger = get_logger(__name__)

MIN_SECRET_BYTES = 32

# Substrings that mark a placeholder secret copied from sample configs
_DEFAULT_SECRET_MARKERS = ("dev-secret", "changeme", "change-me", "secret-key")

_PRODUCTION_PROFILES = {"prod", "production"}


class ConfigurationError(RuntimeError):
    """Raised when startup configuration is unusable."""


class RateAction(str, Enum):
    """Rate limit action classes with independent thresholds."""

    DEFAULT = "default"
    SEND_CODE = "send_code"
    LOGIN = "login"
    CAPTCHA = "captcha"
    REFRESH_TOKEN = "refresh_token"
    IP = "ip"


@dataclass(frozen=True)
class RateRule:
    max_requests: int
    window_seconds: int


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the gateway core."""

    model_config = ConfigDict(extra="ignore")

    app_env: str = env_field("dev", "APP_ENV")
    test_mode: bool = env_field(False, "TEST_MODE")

    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    token_ttl_seconds: int = env_field(7200, "TOKEN_TTL_SECONDS", gt=0)
    token_cache_ttl_seconds: int = env_field(300, "TOKEN_CACHE_TTL_SECONDS", ge=0)
    token_cache_max_entries: int = env_field(10000, "TOKEN_CACHE_MAX_ENTRIES", gt=0)

    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    store_timeout_seconds: float = env_field(2.0, "STORE_TIMEOUT_SECONDS", gt=0)
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")

    rate_limit_default_max: int = env_field(10, "RATE_LIMIT_DEFAULT_MAX")
    rate_limit_default_window_seconds: int = env_field(60, "RATE_LIMIT_DEFAULT_WINDOW_SECONDS")
    rate_limit_send_code_max: int = env_field(5, "RATE_LIMIT_SEND_CODE_MAX")
    rate_limit_send_code_window_seconds: int = env_field(60, "RATE_LIMIT_SEND_CODE_WINDOW_SECONDS")
    rate_limit_login_max: int = env_field(10, "RATE_LIMIT_LOGIN_MAX")
    rate_limit_login_window_seconds: int = env_field(60, "RATE_LIMIT_LOGIN_WINDOW_SECONDS")
    rate_limit_captcha_max: int = env_field(20, "RATE_LIMIT_CAPTCHA_MAX")
    rate_limit_captcha_window_seconds: int = env_field(60, "RATE_LIMIT_CAPTCHA_WINDOW_SECONDS")
    rate_limit_refresh_token_max: int = env_field(10, "RATE_LIMIT_REFRESH_TOKEN_MAX")
    rate_limit_refresh_token_window_seconds: int = env_field(
        60, "RATE_LIMIT_REFRESH_TOKEN_WINDOW_SECONDS"
    )
    rate_limit_ip_max: int = env_field(50, "RATE_LIMIT_IP_MAX")
    rate_limit_ip_window_seconds: int = env_field(60, "RATE_LIMIT_IP_WINDOW_SECONDS")

    captcha_threshold: int = env_field(3, "CAPTCHA_THRESHOLD", ge=1)
    captcha_ttl_seconds: int = env_field(300, "CAPTCHA_TTL_SECONDS", gt=0)
    captcha_max_operand: int = env_field(4, "CAPTCHA_MAX_OPERAND", ge=1)

    verification_code_ttl_seconds: int = env_field(600, "VERIFICATION_CODE_TTL_SECONDS", gt=0)
    verification_code_length: int = env_field(6, "VERIFICATION_CODE_LENGTH", ge=4, le=10)

    trust_proxy_headers: bool = env_field(True, "TRUST_PROXY_HEADERS")

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Tenant Auth", "EMAIL_FROM_NAME")

    sms_gateway_url: str | None = env_field(None, "SMS_GATEWAY_URL")
    sms_gateway_api_key: str | None = env_field(None, "SMS_GATEWAY_API_KEY")
    sms_sender_id: str = env_field("AUTH", "SMS_SENDER_ID")

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

    @field_validator("app_env")
    @classmethod
    def _normalize_env(cls, value: str) -> str:
        return (value or "dev").strip().lower()

    @model_validator(mode="after")
    def _clamp_cache_ttl(self) -> "Settings":
        # Cached claims must never outlive the token they describe
        if self.token_cache_ttl_seconds > self.token_ttl_seconds:
            logger.warning(
                "token_cache_ttl_clamped",
                cache_ttl_seconds=self.token_cache_ttl_seconds,
                token_ttl_seconds=self.token_ttl_seconds,
            )
            self.token_cache_ttl_seconds = self.token_ttl_seconds
        return self

    @property
    def is_production(self) -> bool:
        return self.app_env in _PRODUCTION_PROFILES

    def rate_rule(self, action: RateAction) -> RateRule:
        """Return the threshold and window configured for an action class."""
        action = RateAction(action)
        return RateRule(
            max_requests=getattr(self, f"rate_limit_{action.value}_max"),
            window_seconds=getattr(self, f"rate_limit_{action.value}_window_seconds"),
        )


@dataclass(frozen=True)
class SigningKey:
    """Immutable token signing material, built once at startup."""

    secret: bytes
    token_ttl_seconds: int
    algorithm: str = "HS256"

    def __repr__(self) -> str:
        return f"SigningKey(algorithm={self.algorithm!r}, token_ttl_seconds={self.token_ttl_seconds})"

    @classmethod
    def from_settings(cls, settings: Settings) -> "SigningKey":
        secret = (settings.jwt_secret or "").strip()
        if not secret:
            raise ConfigurationError("JWT_SECRET must be set")
        encoded = secret.encode("utf-8")
        if len(encoded) < MIN_SECRET_BYTES:
            logger.warning(
                "jwt_secret_short",
                length=len(encoded),
                minimum=MIN_SECRET_BYTES,
                app_env=settings.app_env,
            )
            if settings.is_production:
                raise ConfigurationError(
                    f"JWT_SECRET must be at least {MIN_SECRET_BYTES} bytes in production"
                )
        if settings.is_production:
            lowered = secret.lower()
            if any(marker in lowered for marker in _DEFAULT_SECRET_MARKERS):
                raise ConfigurationError(
                    "JWT_SECRET looks like a placeholder value; refusing to start in production"
                )
        return cls(secret=encoded, token_ttl_seconds=settings.token_ttl_seconds)


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
