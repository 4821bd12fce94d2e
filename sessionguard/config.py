from __future__ import annotations

import os
import re
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from sessionguard.logging import get_logger

logger = get_logger(__name__)

MIN_JWT_SECRET_LENGTH = 32
DURATION_PATTERN = re.compile(r"^\d+[smhdw]$")


class Environment(str, Enum):
    """Deployment environments recognised by the settings loader."""

    DEVELOPMENT = "development"
    TEST = "test"
    STAGING = "staging"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session-security core."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")
    jwt_secret: str | None = env_field(
        None,
        "JWT_SECRET",
        validate_default=True,
        description="HMAC-SHA256 signing secret; required, at least 32 characters",
    )
    jwt_expires_in: str = env_field(
        "7d", "JWT_EXPIRES_IN", description="Default lifetime for generic tokens"
    )
    access_token_ttl: str = env_field("15m", "ACCESS_TOKEN_TTL")
    refresh_token_ttl: str = env_field("30d", "REFRESH_TOKEN_TTL")
    rotate_refresh_tokens: bool = env_field(
        True,
        "ROTATE_REFRESH_TOKENS",
        description="Consume the presented refresh token and issue a new one on refresh",
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and the in-memory store fallback",
    )
    app_name: str = env_field(
        "SessionGuard", "APP_NAME", description="Issuer shown in authenticator apps"
    )
    totp_window: int = env_field(1, "TOTP_WINDOW", ge=0, le=10)
    enforce_mfa: bool = env_field(
        False, "ENFORCE_MFA", description="Require a verified second factor for sessions"
    )
    require_email_verification: bool = env_field(
        False,
        "REQUIRE_EMAIL_VERIFICATION",
        description="Reject sessions for accounts without a verified email",
    )
    rate_limit_enabled: bool = env_field(True, "RATE_LIMIT_ENABLED")
    secure_cookies: bool | None = env_field(
        None,
        "SECURE_COOKIES",
        description="Mark cookies Secure; defaults to true only in production",
    )
    cors_allow_origins: list[str] = env_field(
        [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ],
        "CORS_ALLOW_ORIGINS",
    )
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
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
        return self.environment == Environment.PRODUCTION

    @property
    def cookie_secure(self) -> bool:
        if self.secure_cookies is not None:
            return self.secure_cookies
        return self.is_production

    @field_validator("environment", mode="before")
    @classmethod
    def _validate_environment(cls, value: Any) -> Environment:
        if isinstance(value, str):
            value = value.strip().lower()
        return Environment(value)

    @field_validator("jwt_secret")
    @classmethod
    def _require_jwt_secret(cls, value: str | None) -> str:
        # A missing or weak secret is a startup failure, never a per-request one.
        if not value:
            raise ValueError(
                "JWT_SECRET is required; set it in the environment or .env file"
            )
        if len(value) < MIN_JWT_SECRET_LENGTH:
            raise ValueError(
                f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
            )
        return value

    @field_validator("jwt_expires_in", "access_token_ttl", "refresh_token_ttl")
    @classmethod
    def _validate_duration(cls, value: str) -> str:
        value = value.strip()
        if not DURATION_PATTERN.match(value):
            raise ValueError(
                "durations must look like 30s, 15m, 24h, 7d or 2w"
            )
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.info(
            "settings_loaded",
            environment=_settings_cache.environment.value,
            use_memory_store=_settings_cache.use_memory_store,
            test_mode=_settings_cache.test_mode,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
