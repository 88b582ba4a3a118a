from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from fruitables.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide settings, built once at startup and passed to collaborators."""

    database_url: str = env_field(
        "postgresql://localhost:5432/fruitables", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )
    db_pool_min_size: int = env_field(1, "DB_POOL_MIN_SIZE")
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE")

    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("fruitables", "JWT_ISSUER")
    jwt_audience: str = env_field("fruitables-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        120,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Access token lifetime in minutes",
    )
    refresh_token_ttl_minutes: int = env_field(
        125,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Refresh token lifetime in minutes",
    )

    password_reset_url: str = env_field(
        "http://localhost:4200/reset-password", "PASSWORD_RESET_URL"
    )
    max_admins: int = env_field(3, "MAX_ADMINS")

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(
        True,
        "SMTP_USE_TLS",
        description="STARTTLS on the plain port; False means implicit SSL",
    )
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Fruitables", "EMAIL_FROM_NAME")

    sweeper_enabled: bool = env_field(
        True,
        "SWEEPER_ENABLED",
        description="Run the expiry sweeper inside the API process",
    )
    sweeper_token_interval_seconds: float = env_field(
        1.0, "SWEEPER_TOKEN_INTERVAL_SECONDS"
    )
    sweeper_cart_interval_seconds: float = env_field(
        60.0, "SWEEPER_CART_INTERVAL_SECONDS"
    )
    cart_sweep_start_hour: int = env_field(0, "CART_SWEEP_START_HOUR")
    cart_sweep_end_hour: int = env_field(6, "CART_SWEEP_END_HOUR")

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

    @field_validator("cart_sweep_start_hour", "cart_sweep_end_hour")
    @classmethod
    def _validate_hour(cls, value: int) -> int:
        if not 0 <= value <= 24:
            raise ValueError("cart sweep hours must be between 0 and 24")
        return value

    @model_validator(mode="after")
    def _check_cart_window(self) -> "Settings":
        if self.cart_sweep_start_hour > self.cart_sweep_end_hour:
            raise ValueError("cart_sweep_start_hour must not exceed cart_sweep_end_hour")
        if not self.jwt_secret:
            # Issuer refuses to sign without a key; surface it early
            logger.warning("jwt_secret_missing")
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
