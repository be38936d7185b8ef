from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from trustcore.logging import get_logger

logger = get_logger(__name__)

# Minimum length for HMAC/encryption key material outside test mode.
MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential lifecycle service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/trustcore", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    storage_timeout_seconds: float = env_field(
        5.0,
        "STORAGE_TIMEOUT_SECONDS",
        description="Upper bound for acquiring a connection and for each statement",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Relaxes key-length checks and enables deterministic test wiring",
    )
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")

    # Key material
    secret_encryption_key: str | None = env_field(
        None,
        "SECRET_ENCRYPTION_KEY",
        description="Key material for encrypting TOTP secrets at rest",
    )
    service_token_secret: str | None = env_field(None, "SERVICE_TOKEN_SECRET")
    service_token_issuer: str = env_field("trustcore-edge", "SERVICE_TOKEN_ISSUER")
    service_token_audience: str = env_field(
        "trustcore-internal", "SERVICE_TOKEN_AUDIENCE"
    )
    service_token_ttl_seconds: int = env_field(
        3600, "SERVICE_TOKEN_TTL_SECONDS", ge=30, le=6 * 3600
    )

    # Second factor
    totp_issuer: str = env_field("trustcore", "TOTP_ISSUER")
    totp_window_steps: int = env_field(1, "TOTP_WINDOW_STEPS", ge=0, le=2)
    backup_code_count: int = env_field(8, "BACKUP_CODE_COUNT", ge=8, le=10)

    # Invitations / accounts
    invitation_ttl_days: int = env_field(7, "INVITATION_TTL_DAYS", ge=1, le=30)
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH", ge=8)

    # Webhooks
    webhook_failure_threshold: int = env_field(5, "WEBHOOK_FAILURE_THRESHOLD", ge=1)
    webhook_signature_tolerance_seconds: int = env_field(
        300, "WEBHOOK_SIGNATURE_TOLERANCE_SECONDS", ge=1
    )
    webhook_delivery_timeout_seconds: float = env_field(
        10.0, "WEBHOOK_DELIVERY_TIMEOUT_SECONDS", gt=0, le=60
    )

    # Password hashing cost (argon2id)
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST", ge=1)
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST", ge=8)
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM", ge=1)

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("trustcore", "EMAIL_FROM_NAME")
    email_timeout_seconds: float = env_field(10.0, "EMAIL_TIMEOUT_SECONDS", gt=0)

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

    @field_validator("app_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @model_validator(mode="after")
    def _check_key_material(self) -> "Settings":
        if self.test_mode:
            return self
        for name in ("service_token_secret", "secret_encryption_key"):
            value = getattr(self, name)
            if not value:
                raise ValueError(f"{name.upper()} must be set outside test mode")
            if len(value) < MIN_SECRET_LENGTH:
                raise ValueError(
                    f"{name.upper()} must be at least {MIN_SECRET_LENGTH} characters"
                )
        if self.service_token_secret == self.secret_encryption_key:
            logger.warning("key_material_reused", keys="service_token,encryption")
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
