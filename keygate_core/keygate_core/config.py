"""Core configuration loaded from environment variables."""

from __future__ import annotations

import logging

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class CoreSettings(BaseSettings):
    """Authentication core settings loaded from variables with ``KEYGATE_`` prefix."""

    model_config = SettingsConfigDict(
        env_prefix="KEYGATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application API keys are issued as ``<prefix>_<random>``.
    api_key_prefix: str = "kg"
    api_key_bytes: int = Field(default=24, ge=16, le=64)

    # Password hashing
    bcrypt_rounds: int = Field(default=12, ge=4, le=16)
    min_password_length: int = Field(default=6, ge=1)

    # Sessions
    session_ttl_seconds: int | None = None
    session_token_bytes: int = Field(default=32, ge=16, le=128)
    session_token_attempts: int = Field(default=5, ge=1)

    # Webhook delivery
    webhook_timeout_seconds: float = Field(default=5.0, gt=0)
    webhook_user_agent: str = "Keygate-Webhook/1.0"
    webhook_allow_private_targets: bool = False

    # Activity log listing
    activity_log_default_limit: int = Field(default=100, ge=1)
    activity_log_max_limit: int = Field(default=1000, ge=1)

    @field_validator("api_key_prefix")
    @classmethod
    def _validate_prefix(cls, value: str) -> str:
        value = value.strip()
        if not value or not value.replace("-", "").isalnum():
            raise ValueError("api_key_prefix must be a non-empty alphanumeric string")
        return value

    @field_validator("session_ttl_seconds")
    @classmethod
    def _validate_ttl(cls, value: int | None) -> int | None:
        if value is not None and value <= 0:
            raise ValueError("session_ttl_seconds must be positive when set")
        return value


def load_settings() -> CoreSettings:
    """Construct settings from the environment / ``.env`` file."""
    settings = CoreSettings()
    logger.debug(
        "Core settings loaded: session_ttl=%s webhook_timeout=%.1fs",
        settings.session_ttl_seconds,
        settings.webhook_timeout_seconds,
    )
    return settings
