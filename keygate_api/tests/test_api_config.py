"""Tests for API settings."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from keygate_api.config import APISettings


def test_defaults_use_local_sqlite():
    settings = APISettings(_env_file=None)
    assert settings.database_url.startswith("sqlite+aiosqlite")
    assert settings.auto_create_tables is True
    assert settings.structured_logging is False


def test_environment_prefix(monkeypatch):
    monkeypatch.setenv("API_PORT", "9000")
    monkeypatch.setenv("API_DATABASE_URL", "postgresql+asyncpg://u:p@db:5432/keygate")
    settings = APISettings(_env_file=None)
    assert settings.port == 9000
    assert settings.database_url.endswith("/keygate")


def test_wildcard_origin_with_credentials_rejected():
    with pytest.raises(ValidationError, match="wildcard"):
        APISettings(_env_file=None, cors_origins=["*"], cors_allow_credentials=True)


def test_wildcard_origin_without_credentials_allowed():
    settings = APISettings(_env_file=None, cors_origins=["*"], cors_allow_credentials=False)
    assert settings.cors_origins == ["*"]
