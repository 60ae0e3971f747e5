"""Canonical entity records shared by every repository backend.

Each backend (SQLAlchemy, in-memory) converts its native rows into these
models so that the services above the repository layer see exactly one
schema.  Identifiers are opaque hex strings.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    """Return a new opaque entity identifier."""
    return uuid.uuid4().hex


class _Record(BaseModel):
    """Base for persisted records; allows construction from ORM rows."""

    model_config = ConfigDict(from_attributes=True)


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


class ApplicationSettings(BaseModel):
    """Per-application access policy switches."""

    require_hwid: bool = False
    require_version: bool = False
    allowed_version: str = "1.0.0"
    max_users: int = Field(default=1000, ge=1)
    enable_webhooks: bool = True
    require_license: bool = True


class ApplicationMessages(BaseModel):
    """Tenant-configured display text for each outcome category.

    Display only: programmatic behaviour is driven by
    :class:`~keygate_core.models.outcomes.DenialReason`.
    """

    login_success: str = "Login successful!"
    login_failed: str = "Invalid username or password."
    user_banned: str = "Your account has been banned."
    user_expired: str = "Your subscription has expired."
    account_paused: str = "Your account is paused. Contact support."
    version_outdated: str = "Please update your application to the latest version."
    hwid_mismatch: str = "Hardware ID mismatch detected."
    register_success: str = "Account created successfully!"
    license_invalid: str = "Invalid or expired license key."
    username_taken: str = "That username is already taken."


class Application(_Record):
    """Tenant-owned configuration unit resolved by its API key."""

    id: str = Field(default_factory=new_id)
    owner_id: str
    name: str
    description: str | None = None
    api_key: str
    is_active: bool = True
    settings: ApplicationSettings = Field(default_factory=ApplicationSettings)
    messages: ApplicationMessages = Field(default_factory=ApplicationMessages)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# License keys
# ---------------------------------------------------------------------------


class LicenseKey(_Record):
    """Seat-granting token scoped to one application.

    ``current_users`` is only ever changed through the repository's
    atomic increment / decrement operations.
    """

    id: str = Field(default_factory=new_id)
    application_id: str
    key: str
    description: str | None = None
    max_users: int = Field(default=1, ge=1)
    current_users: int = Field(default=0, ge=0)
    expires_at: datetime | None = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def seats_remaining(self) -> int:
        return max(self.max_users - self.current_users, 0)


# ---------------------------------------------------------------------------
# App users
# ---------------------------------------------------------------------------


class AppUser(_Record):
    """End-user identity, isolated within its application."""

    id: str = Field(default_factory=new_id)
    application_id: str
    username: str
    email: str | None = None
    password_hash: str
    hwid: str | None = None
    is_active: bool = True
    is_paused: bool = False
    expires_at: datetime | None = None
    license_key_id: str | None = None
    last_login: datetime | None = None
    login_attempts: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Blacklist
# ---------------------------------------------------------------------------


class BlacklistType(str, Enum):
    """Attribute a blacklist rule matches against."""

    IP = "ip"
    USERNAME = "username"
    EMAIL = "email"
    HWID = "hwid"


class BlacklistEntry(_Record):
    """Denylist rule scoped to one application."""

    id: str = Field(default_factory=new_id)
    application_id: str
    type: BlacklistType
    value: str
    reason: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class ActiveSession(_Record):
    """Authenticated session opened by a successful login."""

    id: str = Field(default_factory=new_id)
    application_id: str
    app_user_id: str
    session_token: str
    ip_address: str | None = None
    user_agent: str | None = None
    location: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    last_activity: datetime = Field(default_factory=_utcnow)
    expires_at: datetime | None = None


# ---------------------------------------------------------------------------
# Activity log
# ---------------------------------------------------------------------------


class ActivityLog(_Record):
    """Append-only audit record of one authentication-relevant event.

    ``username`` is a snapshot taken at write time so the history stays
    readable after the referenced user is deleted.
    """

    id: str = Field(default_factory=new_id)
    application_id: str
    app_user_id: str | None = None
    username: str | None = None
    event: str
    ip_address: str | None = None
    user_agent: str | None = None
    location: str | None = None
    hwid: str | None = None
    metadata: dict[str, Any] | None = None
    success: bool = True
    error_message: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


class Webhook(_Record):
    """Tenant-configured notification sink."""

    id: str = Field(default_factory=new_id)
    owner_id: str
    application_id: str
    name: str
    url: str
    secret: str | None = None
    events: list[str] = Field(default_factory=list)
    is_active: bool = True
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
