"""Pydantic request/response schemas for the client API.

Request bodies reject unknown fields and bound every string, so the
orchestrator only ever sees typed, size-limited values.
"""

from __future__ import annotations

from datetime import datetime

from keygate_core.models.entities import AppUser
from pydantic import BaseModel, ConfigDict, EmailStr, Field

# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class _StrictRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")


class LoginRequest(_StrictRequest):
    """Credentials plus the client metadata used by the access policy."""

    username: str = Field(..., min_length=1, max_length=128)
    password: str = Field(..., min_length=1, max_length=1024)
    hwid: str | None = Field(default=None, min_length=1, max_length=256, description="Hardware identifier.")
    version: str | None = Field(default=None, min_length=1, max_length=64, description="Client version string.")


class RegisterRequest(LoginRequest):
    """Registration body; ``license_key`` is required when the application says so."""

    email: EmailStr | None = None
    license_key: str | None = Field(default=None, min_length=1, max_length=128)


class SessionRequest(_StrictRequest):
    """Body for heartbeat and logout."""

    session_token: str = Field(..., min_length=1, max_length=256)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of an end user; the password hash never leaves the core."""

    id: str
    username: str
    email: str | None = None
    hwid: str | None = None
    expires_at: datetime | None = None
    last_login: datetime | None = None

    @classmethod
    def from_user(cls, user: AppUser) -> UserResponse:
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            hwid=user.hwid,
            expires_at=user.expires_at,
            last_login=user.last_login,
        )


class LoginResponse(BaseModel):
    success: bool
    message: str
    reason: str | None = None
    session_token: str | None = None
    session_expires_at: datetime | None = None
    user: UserResponse | None = None


class RegisterResponse(BaseModel):
    success: bool
    message: str
    reason: str | None = None
    user: UserResponse | None = None


class SessionResponse(BaseModel):
    success: bool
    message: str
