"""Request context and tagged outcome types for the authentication core.

Denials are ordinary values.  The structured :class:`DenialReason` drives
programmatic behaviour and logs; the ``message`` carried alongside it is
tenant-configured display text and is never inspected by the core.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field

from keygate_core.models.entities import ActiveSession, AppUser, LicenseKey


class ClientContext(BaseModel):
    """Client metadata attached to every login / registration attempt."""

    ip_address: str | None = None
    user_agent: str | None = None
    location: str | None = None
    hwid: str | None = None
    version: str | None = None


class DenialReason(str, Enum):
    """Why an attempt was rejected."""

    # Access policy
    BLACKLISTED = "blacklisted"
    ACCOUNT_DISABLED = "account_disabled"
    ACCOUNT_PAUSED = "account_paused"
    ACCOUNT_EXPIRED = "account_expired"
    VERSION_MISMATCH = "version_mismatch"
    HWID_MISMATCH = "hwid_mismatch"

    # License
    LICENSE_NOT_FOUND = "license_not_found"
    LICENSE_WRONG_APPLICATION = "license_wrong_application"
    LICENSE_INACTIVE = "license_inactive"
    LICENSE_EXPIRED = "license_expired"
    SEATS_EXHAUSTED = "seats_exhausted"

    # Credentials and resolution
    INVALID_CREDENTIALS = "invalid_credentials"
    USERNAME_TAKEN = "username_taken"
    INVALID_APPLICATION = "invalid_application"


POLICY_REASONS: frozenset[DenialReason] = frozenset(
    {
        DenialReason.BLACKLISTED,
        DenialReason.ACCOUNT_DISABLED,
        DenialReason.ACCOUNT_PAUSED,
        DenialReason.ACCOUNT_EXPIRED,
        DenialReason.VERSION_MISMATCH,
        DenialReason.HWID_MISMATCH,
    }
)

LICENSE_REASONS: frozenset[DenialReason] = frozenset(
    {
        DenialReason.LICENSE_NOT_FOUND,
        DenialReason.LICENSE_WRONG_APPLICATION,
        DenialReason.LICENSE_INACTIVE,
        DenialReason.LICENSE_EXPIRED,
        DenialReason.SEATS_EXHAUSTED,
    }
)


class PolicyResult(BaseModel):
    """Outcome of the access policy evaluation.

    ``bind_hwid`` is set when the application requires hardware binding
    and the user has none yet; the caller commits the binding through
    :meth:`AccessPolicyEngine.commit_hwid_binding` once the password has
    been verified.
    """

    allowed: bool
    reason: DenialReason | None = None
    bind_hwid: str | None = None

    @classmethod
    def allow(cls, *, bind_hwid: str | None = None) -> PolicyResult:
        return cls(allowed=True, bind_hwid=bind_hwid)

    @classmethod
    def deny(cls, reason: DenialReason) -> PolicyResult:
        return cls(allowed=False, reason=reason)


class LicenseCheck(BaseModel):
    """Outcome of validating a license key string."""

    license: LicenseKey | None = None
    reason: DenialReason | None = None

    @property
    def ok(self) -> bool:
        return self.license is not None and self.reason is None


class LoginOutcome(BaseModel):
    """Result of :meth:`AuthOrchestrator.login`."""

    success: bool
    message: str
    reason: DenialReason | None = None
    session: ActiveSession | None = None
    user: AppUser | None = None


class RegisterOutcome(BaseModel):
    """Result of :meth:`AuthOrchestrator.register`."""

    success: bool
    message: str
    reason: DenialReason | None = None
    user: AppUser | None = None
    license_key_id: str | None = Field(default=None, description="Seat consumed by the registration, if any.")
