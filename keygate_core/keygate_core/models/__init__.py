"""Domain records and outcome types for the authentication core."""

from keygate_core.models.entities import (
    ActiveSession,
    ActivityLog,
    Application,
    ApplicationMessages,
    ApplicationSettings,
    AppUser,
    BlacklistEntry,
    BlacklistType,
    LicenseKey,
    Webhook,
    new_id,
)
from keygate_core.models.outcomes import (
    ClientContext,
    DenialReason,
    LicenseCheck,
    LoginOutcome,
    PolicyResult,
    RegisterOutcome,
)

__all__ = [
    "ActiveSession",
    "ActivityLog",
    "AppUser",
    "Application",
    "ApplicationMessages",
    "ApplicationSettings",
    "BlacklistEntry",
    "BlacklistType",
    "ClientContext",
    "DenialReason",
    "LicenseCheck",
    "LicenseKey",
    "LoginOutcome",
    "PolicyResult",
    "RegisterOutcome",
    "Webhook",
    "new_id",
]
