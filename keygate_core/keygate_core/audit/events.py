"""Activity event names and the denial-to-event mapping."""

from __future__ import annotations

from enum import Enum

from keygate_core.models.outcomes import DenialReason


class ActivityEvent(str, Enum):
    """Names written to the activity log and matched by webhook subscriptions."""

    USER_LOGIN = "user_login"
    LOGIN_FAILED = "login_failed"
    USER_REGISTER = "user_register"
    REGISTER_FAILED = "register_failed"
    USER_LOGOUT = "user_logout"
    SESSION_EXPIRED = "session_expired"
    HWID_MISMATCH = "hwid_mismatch"
    VERSION_MISMATCH = "version_mismatch"
    ACCOUNT_DISABLED = "account_disabled"
    ACCOUNT_EXPIRED = "account_expired"


ALL_EVENTS: tuple[str, ...] = tuple(event.value for event in ActivityEvent)

_LOGIN_DENIAL_EVENTS: dict[DenialReason, ActivityEvent] = {
    DenialReason.HWID_MISMATCH: ActivityEvent.HWID_MISMATCH,
    DenialReason.VERSION_MISMATCH: ActivityEvent.VERSION_MISMATCH,
    DenialReason.ACCOUNT_DISABLED: ActivityEvent.ACCOUNT_DISABLED,
    DenialReason.ACCOUNT_PAUSED: ActivityEvent.ACCOUNT_DISABLED,
    DenialReason.ACCOUNT_EXPIRED: ActivityEvent.ACCOUNT_EXPIRED,
}


def login_denial_event(reason: DenialReason) -> ActivityEvent:
    """Return the most specific event for a denied login."""
    return _LOGIN_DENIAL_EVENTS.get(reason, ActivityEvent.LOGIN_FAILED)
