"""Repository protocol definitions.

These define the contract that ANY persistence backend must satisfy.
Core services depend on these protocols, never on a concrete backend.

All operations are asynchronous.  Lookups return ``None`` when the entity
does not exist; mutations return the updated record (or ``None``) or a
``bool`` telling whether a row was affected.

Atomicity requirements
----------------------
* ``LicenseKeyStore.atomic_increment_usage`` is a single
  compare-and-increment: it succeeds iff ``current_users < max_users`` at
  the moment of the increment.
* ``LicenseKeyStore.atomic_decrement_usage`` is floored at zero.
* ``AppUserStore.bind_hwid_if_unset`` is a compare-and-set on a NULL hwid.
* ``SessionStore.create`` rejects a duplicate ``session_token`` with
  :class:`DuplicateEntityError` without inserting.
* ``AppUserStore.create`` rejects a duplicate ``(application_id, username)``
  with :class:`DuplicateEntityError` without inserting.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from keygate_core.errors import KeygateError
from keygate_core.models.entities import (
    ActiveSession,
    ActivityLog,
    Application,
    AppUser,
    BlacklistEntry,
    BlacklistType,
    LicenseKey,
    Webhook,
)


class RepositoryError(KeygateError):
    """Raised by a backend when a storage operation fails."""


class DuplicateEntityError(RepositoryError):
    """Raised when an insert would violate a uniqueness invariant."""


# ---------------------------------------------------------------------------
# Per-entity stores
# ---------------------------------------------------------------------------


@runtime_checkable
class ApplicationStore(Protocol):
    async def by_id(self, application_id: str) -> Application | None: ...

    async def by_api_key(self, api_key: str) -> Application | None: ...

    async def create(self, application: Application) -> Application: ...

    async def update(self, application_id: str, **fields: Any) -> Application | None:
        """Apply *fields* to the application; ``api_key`` is immutable."""
        ...

    async def delete(self, application_id: str) -> bool:
        """Delete the application and hard-delete every child it owns."""
        ...

    async def list_by_owner(self, owner_id: str) -> list[Application]: ...


@runtime_checkable
class LicenseKeyStore(Protocol):
    async def by_id(self, license_key_id: str) -> LicenseKey | None: ...

    async def by_key(self, key: str, application_id: str | None = None) -> LicenseKey | None: ...

    async def create(self, license_key: LicenseKey) -> LicenseKey: ...

    async def update(self, license_key_id: str, **fields: Any) -> LicenseKey | None: ...

    async def delete(self, license_key_id: str) -> bool: ...

    async def list_by_application(self, application_id: str) -> list[LicenseKey]: ...

    async def atomic_increment_usage(self, license_key_id: str) -> bool: ...

    async def atomic_decrement_usage(self, license_key_id: str) -> bool: ...


@runtime_checkable
class AppUserStore(Protocol):
    async def by_id(self, app_user_id: str) -> AppUser | None: ...

    async def by_username(self, application_id: str, username: str) -> AppUser | None: ...

    async def by_email(self, application_id: str, email: str) -> AppUser | None: ...

    async def create(self, app_user: AppUser) -> AppUser: ...

    async def update(self, app_user_id: str, **fields: Any) -> AppUser | None: ...

    async def delete(self, app_user_id: str) -> bool: ...

    async def list_by_application(self, application_id: str) -> list[AppUser]: ...

    async def bind_hwid_if_unset(self, app_user_id: str, hwid: str) -> bool: ...

    async def record_login(self, app_user_id: str, when: datetime) -> None:
        """Set ``last_login`` and reset ``login_attempts``."""
        ...

    async def increment_login_attempts(self, app_user_id: str) -> None: ...

    async def count_by_license(self, license_key_id: str) -> int: ...


@runtime_checkable
class BlacklistStore(Protocol):
    async def by_id(self, entry_id: str) -> BlacklistEntry | None: ...

    async def create(self, entry: BlacklistEntry) -> BlacklistEntry: ...

    async def delete(self, entry_id: str) -> bool: ...

    async def list_by_application(self, application_id: str) -> list[BlacklistEntry]: ...

    async def matches(self, application_id: str, type: BlacklistType, value: str) -> bool: ...


@runtime_checkable
class SessionStore(Protocol):
    async def create(self, session: ActiveSession) -> ActiveSession: ...

    async def by_token(self, session_token: str) -> ActiveSession | None: ...

    async def list_by_application(self, application_id: str) -> list[ActiveSession]: ...

    async def touch(self, session_token: str, when: datetime) -> bool: ...

    async def close(self, session_token: str) -> bool: ...

    async def close_for_user(self, app_user_id: str) -> int: ...

    async def list_expired(self, now: datetime) -> list[ActiveSession]: ...


@runtime_checkable
class ActivityLogStore(Protocol):
    async def append(self, entry: ActivityLog) -> ActivityLog: ...

    async def list_by_application(self, application_id: str, limit: int) -> list[ActivityLog]:
        """Return the newest *limit* entries, newest first."""
        ...

    async def list_for_user(self, app_user_id: str, limit: int) -> list[ActivityLog]: ...


@runtime_checkable
class WebhookStore(Protocol):
    async def by_id(self, webhook_id: str) -> Webhook | None: ...

    async def create(self, webhook: Webhook) -> Webhook: ...

    async def update(self, webhook_id: str, **fields: Any) -> Webhook | None: ...

    async def delete(self, webhook_id: str) -> bool: ...

    async def list_by_application(self, application_id: str) -> list[Webhook]: ...

    async def list_active_for_application_by_event(self, application_id: str, event: str) -> list[Webhook]: ...


# ---------------------------------------------------------------------------
# Aggregate
# ---------------------------------------------------------------------------


@runtime_checkable
class Repository(Protocol):
    """The single source of truth handed to every core service."""

    applications: ApplicationStore
    license_keys: LicenseKeyStore
    app_users: AppUserStore
    blacklist: BlacklistStore
    sessions: SessionStore
    activity: ActivityLogStore
    webhooks: WebhookStore


def immutable_fields_violation(fields: dict[str, Any], immutable: Sequence[str]) -> str | None:
    """Return the first immutable field name present in *fields*, if any."""
    for name in immutable:
        if name in fields:
            return name
    return None
