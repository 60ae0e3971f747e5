"""In-memory repository backend.

Used by tests and by embedders that do not need durability.  Every store
shares one ``asyncio.Lock`` so the atomic operations hold across
coroutines of the same event loop.  Records are copied on the way in and
on the way out so callers never alias stored state.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import Any

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
from keygate_core.state.protocols import DuplicateEntityError, RepositoryError


def _copy(record: Any) -> Any:
    return record.model_copy(deep=True)


def _apply(record: Any, fields: dict[str, Any]) -> Any:
    unknown = set(fields) - set(type(record).model_fields)
    if unknown:
        raise RepositoryError(f"unknown fields {sorted(unknown)!r}")
    data = record.model_dump()
    data.update(fields)
    return type(record).model_validate(data)


class _MemoryStore:
    def __init__(self, lock: asyncio.Lock) -> None:
        self._lock = lock
        self._rows: dict[str, Any] = {}


class MemoryApplicationStore(_MemoryStore):
    def __init__(self, lock: asyncio.Lock, owner: MemoryRepository) -> None:
        super().__init__(lock)
        self._owner = owner

    async def by_id(self, application_id: str) -> Application | None:
        row = self._rows.get(application_id)
        return _copy(row) if row is not None else None

    async def by_api_key(self, api_key: str) -> Application | None:
        for row in self._rows.values():
            if row.api_key == api_key:
                return _copy(row)
        return None

    async def create(self, application: Application) -> Application:
        async with self._lock:
            if any(row.api_key == application.api_key for row in self._rows.values()):
                raise DuplicateEntityError("duplicate application api key")
            self._rows[application.id] = _copy(application)
        return _copy(application)

    async def update(self, application_id: str, **fields: Any) -> Application | None:
        if "api_key" in fields:
            raise RepositoryError("api_key is immutable")
        async with self._lock:
            row = self._rows.get(application_id)
            if row is None:
                return None
            fields["updated_at"] = datetime.now(UTC)
            row = _apply(row, fields)
            self._rows[application_id] = row
        return _copy(row)

    async def delete(self, application_id: str) -> bool:
        async with self._lock:
            if self._rows.pop(application_id, None) is None:
                return False
            for store in (
                self._owner.sessions,
                self._owner.app_users,
                self._owner.license_keys,
                self._owner.blacklist,
                self._owner.webhooks,
            ):
                store._drop_application(application_id)
        return True

    async def list_by_owner(self, owner_id: str) -> list[Application]:
        rows = [row for row in self._rows.values() if row.owner_id == owner_id]
        return [_copy(row) for row in sorted(rows, key=lambda r: r.created_at)]


class _ApplicationScoped(_MemoryStore):
    def _drop_application(self, application_id: str) -> None:
        self._rows = {k: v for k, v in self._rows.items() if v.application_id != application_id}

    def _list(self, application_id: str) -> list[Any]:
        rows = [row for row in self._rows.values() if row.application_id == application_id]
        return [_copy(row) for row in sorted(rows, key=lambda r: r.created_at)]


class MemoryLicenseKeyStore(_ApplicationScoped):
    def __init__(self, lock: asyncio.Lock, owner: MemoryRepository) -> None:
        super().__init__(lock)
        self._owner = owner

    async def by_id(self, license_key_id: str) -> LicenseKey | None:
        row = self._rows.get(license_key_id)
        return _copy(row) if row is not None else None

    async def by_key(self, key: str, application_id: str | None = None) -> LicenseKey | None:
        matches = sorted(
            (
                row
                for row in self._rows.values()
                if row.key == key and (application_id is None or row.application_id == application_id)
            ),
            key=lambda r: r.created_at,
        )
        return _copy(matches[0]) if matches else None

    async def create(self, license_key: LicenseKey) -> LicenseKey:
        async with self._lock:
            for row in self._rows.values():
                if row.application_id == license_key.application_id and row.key == license_key.key:
                    raise DuplicateEntityError("duplicate license key")
            self._rows[license_key.id] = _copy(license_key)
        return _copy(license_key)

    async def update(self, license_key_id: str, **fields: Any) -> LicenseKey | None:
        if "current_users" in fields:
            raise RepositoryError("current_users only changes through atomic usage operations")
        async with self._lock:
            row = self._rows.get(license_key_id)
            if row is None:
                return None
            fields["updated_at"] = datetime.now(UTC)
            row = _apply(row, fields)
            self._rows[license_key_id] = row
        return _copy(row)

    async def delete(self, license_key_id: str) -> bool:
        async with self._lock:
            if self._rows.pop(license_key_id, None) is None:
                return False
            self._owner.app_users._clear_license(license_key_id)
            return True

    async def list_by_application(self, application_id: str) -> list[LicenseKey]:
        return self._list(application_id)

    async def atomic_increment_usage(self, license_key_id: str) -> bool:
        async with self._lock:
            row = self._rows.get(license_key_id)
            if row is None or row.current_users >= row.max_users:
                return False
            row.current_users += 1
            row.updated_at = datetime.now(UTC)
            return True

    async def atomic_decrement_usage(self, license_key_id: str) -> bool:
        async with self._lock:
            row = self._rows.get(license_key_id)
            if row is None or row.current_users <= 0:
                return False
            row.current_users -= 1
            row.updated_at = datetime.now(UTC)
            return True


class MemoryAppUserStore(_ApplicationScoped):
    def __init__(self, lock: asyncio.Lock, owner: MemoryRepository) -> None:
        super().__init__(lock)
        self._owner = owner

    def _taken(self, application_id: str, username: str, exclude: str | None = None) -> bool:
        return any(
            row.application_id == application_id and row.username == username and row.id != exclude
            for row in self._rows.values()
        )

    async def by_id(self, app_user_id: str) -> AppUser | None:
        row = self._rows.get(app_user_id)
        return _copy(row) if row is not None else None

    async def by_username(self, application_id: str, username: str) -> AppUser | None:
        for row in self._rows.values():
            if row.application_id == application_id and row.username == username:
                return _copy(row)
        return None

    async def by_email(self, application_id: str, email: str) -> AppUser | None:
        if not email:
            return None
        for row in self._rows.values():
            if row.application_id == application_id and row.email == email:
                return _copy(row)
        return None

    async def create(self, app_user: AppUser) -> AppUser:
        async with self._lock:
            if self._taken(app_user.application_id, app_user.username):
                raise DuplicateEntityError(f"duplicate username {app_user.username!r}")
            self._rows[app_user.id] = _copy(app_user)
        return _copy(app_user)

    async def update(self, app_user_id: str, **fields: Any) -> AppUser | None:
        async with self._lock:
            row = self._rows.get(app_user_id)
            if row is None:
                return None
            if "username" in fields and self._taken(row.application_id, fields["username"], exclude=row.id):
                raise DuplicateEntityError(f"duplicate username {fields['username']!r}")
            fields["updated_at"] = datetime.now(UTC)
            row = _apply(row, fields)
            self._rows[app_user_id] = row
        return _copy(row)

    async def delete(self, app_user_id: str) -> bool:
        async with self._lock:
            if self._rows.pop(app_user_id, None) is None:
                return False
            self._owner.sessions._drop_user(app_user_id)
            return True

    async def list_by_application(self, application_id: str) -> list[AppUser]:
        return self._list(application_id)

    async def bind_hwid_if_unset(self, app_user_id: str, hwid: str) -> bool:
        async with self._lock:
            row = self._rows.get(app_user_id)
            if row is None or row.hwid is not None:
                return False
            row.hwid = hwid
            row.updated_at = datetime.now(UTC)
            return True

    async def record_login(self, app_user_id: str, when: datetime) -> None:
        async with self._lock:
            row = self._rows.get(app_user_id)
            if row is not None:
                row.last_login = when
                row.login_attempts = 0

    async def increment_login_attempts(self, app_user_id: str) -> None:
        async with self._lock:
            row = self._rows.get(app_user_id)
            if row is not None:
                row.login_attempts += 1

    async def count_by_license(self, license_key_id: str) -> int:
        return sum(1 for row in self._rows.values() if row.license_key_id == license_key_id)

    def _clear_license(self, license_key_id: str) -> None:
        for row in self._rows.values():
            if row.license_key_id == license_key_id:
                row.license_key_id = None


class MemoryBlacklistStore(_ApplicationScoped):
    async def by_id(self, entry_id: str) -> BlacklistEntry | None:
        row = self._rows.get(entry_id)
        return _copy(row) if row is not None else None

    async def create(self, entry: BlacklistEntry) -> BlacklistEntry:
        async with self._lock:
            self._rows[entry.id] = _copy(entry)
        return _copy(entry)

    async def delete(self, entry_id: str) -> bool:
        async with self._lock:
            return self._rows.pop(entry_id, None) is not None

    async def list_by_application(self, application_id: str) -> list[BlacklistEntry]:
        return self._list(application_id)

    async def matches(self, application_id: str, type: BlacklistType, value: str) -> bool:
        kind = BlacklistType(type)
        return any(
            row.application_id == application_id and row.type == kind and row.value == value
            for row in self._rows.values()
        )


class MemorySessionStore(_ApplicationScoped):
    def _drop_user(self, app_user_id: str) -> int:
        before = len(self._rows)
        self._rows = {k: v for k, v in self._rows.items() if v.app_user_id != app_user_id}
        return before - len(self._rows)

    def _by_token(self, session_token: str) -> ActiveSession | None:
        for row in self._rows.values():
            if row.session_token == session_token:
                return row
        return None

    async def create(self, session: ActiveSession) -> ActiveSession:
        async with self._lock:
            if self._by_token(session.session_token) is not None:
                raise DuplicateEntityError("duplicate session token")
            self._rows[session.id] = _copy(session)
        return _copy(session)

    async def by_token(self, session_token: str) -> ActiveSession | None:
        row = self._by_token(session_token)
        return _copy(row) if row is not None else None

    async def list_by_application(self, application_id: str) -> list[ActiveSession]:
        return self._list(application_id)

    async def touch(self, session_token: str, when: datetime) -> bool:
        async with self._lock:
            row = self._by_token(session_token)
            if row is None:
                return False
            row.last_activity = when
            return True

    async def close(self, session_token: str) -> bool:
        async with self._lock:
            row = self._by_token(session_token)
            if row is None:
                return False
            del self._rows[row.id]
            return True

    async def close_for_user(self, app_user_id: str) -> int:
        async with self._lock:
            return self._drop_user(app_user_id)

    async def list_expired(self, now: datetime) -> list[ActiveSession]:
        rows = [row for row in self._rows.values() if row.expires_at is not None and row.expires_at <= now]
        return [_copy(row) for row in sorted(rows, key=lambda r: r.expires_at)]


class MemoryActivityLogStore(_MemoryStore):
    async def append(self, entry: ActivityLog) -> ActivityLog:
        async with self._lock:
            self._rows[entry.id] = _copy(entry)
        return _copy(entry)

    def _newest(self, rows: list[ActivityLog], limit: int) -> list[ActivityLog]:
        # dict order is insertion order; reverse it to break created_at ties
        ordered = sorted(reversed(rows), key=lambda r: r.created_at, reverse=True)
        return [_copy(row) for row in ordered[: max(limit, 1)]]

    async def list_by_application(self, application_id: str, limit: int) -> list[ActivityLog]:
        return self._newest([r for r in self._rows.values() if r.application_id == application_id], limit)

    async def list_for_user(self, app_user_id: str, limit: int) -> list[ActivityLog]:
        return self._newest([r for r in self._rows.values() if r.app_user_id == app_user_id], limit)


class MemoryWebhookStore(_ApplicationScoped):
    async def by_id(self, webhook_id: str) -> Webhook | None:
        row = self._rows.get(webhook_id)
        return _copy(row) if row is not None else None

    async def create(self, webhook: Webhook) -> Webhook:
        async with self._lock:
            self._rows[webhook.id] = _copy(webhook)
        return _copy(webhook)

    async def update(self, webhook_id: str, **fields: Any) -> Webhook | None:
        async with self._lock:
            row = self._rows.get(webhook_id)
            if row is None:
                return None
            fields["updated_at"] = datetime.now(UTC)
            row = _apply(row, fields)
            self._rows[webhook_id] = row
        return _copy(row)

    async def delete(self, webhook_id: str) -> bool:
        async with self._lock:
            return self._rows.pop(webhook_id, None) is not None

    async def list_by_application(self, application_id: str) -> list[Webhook]:
        return self._list(application_id)

    async def list_active_for_application_by_event(self, application_id: str, event: str) -> list[Webhook]:
        return [row for row in self._list(application_id) if row.is_active and event in row.events]


class MemoryRepository:
    """All stores backed by process-local dictionaries."""

    def __init__(self) -> None:
        lock = asyncio.Lock()
        self.applications = MemoryApplicationStore(lock, self)
        self.license_keys = MemoryLicenseKeyStore(lock, self)
        self.app_users = MemoryAppUserStore(lock, self)
        self.blacklist = MemoryBlacklistStore(lock)
        self.sessions = MemorySessionStore(lock)
        self.activity = MemoryActivityLogStore(lock)
        self.webhooks = MemoryWebhookStore(lock)

