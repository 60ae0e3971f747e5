"""SQLAlchemy repository backend for the Keygate state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  Writes are flushed so generated
defaults are populated; the caller is responsible for ``session.commit()``
(or relying on the ``get_session`` context manager).

Atomic operations are single conditional ``UPDATE`` statements so that the
database serialises concurrent writers on the affected row.  Inserts that
may collide run inside a SAVEPOINT so a uniqueness violation leaves the
outer transaction usable.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

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
from keygate_core.state.tables import (
    ActiveSessionTable,
    ActivityLogTable,
    AppUserTable,
    ApplicationTable,
    BlacklistTable,
    LicenseKeyTable,
    WebhookTable,
)

logger = logging.getLogger(__name__)


async def _insert(session: AsyncSession, row: Any, what: str) -> None:
    """Insert *row* inside a SAVEPOINT, mapping uniqueness violations."""
    try:
        async with session.begin_nested():
            session.add(row)
    except IntegrityError as exc:
        raise DuplicateEntityError(f"duplicate {what}") from exc


async def _get(session: AsyncSession, table: Any, row_id: str) -> Any:
    stmt = select(table).where(table.id == row_id).execution_options(populate_existing=True)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def _apply(session: AsyncSession, row: Any, fields: dict[str, Any]) -> None:
    for name, value in fields.items():
        if not hasattr(row, name):
            raise RepositoryError(f"unknown field {name!r} for {row.__tablename__}")
        setattr(row, name, value)
    await session.flush()


def _plain(value: Any) -> Any:
    """Turn nested pydantic models into JSON-ready dicts for JSON columns."""
    if hasattr(value, "model_dump"):
        return value.model_dump()
    return value


# ---------------------------------------------------------------------------
# ApplicationRepository
# ---------------------------------------------------------------------------


class ApplicationRepository:
    """CRUD operations for the ``applications`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def by_id(self, application_id: str) -> Application | None:
        row = await _get(self._session, ApplicationTable, application_id)
        return Application.model_validate(row) if row is not None else None

    async def by_api_key(self, api_key: str) -> Application | None:
        stmt = (
            select(ApplicationTable)
            .where(ApplicationTable.api_key == api_key)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        row = result.scalar_one_or_none()
        return Application.model_validate(row) if row is not None else None

    async def create(self, application: Application) -> Application:
        data = application.model_dump()
        row = ApplicationTable(**data)
        await _insert(self._session, row, "application api key")
        return Application.model_validate(row)

    async def update(self, application_id: str, **fields: Any) -> Application | None:
        if "api_key" in fields:
            raise RepositoryError("api_key is immutable")
        row = await _get(self._session, ApplicationTable, application_id)
        if row is None:
            return None
        fields = {name: _plain(value) for name, value in fields.items()}
        fields["updated_at"] = datetime.now(UTC)
        await _apply(self._session, row, fields)
        return Application.model_validate(row)

    async def delete(self, application_id: str) -> bool:
        """Delete the application and hard-delete its children.

        Activity logs are kept: they reference the application but are
        not owned by it.
        """
        for table in (ActiveSessionTable, AppUserTable, LicenseKeyTable, BlacklistTable, WebhookTable):
            await self._session.execute(
                delete(table)
                .where(table.application_id == application_id)
                .execution_options(synchronize_session=False)
            )
        result = await self._session.execute(
            delete(ApplicationTable)
            .where(ApplicationTable.id == application_id)
            .execution_options(synchronize_session=False)
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def list_by_owner(self, owner_id: str) -> list[Application]:
        stmt = (
            select(ApplicationTable)
            .where(ApplicationTable.owner_id == owner_id)
            .order_by(ApplicationTable.created_at)
        )
        result = await self._session.execute(stmt)
        return [Application.model_validate(row) for row in result.scalars().all()]


# ---------------------------------------------------------------------------
# LicenseKeyRepository
# ---------------------------------------------------------------------------


class LicenseKeyRepository:
    """CRUD and atomic seat counters for the ``license_keys`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def by_id(self, license_key_id: str) -> LicenseKey | None:
        row = await _get(self._session, LicenseKeyTable, license_key_id)
        return LicenseKey.model_validate(row) if row is not None else None

    async def by_key(self, key: str, application_id: str | None = None) -> LicenseKey | None:
        """Return the key scoped to *application_id*, or the oldest match anywhere."""
        stmt = select(LicenseKeyTable).where(LicenseKeyTable.key == key)
        if application_id is not None:
            stmt = stmt.where(LicenseKeyTable.application_id == application_id)
        stmt = (
            stmt.order_by(LicenseKeyTable.created_at)
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        row = result.scalar_one_or_none()
        return LicenseKey.model_validate(row) if row is not None else None

    async def create(self, license_key: LicenseKey) -> LicenseKey:
        row = LicenseKeyTable(**license_key.model_dump())
        await _insert(self._session, row, "license key")
        return LicenseKey.model_validate(row)

    async def update(self, license_key_id: str, **fields: Any) -> LicenseKey | None:
        if "current_users" in fields:
            raise RepositoryError("current_users only changes through atomic usage operations")
        row = await _get(self._session, LicenseKeyTable, license_key_id)
        if row is None:
            return None
        fields["updated_at"] = datetime.now(UTC)
        await _apply(self._session, row, fields)
        return LicenseKey.model_validate(row)

    async def delete(self, license_key_id: str) -> bool:
        result = await self._session.execute(
            delete(LicenseKeyTable)
            .where(LicenseKeyTable.id == license_key_id)
            .execution_options(synchronize_session=False)
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def list_by_application(self, application_id: str) -> list[LicenseKey]:
        stmt = (
            select(LicenseKeyTable)
            .where(LicenseKeyTable.application_id == application_id)
            .order_by(LicenseKeyTable.created_at)
        )
        result = await self._session.execute(stmt)
        return [LicenseKey.model_validate(row) for row in result.scalars().all()]

    async def atomic_increment_usage(self, license_key_id: str) -> bool:
        """Compare-and-increment: succeeds iff a seat is free right now."""
        stmt = (
            update(LicenseKeyTable)
            .where(
                LicenseKeyTable.id == license_key_id,
                LicenseKeyTable.current_users < LicenseKeyTable.max_users,
            )
            .values(
                current_users=LicenseKeyTable.current_users + 1,
                updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def atomic_decrement_usage(self, license_key_id: str) -> bool:
        """Release one seat, never going below zero."""
        stmt = (
            update(LicenseKeyTable)
            .where(
                LicenseKeyTable.id == license_key_id,
                LicenseKeyTable.current_users > 0,
            )
            .values(
                current_users=LicenseKeyTable.current_users - 1,
                updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# AppUserRepository
# ---------------------------------------------------------------------------


class AppUserRepository:
    """CRUD operations for the ``app_users`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def by_id(self, app_user_id: str) -> AppUser | None:
        row = await _get(self._session, AppUserTable, app_user_id)
        return AppUser.model_validate(row) if row is not None else None

    async def by_username(self, application_id: str, username: str) -> AppUser | None:
        stmt = (
            select(AppUserTable)
            .where(
                AppUserTable.application_id == application_id,
                AppUserTable.username == username,
            )
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        row = result.scalar_one_or_none()
        return AppUser.model_validate(row) if row is not None else None

    async def by_email(self, application_id: str, email: str) -> AppUser | None:
        if not email:
            return None
        stmt = (
            select(AppUserTable)
            .where(
                AppUserTable.application_id == application_id,
                AppUserTable.email == email,
            )
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        row = result.scalar_one_or_none()
        return AppUser.model_validate(row) if row is not None else None

    async def create(self, app_user: AppUser) -> AppUser:
        row = AppUserTable(**app_user.model_dump())
        await _insert(self._session, row, f"username {app_user.username!r}")
        return AppUser.model_validate(row)

    async def update(self, app_user_id: str, **fields: Any) -> AppUser | None:
        row = await _get(self._session, AppUserTable, app_user_id)
        if row is None:
            return None
        fields["updated_at"] = datetime.now(UTC)
        try:
            async with self._session.begin_nested():
                await _apply(self._session, row, fields)
        except IntegrityError as exc:
            raise DuplicateEntityError(f"duplicate username {fields.get('username')!r}") from exc
        return AppUser.model_validate(row)

    async def delete(self, app_user_id: str) -> bool:
        await self._session.execute(
            delete(ActiveSessionTable)
            .where(ActiveSessionTable.app_user_id == app_user_id)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(
            delete(AppUserTable).where(AppUserTable.id == app_user_id).execution_options(synchronize_session=False)
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def list_by_application(self, application_id: str) -> list[AppUser]:
        stmt = (
            select(AppUserTable)
            .where(AppUserTable.application_id == application_id)
            .order_by(AppUserTable.created_at)
        )
        result = await self._session.execute(stmt)
        return [AppUser.model_validate(row) for row in result.scalars().all()]

    async def bind_hwid_if_unset(self, app_user_id: str, hwid: str) -> bool:
        """Compare-and-set the hardware id; only the first binder wins."""
        stmt = (
            update(AppUserTable)
            .where(AppUserTable.id == app_user_id, AppUserTable.hwid.is_(None))
            .values(hwid=hwid, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def record_login(self, app_user_id: str, when: datetime) -> None:
        stmt = (
            update(AppUserTable)
            .where(AppUserTable.id == app_user_id)
            .values(last_login=when, login_attempts=0)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
        await self._session.flush()

    async def increment_login_attempts(self, app_user_id: str) -> None:
        stmt = (
            update(AppUserTable)
            .where(AppUserTable.id == app_user_id)
            .values(login_attempts=AppUserTable.login_attempts + 1)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
        await self._session.flush()

    async def count_by_license(self, license_key_id: str) -> int:
        stmt = select(func.count()).where(AppUserTable.license_key_id == license_key_id)
        result = await self._session.execute(stmt)
        return result.scalar_one()


# ---------------------------------------------------------------------------
# BlacklistRepository
# ---------------------------------------------------------------------------


class BlacklistRepository:
    """CRUD operations for the ``blacklist`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def by_id(self, entry_id: str) -> BlacklistEntry | None:
        row = await _get(self._session, BlacklistTable, entry_id)
        return BlacklistEntry.model_validate(row) if row is not None else None

    async def create(self, entry: BlacklistEntry) -> BlacklistEntry:
        data = entry.model_dump()
        data["type"] = entry.type.value
        row = BlacklistTable(**data)
        await _insert(self._session, row, "blacklist entry")
        return BlacklistEntry.model_validate(row)

    async def delete(self, entry_id: str) -> bool:
        result = await self._session.execute(
            delete(BlacklistTable).where(BlacklistTable.id == entry_id).execution_options(synchronize_session=False)
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def list_by_application(self, application_id: str) -> list[BlacklistEntry]:
        stmt = (
            select(BlacklistTable)
            .where(BlacklistTable.application_id == application_id)
            .order_by(BlacklistTable.created_at)
        )
        result = await self._session.execute(stmt)
        return [BlacklistEntry.model_validate(row) for row in result.scalars().all()]

    async def matches(self, application_id: str, type: BlacklistType, value: str) -> bool:
        stmt = select(func.count()).where(
            BlacklistTable.application_id == application_id,
            BlacklistTable.type == BlacklistType(type).value,
            BlacklistTable.value == value,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one() > 0


# ---------------------------------------------------------------------------
# SessionRepository
# ---------------------------------------------------------------------------


class SessionRepository:
    """Operations for the ``active_sessions`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, session: ActiveSession) -> ActiveSession:
        row = ActiveSessionTable(**session.model_dump())
        await _insert(self._session, row, "session token")
        return ActiveSession.model_validate(row)

    async def by_token(self, session_token: str) -> ActiveSession | None:
        stmt = (
            select(ActiveSessionTable)
            .where(ActiveSessionTable.session_token == session_token)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        row = result.scalar_one_or_none()
        return ActiveSession.model_validate(row) if row is not None else None

    async def list_by_application(self, application_id: str) -> list[ActiveSession]:
        stmt = (
            select(ActiveSessionTable)
            .where(ActiveSessionTable.application_id == application_id)
            .order_by(ActiveSessionTable.created_at)
        )
        result = await self._session.execute(stmt)
        return [ActiveSession.model_validate(row) for row in result.scalars().all()]

    async def touch(self, session_token: str, when: datetime) -> bool:
        stmt = (
            update(ActiveSessionTable)
            .where(ActiveSessionTable.session_token == session_token)
            .values(last_activity=when)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def close(self, session_token: str) -> bool:
        result = await self._session.execute(
            delete(ActiveSessionTable)
            .where(ActiveSessionTable.session_token == session_token)
            .execution_options(synchronize_session=False)
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def close_for_user(self, app_user_id: str) -> int:
        result = await self._session.execute(
            delete(ActiveSessionTable)
            .where(ActiveSessionTable.app_user_id == app_user_id)
            .execution_options(synchronize_session=False)
        )
        await self._session.flush()
        return result.rowcount or 0  # type: ignore[attr-defined]

    async def list_expired(self, now: datetime) -> list[ActiveSession]:
        stmt = (
            select(ActiveSessionTable)
            .where(
                ActiveSessionTable.expires_at.is_not(None),
                ActiveSessionTable.expires_at <= now,
            )
            .order_by(ActiveSessionTable.expires_at)
        )
        result = await self._session.execute(stmt)
        return [ActiveSession.model_validate(row) for row in result.scalars().all()]


# ---------------------------------------------------------------------------
# ActivityLogRepository
# ---------------------------------------------------------------------------


def _activity_from_row(row: ActivityLogTable) -> ActivityLog:
    return ActivityLog(
        id=row.id,
        application_id=row.application_id,
        app_user_id=row.app_user_id,
        username=row.username,
        event=row.event,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        location=row.location,
        hwid=row.hwid,
        metadata=row.metadata_json,
        success=row.success,
        error_message=row.error_message,
        created_at=row.created_at,
    )


class ActivityLogRepository:
    """Append-only access to the ``activity_logs`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def append(self, entry: ActivityLog) -> ActivityLog:
        data = entry.model_dump()
        data["metadata_json"] = data.pop("metadata")
        row = ActivityLogTable(**data)
        await _insert(self._session, row, "activity log entry")
        return _activity_from_row(row)

    async def list_by_application(self, application_id: str, limit: int) -> list[ActivityLog]:
        stmt = (
            select(ActivityLogTable)
            .where(ActivityLogTable.application_id == application_id)
            .order_by(ActivityLogTable.created_at.desc())
            .limit(max(limit, 1))
        )
        result = await self._session.execute(stmt)
        return [_activity_from_row(row) for row in result.scalars().all()]

    async def list_for_user(self, app_user_id: str, limit: int) -> list[ActivityLog]:
        stmt = (
            select(ActivityLogTable)
            .where(ActivityLogTable.app_user_id == app_user_id)
            .order_by(ActivityLogTable.created_at.desc())
            .limit(max(limit, 1))
        )
        result = await self._session.execute(stmt)
        return [_activity_from_row(row) for row in result.scalars().all()]


# ---------------------------------------------------------------------------
# WebhookRepository
# ---------------------------------------------------------------------------


class WebhookRepository:
    """CRUD operations for the ``webhooks`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def by_id(self, webhook_id: str) -> Webhook | None:
        row = await _get(self._session, WebhookTable, webhook_id)
        return Webhook.model_validate(row) if row is not None else None

    async def create(self, webhook: Webhook) -> Webhook:
        row = WebhookTable(**webhook.model_dump())
        await _insert(self._session, row, "webhook")
        return Webhook.model_validate(row)

    async def update(self, webhook_id: str, **fields: Any) -> Webhook | None:
        row = await _get(self._session, WebhookTable, webhook_id)
        if row is None:
            return None
        fields["updated_at"] = datetime.now(UTC)
        await _apply(self._session, row, fields)
        return Webhook.model_validate(row)

    async def delete(self, webhook_id: str) -> bool:
        result = await self._session.execute(
            delete(WebhookTable).where(WebhookTable.id == webhook_id).execution_options(synchronize_session=False)
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def list_by_application(self, application_id: str) -> list[Webhook]:
        stmt = (
            select(WebhookTable)
            .where(WebhookTable.application_id == application_id)
            .order_by(WebhookTable.created_at)
        )
        result = await self._session.execute(stmt)
        return [Webhook.model_validate(row) for row in result.scalars().all()]

    async def list_active_for_application_by_event(self, application_id: str, event: str) -> list[Webhook]:
        """Return active webhooks subscribed to *event*.

        Fetches active rows via SQL and filters the JSON event list in
        Python for cross-dialect compatibility (JSONB containment is
        PostgreSQL-specific).
        """
        stmt = (
            select(WebhookTable)
            .where(
                WebhookTable.application_id == application_id,
                WebhookTable.is_active.is_(True),
            )
            .order_by(WebhookTable.created_at)
        )
        result = await self._session.execute(stmt)
        return [Webhook.model_validate(row) for row in result.scalars().all() if event in (row.events or [])]


# ---------------------------------------------------------------------------
# Aggregate
# ---------------------------------------------------------------------------


class SqlRepository:
    """All stores bound to one ``AsyncSession`` (one request / transaction)."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.applications = ApplicationRepository(session)
        self.license_keys = LicenseKeyRepository(session)
        self.app_users = AppUserRepository(session)
        self.blacklist = BlacklistRepository(session)
        self.sessions = SessionRepository(session)
        self.activity = ActivityLogRepository(session)
        self.webhooks = WebhookRepository(session)
