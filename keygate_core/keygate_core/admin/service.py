"""Tenant-side administration of applications and their children.

Every operation is scoped to one owner: an entity belonging to another
owner is reported as not found.  License seats are never touched here
except when deleting a user, which releases the seat the user held.
"""

from __future__ import annotations

import logging
import secrets
from datetime import UTC, datetime, timedelta
from typing import Any

from keygate_core.audit.dispatcher import validate_webhook_url
from keygate_core.audit.events import ALL_EVENTS
from keygate_core.config import CoreSettings
from keygate_core.errors import NotFoundError, ValidationError
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
)
from keygate_core.security.passwords import CredentialVerifier
from keygate_core.state.protocols import DuplicateEntityError, Repository

logger = logging.getLogger(__name__)

_APPLICATION_FIELDS = frozenset({"name", "description", "is_active", "settings", "messages"})
_LICENSE_FIELDS = frozenset({"description", "max_users", "expires_at", "is_active"})
_USER_FIELDS = frozenset({"username", "email", "password", "hwid", "is_active", "is_paused", "expires_at"})
_WEBHOOK_FIELDS = frozenset({"name", "url", "secret", "events", "is_active"})

_API_KEY_ATTEMPTS = 5


def _check_fields(fields: dict[str, Any], allowed: frozenset[str], entity: str) -> None:
    unknown = sorted(set(fields) - allowed)
    if unknown:
        raise ValidationError(f"cannot update {entity} field(s): {', '.join(unknown)}")


def generate_license_key() -> str:
    """Return a random key in ``XXXX-XXXX-XXXX-XXXX`` form."""
    raw = secrets.token_hex(8).upper()
    return "-".join(raw[i : i + 4] for i in range(0, len(raw), 4))


class TenantAdminService:
    """CRUD over one owner's applications, keys, users, rules and webhooks.

    Parameters
    ----------
    repository:
        Repository shared with the rest of the core.
    verifier:
        Password hasher for admin-created users and password changes.
    settings:
        Core settings (API key format, password policy, log limits).
    owner_id:
        The tenant performing the operations.
    """

    def __init__(
        self,
        repository: Repository,
        verifier: CredentialVerifier,
        settings: CoreSettings | None = None,
        *,
        owner_id: str,
    ) -> None:
        self._repo = repository
        self._verifier = verifier
        self._settings = settings or CoreSettings()
        self._owner_id = owner_id

    # ------------------------------------------------------------------
    # Ownership helpers
    # ------------------------------------------------------------------

    async def get_application(self, application_id: str) -> Application:
        application = await self._repo.applications.by_id(application_id)
        if application is None or application.owner_id != self._owner_id:
            raise NotFoundError("application", application_id)
        return application

    async def _license_key(self, license_key_id: str) -> LicenseKey:
        license_key = await self._repo.license_keys.by_id(license_key_id)
        if license_key is None:
            raise NotFoundError("license key", license_key_id)
        await self.get_application(license_key.application_id)
        return license_key

    async def get_app_user(self, app_user_id: str) -> AppUser:
        user = await self._repo.app_users.by_id(app_user_id)
        if user is None:
            raise NotFoundError("user", app_user_id)
        await self.get_application(user.application_id)
        return user

    async def _webhook(self, webhook_id: str) -> Webhook:
        webhook = await self._repo.webhooks.by_id(webhook_id)
        if webhook is None or webhook.owner_id != self._owner_id:
            raise NotFoundError("webhook", webhook_id)
        return webhook

    def _check_password(self, password: str) -> None:
        if len(password) < self._settings.min_password_length:
            raise ValidationError(
                f"password must be at least {self._settings.min_password_length} characters"
            )

    def _new_api_key(self) -> str:
        return f"{self._settings.api_key_prefix}_{secrets.token_urlsafe(self._settings.api_key_bytes)}"

    # ------------------------------------------------------------------
    # Applications
    # ------------------------------------------------------------------

    async def create_application(
        self,
        name: str,
        *,
        description: str | None = None,
        settings: ApplicationSettings | None = None,
        messages: ApplicationMessages | None = None,
    ) -> Application:
        """Create an application with a freshly generated API key."""
        if not name.strip():
            raise ValidationError("application name must not be empty")
        for _ in range(_API_KEY_ATTEMPTS):
            candidate = Application(
                owner_id=self._owner_id,
                name=name.strip(),
                description=description,
                api_key=self._new_api_key(),
                settings=settings or ApplicationSettings(),
                messages=messages or ApplicationMessages(),
            )
            try:
                application = await self._repo.applications.create(candidate)
            except DuplicateEntityError:
                logger.warning("API key collision while creating application, regenerating")
                continue
            logger.info("Created application %s for owner %s", application.id, self._owner_id)
            return application
        raise ValidationError("could not allocate a unique API key")

    async def update_application(self, application_id: str, **fields: Any) -> Application:
        if "api_key" in fields:
            raise ValidationError("api_key is immutable")
        _check_fields(fields, _APPLICATION_FIELDS, "application")
        await self.get_application(application_id)
        updated = await self._repo.applications.update(application_id, **fields)
        if updated is None:
            raise NotFoundError("application", application_id)
        return updated

    async def delete_application(self, application_id: str) -> None:
        """Delete the application together with every child it owns."""
        await self.get_application(application_id)
        await self._repo.applications.delete(application_id)
        logger.info("Deleted application %s", application_id)

    async def list_applications(self) -> list[Application]:
        return await self._repo.applications.list_by_owner(self._owner_id)

    # ------------------------------------------------------------------
    # License keys
    # ------------------------------------------------------------------

    async def create_license_key(
        self,
        application_id: str,
        *,
        key: str | None = None,
        max_users: int = 1,
        validity_days: int | None = None,
        description: str | None = None,
    ) -> LicenseKey:
        """Issue a license key; ``validity_days`` sets ``expires_at`` from now."""
        await self.get_application(application_id)
        if max_users < 1:
            raise ValidationError("max_users must be at least 1")
        expires_at = None
        if validity_days is not None:
            if validity_days <= 0:
                raise ValidationError("validity_days must be positive")
            expires_at = datetime.now(UTC) + timedelta(days=validity_days)
        try:
            return await self._repo.license_keys.create(
                LicenseKey(
                    application_id=application_id,
                    key=key or generate_license_key(),
                    description=description,
                    max_users=max_users,
                    expires_at=expires_at,
                )
            )
        except DuplicateEntityError as exc:
            raise ValidationError("license key already exists for this application") from exc

    async def update_license_key(self, license_key_id: str, **fields: Any) -> LicenseKey:
        if "current_users" in fields:
            raise ValidationError("current_users is managed by seat accounting")
        _check_fields(fields, _LICENSE_FIELDS, "license key")
        license_key = await self._license_key(license_key_id)
        if "max_users" in fields:
            max_users = fields["max_users"]
            if max_users < 1:
                raise ValidationError("max_users must be at least 1")
            if max_users < license_key.current_users:
                raise ValidationError(
                    f"max_users {max_users} is below the {license_key.current_users} seat(s) in use"
                )
        updated = await self._repo.license_keys.update(license_key_id, **fields)
        if updated is None:
            raise NotFoundError("license key", license_key_id)
        return updated

    async def delete_license_key(self, license_key_id: str) -> None:
        await self._license_key(license_key_id)
        await self._repo.license_keys.delete(license_key_id)

    async def list_license_keys(self, application_id: str) -> list[LicenseKey]:
        await self.get_application(application_id)
        return await self._repo.license_keys.list_by_application(application_id)

    # ------------------------------------------------------------------
    # App users
    # ------------------------------------------------------------------

    async def create_app_user(
        self,
        application_id: str,
        username: str,
        password: str,
        *,
        email: str | None = None,
        expires_at: datetime | None = None,
        hwid: str | None = None,
    ) -> AppUser:
        """Create a user directly; no license seat is consumed."""
        await self.get_application(application_id)
        self._check_password(password)
        password_hash = await self._verifier.hash(password)
        try:
            return await self._repo.app_users.create(
                AppUser(
                    application_id=application_id,
                    username=username,
                    email=email,
                    password_hash=password_hash,
                    expires_at=expires_at,
                    hwid=hwid,
                )
            )
        except DuplicateEntityError as exc:
            raise ValidationError(f"username {username!r} is already taken") from exc

    async def update_app_user(self, app_user_id: str, **fields: Any) -> AppUser:
        """Edit a user; a ``password`` field is re-hashed before storage."""
        _check_fields(fields, _USER_FIELDS, "user")
        await self.get_app_user(app_user_id)
        if "password" in fields:
            password = fields.pop("password")
            self._check_password(password)
            fields["password_hash"] = await self._verifier.hash(password)
        try:
            updated = await self._repo.app_users.update(app_user_id, **fields)
        except DuplicateEntityError as exc:
            raise ValidationError(f"username {fields.get('username')!r} is already taken") from exc
        if updated is None:
            raise NotFoundError("user", app_user_id)
        return updated

    async def pause_app_user(self, app_user_id: str) -> AppUser:
        return await self.update_app_user(app_user_id, is_paused=True)

    async def unpause_app_user(self, app_user_id: str) -> AppUser:
        return await self.update_app_user(app_user_id, is_paused=False)

    async def reset_hwid(self, app_user_id: str) -> AppUser:
        """Clear the bound hardware id; the next login binds a new one."""
        return await self.update_app_user(app_user_id, hwid=None)

    async def set_hwid(self, app_user_id: str, hwid: str) -> AppUser:
        return await self.update_app_user(app_user_id, hwid=hwid)

    async def delete_app_user(self, app_user_id: str) -> None:
        """Delete a user, closing its sessions and releasing its seat once."""
        user = await self.get_app_user(app_user_id)
        if not await self._repo.app_users.delete(app_user_id):
            raise NotFoundError("user", app_user_id)
        if user.license_key_id is not None:
            await self._repo.license_keys.atomic_decrement_usage(user.license_key_id)
        logger.info("Deleted user %s (license=%s)", app_user_id, user.license_key_id)

    async def list_app_users(self, application_id: str) -> list[AppUser]:
        await self.get_application(application_id)
        return await self._repo.app_users.list_by_application(application_id)

    # ------------------------------------------------------------------
    # Blacklist
    # ------------------------------------------------------------------

    async def add_blacklist_entry(
        self,
        application_id: str,
        type: BlacklistType | str,
        value: str,
        *,
        reason: str | None = None,
    ) -> BlacklistEntry:
        await self.get_application(application_id)
        try:
            kind = BlacklistType(type)
        except ValueError as exc:
            raise ValidationError(f"unknown blacklist type {type!r}") from exc
        if not value.strip():
            raise ValidationError("blacklist value must not be empty")
        return await self._repo.blacklist.create(
            BlacklistEntry(application_id=application_id, type=kind, value=value.strip(), reason=reason)
        )

    async def remove_blacklist_entry(self, entry_id: str) -> None:
        entry = await self._repo.blacklist.by_id(entry_id)
        if entry is None:
            raise NotFoundError("blacklist entry", entry_id)
        await self.get_application(entry.application_id)
        await self._repo.blacklist.delete(entry_id)

    async def list_blacklist(self, application_id: str) -> list[BlacklistEntry]:
        await self.get_application(application_id)
        return await self._repo.blacklist.list_by_application(application_id)

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def _check_webhook(self, url: str | None, events: list[str] | None) -> None:
        if url is not None:
            try:
                validate_webhook_url(url, allow_private=self._settings.webhook_allow_private_targets)
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
        if events is not None:
            if not events:
                raise ValidationError("a webhook must subscribe to at least one event")
            unknown = sorted(set(events) - set(ALL_EVENTS))
            if unknown:
                raise ValidationError(f"unknown event(s): {', '.join(unknown)}")

    async def create_webhook(
        self,
        application_id: str,
        name: str,
        url: str,
        events: list[str],
        *,
        secret: str | None = None,
        is_active: bool = True,
    ) -> Webhook:
        await self.get_application(application_id)
        self._check_webhook(url, events)
        return await self._repo.webhooks.create(
            Webhook(
                owner_id=self._owner_id,
                application_id=application_id,
                name=name,
                url=url,
                secret=secret or None,
                events=list(dict.fromkeys(events)),
                is_active=is_active,
            )
        )

    async def update_webhook(self, webhook_id: str, **fields: Any) -> Webhook:
        _check_fields(fields, _WEBHOOK_FIELDS, "webhook")
        await self._webhook(webhook_id)
        self._check_webhook(fields.get("url"), fields.get("events"))
        if "events" in fields:
            fields["events"] = list(dict.fromkeys(fields["events"]))
        updated = await self._repo.webhooks.update(webhook_id, **fields)
        if updated is None:
            raise NotFoundError("webhook", webhook_id)
        return updated

    async def delete_webhook(self, webhook_id: str) -> None:
        await self._webhook(webhook_id)
        await self._repo.webhooks.delete(webhook_id)

    async def list_webhooks(self, application_id: str) -> list[Webhook]:
        await self.get_application(application_id)
        return await self._repo.webhooks.list_by_application(application_id)

    # ------------------------------------------------------------------
    # Sessions and activity
    # ------------------------------------------------------------------

    async def list_sessions(self, application_id: str) -> list[ActiveSession]:
        await self.get_application(application_id)
        return await self._repo.sessions.list_by_application(application_id)

    async def terminate_session(self, application_id: str, session_token: str) -> None:
        """Force-close one session of *application_id*."""
        await self.get_application(application_id)
        session = await self._repo.sessions.by_token(session_token)
        if session is None or session.application_id != application_id:
            raise NotFoundError("session", session_token[:8] + "...")
        await self._repo.sessions.close(session_token)

    async def list_activity(self, application_id: str, limit: int | None = None) -> list[ActivityLog]:
        """Return the newest activity entries, newest first; *limit* is capped."""
        await self.get_application(application_id)
        return await self._repo.activity.list_by_application(application_id, self._limit(limit))

    async def list_user_activity(self, app_user_id: str, limit: int | None = None) -> list[ActivityLog]:
        await self.get_app_user(app_user_id)
        return await self._repo.activity.list_for_user(app_user_id, self._limit(limit))

    def _limit(self, limit: int | None) -> int:
        if limit is None:
            return self._settings.activity_log_default_limit
        return max(1, min(limit, self._settings.activity_log_max_limit))
