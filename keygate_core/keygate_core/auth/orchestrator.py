"""Authentication orchestrator: the public login / register pipeline.

Each call is an independent unit of work against the injected repository.
Expected denials come back as :class:`LoginOutcome` / :class:`RegisterOutcome`
values carrying a structured :class:`DenialReason` plus the tenant's display
message.  Anything unexpected is logged and re-raised as
:class:`InfrastructureError` after compensating actions have released any
seat consumed or session opened by the request.

Login::

    ResolveApplication -> PolicyPreCheck -> VerifyPassword
        -> BindHwid -> OpenSession -> Audit/Notify

Register::

    ResolveApplication -> BlacklistCheck -> UsernameUniqueCheck
        -> LicenseValidateAndConsume -> CreateAppUser -> Audit/Notify
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from keygate_core.audit.dispatcher import NotificationBatch, NotificationDispatcher
from keygate_core.audit.events import ActivityEvent, login_denial_event
from keygate_core.audit.recorder import ActivityRecorder
from keygate_core.config import CoreSettings
from keygate_core.errors import InfrastructureError
from keygate_core.license.license_manager import LicenseManager
from keygate_core.models.entities import Application, ApplicationMessages, AppUser
from keygate_core.models.outcomes import (
    LICENSE_REASONS,
    ClientContext,
    DenialReason,
    LoginOutcome,
    RegisterOutcome,
)
from keygate_core.policy.access_policy import AccessPolicyEngine
from keygate_core.security.passwords import CredentialVerifier
from keygate_core.sessions.tracker import SessionTracker
from keygate_core.state.protocols import DuplicateEntityError, Repository

logger = logging.getLogger(__name__)

INVALID_APPLICATION_MESSAGE = "Invalid or inactive application."


def message_for(messages: ApplicationMessages, reason: DenialReason) -> str:
    """Map a structured denial reason to the tenant's display text."""
    if reason in LICENSE_REASONS:
        return messages.license_invalid
    if reason in (DenialReason.BLACKLISTED, DenialReason.ACCOUNT_DISABLED):
        return messages.user_banned
    if reason == DenialReason.ACCOUNT_PAUSED:
        return messages.account_paused
    if reason == DenialReason.ACCOUNT_EXPIRED:
        return messages.user_expired
    if reason == DenialReason.VERSION_MISMATCH:
        return messages.version_outdated
    if reason == DenialReason.HWID_MISMATCH:
        return messages.hwid_mismatch
    if reason == DenialReason.USERNAME_TAKEN:
        return messages.username_taken
    if reason == DenialReason.INVALID_APPLICATION:
        return INVALID_APPLICATION_MESSAGE
    return messages.login_failed


class AuthOrchestrator:
    """Compose policy, licensing, credentials, sessions and audit.

    Parameters
    ----------
    repository:
        The single source of truth for every entity.
    verifier:
        Password hashing backend.
    dispatcher:
        Webhook dispatcher, or a per-request :class:`NotificationBatch`
        that sends once the caller commits.  Notifications are skipped
        when ``None``.
    settings:
        Core settings (session TTL, token size).
    """

    def __init__(
        self,
        repository: Repository,
        verifier: CredentialVerifier,
        dispatcher: NotificationDispatcher | NotificationBatch | None = None,
        settings: CoreSettings | None = None,
    ) -> None:
        self._repo = repository
        self._verifier = verifier
        self._dispatcher = dispatcher
        self._settings = settings or CoreSettings()
        self.policy = AccessPolicyEngine(repository)
        self.licenses = LicenseManager(repository)
        self.sessions = SessionTracker(repository, self._settings, dispatcher)
        self.recorder = ActivityRecorder(repository)

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    async def _resolve(self, api_key: str) -> Application | None:
        application = await self._repo.applications.by_api_key(api_key)
        if application is None or not application.is_active:
            logger.info("Rejected request for unknown or inactive application")
            return None
        return application

    async def _audit(
        self,
        application: Application,
        event: ActivityEvent,
        *,
        user: AppUser | None = None,
        username: str | None = None,
        context: ClientContext,
        success: bool,
        error_message: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        await self.recorder.record(
            application.id,
            event.value,
            user=user,
            username=username,
            context=context,
            success=success,
            error_message=error_message,
            metadata=metadata,
        )
        if self._dispatcher is not None:
            await self._dispatcher.notify(
                self._repo,
                application,
                event.value,
                user=user,
                username=username,
                context=context,
                success=success,
                error_message=error_message,
                metadata=metadata,
            )

    @staticmethod
    async def _compensate(action: Callable[[], Awaitable[Any]], what: str) -> None:
        try:
            await action()
        except Exception:
            logger.error("Compensating action failed: %s", what, exc_info=True)

    async def _guard(self, operation: str, call: Awaitable[Any]) -> Any:
        """Await *call*, turning unexpected faults into ``InfrastructureError``."""
        try:
            return await call
        except InfrastructureError:
            raise
        except Exception as exc:
            logger.error("%s aborted by infrastructure failure", operation, exc_info=True)
            raise InfrastructureError(f"{operation} failed; try again") from exc

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    async def login(
        self,
        api_key: str,
        username: str,
        password: str,
        context: ClientContext | None = None,
    ) -> LoginOutcome:
        """Authenticate *username* and open a session on success."""
        return await self._guard("login", self._login(api_key, username, password, context or ClientContext()))

    async def _login_denied(
        self,
        application: Application,
        reason: DenialReason,
        *,
        context: ClientContext,
        user: AppUser | None = None,
        username: str | None = None,
        event: ActivityEvent | None = None,
    ) -> LoginOutcome:
        message = message_for(application.messages, reason)
        logger.info("Login denied app=%s reason=%s", application.id, reason.value)
        await self._audit(
            application,
            event or login_denial_event(reason),
            user=user,
            username=username,
            context=context,
            success=False,
            error_message=message,
            metadata={"reason": reason.value},
        )
        return LoginOutcome(success=False, message=message, reason=reason)

    async def _login(self, api_key: str, username: str, password: str, context: ClientContext) -> LoginOutcome:
        application = await self._resolve(api_key)
        if application is None:
            return LoginOutcome(
                success=False,
                message=INVALID_APPLICATION_MESSAGE,
                reason=DenialReason.INVALID_APPLICATION,
            )

        user = await self._repo.app_users.by_username(application.id, username)
        if user is None:
            if await self.policy.check_blacklist(
                application.id,
                username=username,
                ip_address=context.ip_address,
                hwid=context.hwid,
            ):
                return await self._login_denied(
                    application, DenialReason.BLACKLISTED, context=context, username=username
                )
            await self._verifier.dummy_verify(password)
            logger.info("Login for unknown username in app=%s", application.id)
            return await self._login_denied(
                application,
                DenialReason.INVALID_CREDENTIALS,
                context=context,
                username=username,
            )

        verdict = await self.policy.evaluate(application, user, context)
        if not verdict.allowed:
            assert verdict.reason is not None
            return await self._login_denied(application, verdict.reason, context=context, user=user)

        if not await self._verifier.verify(password, user.password_hash):
            await self._repo.app_users.increment_login_attempts(user.id)
            return await self._login_denied(
                application,
                DenialReason.INVALID_CREDENTIALS,
                context=context,
                user=user,
            )

        if verdict.bind_hwid is not None:
            binding = await self.policy.commit_hwid_binding(user, verdict.bind_hwid)
            if not binding.allowed:
                return await self._login_denied(application, DenialReason.HWID_MISMATCH, context=context, user=user)
            user = user.model_copy(update={"hwid": verdict.bind_hwid})

        session = await self.sessions.open(application.id, user.id, context)
        try:
            now = datetime.now(UTC)
            await self._repo.app_users.record_login(user.id, now)
            user = user.model_copy(update={"last_login": now, "login_attempts": 0})
            await self._audit(
                application,
                ActivityEvent.USER_LOGIN,
                user=user,
                context=context,
                success=True,
                metadata={"session_id": session.id},
            )
        except BaseException:
            await self._compensate(lambda: self.sessions.close(session.session_token), "close session")
            raise

        logger.info("Login succeeded app=%s user=%s", application.id, user.id)
        return LoginOutcome(
            success=True,
            message=application.messages.login_success,
            session=session,
            user=user,
        )

    # ------------------------------------------------------------------
    # Register
    # ------------------------------------------------------------------

    async def register(
        self,
        api_key: str,
        username: str,
        password: str,
        license_key: str | None = None,
        context: ClientContext | None = None,
        *,
        email: str | None = None,
    ) -> RegisterOutcome:
        """Create an end user, consuming a license seat when required."""
        return await self._guard(
            "register",
            self._register(api_key, username, password, license_key, context or ClientContext(), email),
        )

    async def _register_denied(
        self,
        application: Application,
        reason: DenialReason,
        *,
        username: str,
        context: ClientContext,
    ) -> RegisterOutcome:
        message = message_for(application.messages, reason)
        logger.info("Registration denied app=%s reason=%s", application.id, reason.value)
        await self._audit(
            application,
            ActivityEvent.REGISTER_FAILED,
            username=username,
            context=context,
            success=False,
            error_message=message,
            metadata={"reason": reason.value},
        )
        return RegisterOutcome(success=False, message=message, reason=reason)

    async def _register(
        self,
        api_key: str,
        username: str,
        password: str,
        license_key: str | None,
        context: ClientContext,
        email: str | None,
    ) -> RegisterOutcome:
        application = await self._resolve(api_key)
        if application is None:
            return RegisterOutcome(
                success=False,
                message=INVALID_APPLICATION_MESSAGE,
                reason=DenialReason.INVALID_APPLICATION,
            )

        if await self.policy.check_blacklist(
            application.id,
            username=username,
            email=email,
            ip_address=context.ip_address,
            hwid=context.hwid,
        ):
            return await self._register_denied(
                application, DenialReason.BLACKLISTED, username=username, context=context
            )

        if await self._repo.app_users.by_username(application.id, username) is not None:
            return await self._register_denied(
                application, DenialReason.USERNAME_TAKEN, username=username, context=context
            )

        license_record = None
        if license_key or application.settings.require_license:
            if not license_key:
                return await self._register_denied(
                    application, DenialReason.LICENSE_NOT_FOUND, username=username, context=context
                )
            check = await self.licenses.validate(license_key, application.id)
            if not check.ok:
                assert check.reason is not None
                return await self._register_denied(application, check.reason, username=username, context=context)
            license_record = check.license
            assert license_record is not None
            if not await self.licenses.consume_seat(license_record.id):
                return await self._register_denied(
                    application, DenialReason.SEATS_EXHAUSTED, username=username, context=context
                )

        user: AppUser | None = None
        try:
            password_hash = await self._verifier.hash(password)
            try:
                user = await self._repo.app_users.create(
                    AppUser(
                        application_id=application.id,
                        username=username,
                        email=email,
                        password_hash=password_hash,
                        hwid=context.hwid,
                        expires_at=license_record.expires_at if license_record is not None else None,
                        license_key_id=license_record.id if license_record is not None else None,
                    )
                )
            except DuplicateEntityError:
                # Lost a concurrent race for the same username.
                if license_record is not None:
                    seat = license_record.id
                    await self._compensate(lambda: self.licenses.release_seat(seat), "release seat")
                    license_record = None
                return await self._register_denied(
                    application, DenialReason.USERNAME_TAKEN, username=username, context=context
                )

            await self._audit(
                application,
                ActivityEvent.USER_REGISTER,
                user=user,
                context=context,
                success=True,
                metadata={"license_key_id": license_record.id} if license_record is not None else None,
            )
        except BaseException:
            if user is not None:
                created = user.id
                await self._compensate(lambda: self._repo.app_users.delete(created), "delete user")
            if license_record is not None:
                seat = license_record.id
                await self._compensate(lambda: self.licenses.release_seat(seat), "release seat")
            raise

        logger.info("Registration succeeded app=%s user=%s", application.id, user.id)
        return RegisterOutcome(
            success=True,
            message=application.messages.register_success,
            user=user,
            license_key_id=license_record.id if license_record is not None else None,
        )

    # ------------------------------------------------------------------
    # Session maintenance
    # ------------------------------------------------------------------

    async def heartbeat(self, api_key: str, token: str) -> bool:
        """Refresh a session; ``False`` for unknown, foreign or expired tokens."""
        return await self._guard("heartbeat", self._heartbeat(api_key, token))

    async def _heartbeat(self, api_key: str, token: str) -> bool:
        application = await self._resolve(api_key)
        if application is None:
            return False
        session = await self._repo.sessions.by_token(token)
        if session is None or session.application_id != application.id:
            return False
        if session.expires_at is not None and session.expires_at <= datetime.now(UTC):
            return False
        return await self.sessions.heartbeat(token)

    async def logout(self, api_key: str, token: str, context: ClientContext | None = None) -> bool:
        """Close a session and record ``user_logout``."""
        return await self._guard("logout", self._logout(api_key, token, context or ClientContext()))

    async def _logout(self, api_key: str, token: str, context: ClientContext) -> bool:
        application = await self._resolve(api_key)
        if application is None:
            return False
        session = await self._repo.sessions.by_token(token)
        if session is None or session.application_id != application.id:
            return False
        if not await self.sessions.close(token):
            return False
        user = await self._repo.app_users.by_id(session.app_user_id)
        await self._audit(
            application,
            ActivityEvent.USER_LOGOUT,
            user=user,
            context=context,
            success=True,
            metadata={"session_id": session.id},
        )
        return True
