"""Session lifecycle: open, heartbeat, close and expiry sweep."""

from __future__ import annotations

import logging
import secrets
from datetime import UTC, datetime, timedelta

from keygate_core.audit.dispatcher import NotificationBatch, NotificationDispatcher
from keygate_core.audit.events import ActivityEvent
from keygate_core.audit.recorder import ActivityRecorder
from keygate_core.config import CoreSettings
from keygate_core.errors import InfrastructureError
from keygate_core.models.entities import ActiveSession, Application
from keygate_core.models.outcomes import ClientContext
from keygate_core.state.protocols import DuplicateEntityError, Repository

logger = logging.getLogger(__name__)


class SessionTracker:
    """Create, refresh and terminate per-login session records.

    Tokens come from :func:`secrets.token_urlsafe`.  Uniqueness is
    enforced by the repository at insert time; on the (negligible) chance
    of a collision a fresh token is generated.
    """

    def __init__(
        self,
        repository: Repository,
        settings: CoreSettings | None = None,
        dispatcher: NotificationDispatcher | NotificationBatch | None = None,
    ) -> None:
        self._repo = repository
        self._settings = settings or CoreSettings()
        self._dispatcher = dispatcher

    def _new_token(self) -> str:
        return secrets.token_urlsafe(self._settings.session_token_bytes)

    async def open(self, application_id: str, app_user_id: str, context: ClientContext) -> ActiveSession:
        now = datetime.now(UTC)
        expires_at = None
        if self._settings.session_ttl_seconds is not None:
            expires_at = now + timedelta(seconds=self._settings.session_ttl_seconds)

        for attempt in range(1, self._settings.session_token_attempts + 1):
            session = ActiveSession(
                application_id=application_id,
                app_user_id=app_user_id,
                session_token=self._new_token(),
                ip_address=context.ip_address,
                user_agent=context.user_agent,
                location=context.location,
                created_at=now,
                last_activity=now,
                expires_at=expires_at,
            )
            try:
                return await self._repo.sessions.create(session)
            except DuplicateEntityError:
                logger.warning("Session token collision, regenerating (attempt %d)", attempt)
        raise InfrastructureError(
            f"could not allocate a unique session token after {self._settings.session_token_attempts} attempts"
        )

    async def heartbeat(self, token: str) -> bool:
        """Refresh ``last_activity``; ``False`` for an unknown token."""
        return await self._repo.sessions.touch(token, datetime.now(UTC))

    async def close(self, token: str) -> bool:
        return await self._repo.sessions.close(token)

    async def list_for_application(self, application_id: str) -> list[ActiveSession]:
        return await self._repo.sessions.list_by_application(application_id)

    async def sweep_expired(self, now: datetime | None = None) -> int:
        """Close every session past its ``expires_at``.

        Records a ``session_expired`` activity for each closed session,
        notifies subscribed webhooks when a dispatcher is configured, and
        returns how many were closed.
        """
        now = now or datetime.now(UTC)
        recorder = ActivityRecorder(self._repo)
        applications: dict[str, Application | None] = {}
        closed = 0
        for session in await self._repo.sessions.list_expired(now):
            if not await self._repo.sessions.close(session.session_token):
                continue
            closed += 1
            user = await self._repo.app_users.by_id(session.app_user_id)
            context = ClientContext(
                ip_address=session.ip_address,
                user_agent=session.user_agent,
                location=session.location,
            )
            metadata = {"session_id": session.id}
            await recorder.record(
                session.application_id,
                ActivityEvent.SESSION_EXPIRED.value,
                user=user,
                context=context,
                metadata=metadata,
            )
            if self._dispatcher is None:
                continue
            if session.application_id not in applications:
                applications[session.application_id] = await self._repo.applications.by_id(session.application_id)
            application = applications[session.application_id]
            if application is not None:
                await self._dispatcher.notify(
                    self._repo,
                    application,
                    ActivityEvent.SESSION_EXPIRED.value,
                    user=user,
                    context=context,
                    metadata=metadata,
                )
        if closed:
            logger.info("Expired %d session(s)", closed)
        return closed
