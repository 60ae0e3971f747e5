"""Best-effort activity log writer."""

from __future__ import annotations

import logging
from typing import Any

from keygate_core.models.entities import ActivityLog, AppUser
from keygate_core.models.outcomes import ClientContext
from keygate_core.state.protocols import Repository

logger = logging.getLogger(__name__)


class ActivityRecorder:
    """Append activity entries without ever failing the caller.

    A storage failure is logged at WARNING and ``None`` is returned, so an
    otherwise-successful login or registration is never turned into an
    error by its audit trail.
    """

    def __init__(self, repository: Repository) -> None:
        self._repo = repository

    async def record(
        self,
        application_id: str,
        event: str,
        *,
        user: AppUser | None = None,
        username: str | None = None,
        context: ClientContext | None = None,
        success: bool = True,
        error_message: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ActivityLog | None:
        context = context or ClientContext()
        entry = ActivityLog(
            application_id=application_id,
            app_user_id=user.id if user is not None else None,
            username=user.username if user is not None else username,
            event=event,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            location=context.location,
            hwid=context.hwid,
            metadata=metadata,
            success=success,
            error_message=error_message,
        )
        try:
            return await self._repo.activity.append(entry)
        except Exception:
            logger.warning(
                "Failed to record activity app=%s event=%s",
                application_id,
                event,
                exc_info=True,
            )
            return None
