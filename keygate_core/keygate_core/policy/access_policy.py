"""Access policy evaluation for login and registration attempts.

The checks run in a fixed, short-circuiting order so the first failing
check determines the single denial reason:

1. Blacklist (ip, username, email, hwid)
2. Account state (disabled, then paused)
3. Account expiry
4. Client version
5. Hardware id binding

First-use hardware binding is *not* written by :meth:`AccessPolicyEngine.evaluate`.
It returns the hwid to bind and the caller commits it with
:meth:`AccessPolicyEngine.commit_hwid_binding` after the password has been
verified, so a wrong password can never claim a device slot.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from keygate_core.models.entities import Application, AppUser, BlacklistType
from keygate_core.models.outcomes import ClientContext, DenialReason, PolicyResult
from keygate_core.state.protocols import Repository

logger = logging.getLogger(__name__)


class AccessPolicyEngine:
    """Evaluate an application's access policy against a candidate user."""

    def __init__(self, repository: Repository) -> None:
        self._repo = repository

    async def check_blacklist(
        self,
        application_id: str,
        *,
        username: str | None = None,
        email: str | None = None,
        ip_address: str | None = None,
        hwid: str | None = None,
    ) -> bool:
        """Return ``True`` when any supplied attribute is blacklisted."""
        candidates = (
            (BlacklistType.IP, ip_address),
            (BlacklistType.USERNAME, username),
            (BlacklistType.EMAIL, email),
            (BlacklistType.HWID, hwid),
        )
        for kind, value in candidates:
            if not value:
                continue
            if await self._repo.blacklist.matches(application_id, kind, value):
                logger.info("Blacklist hit app=%s type=%s", application_id, kind.value)
                return True
        return False

    async def evaluate(
        self,
        application: Application,
        user: AppUser,
        context: ClientContext,
        *,
        now: datetime | None = None,
    ) -> PolicyResult:
        """Run the policy pipeline for *user* logging into *application*."""
        now = now or datetime.now(UTC)
        settings = application.settings

        if await self.check_blacklist(
            application.id,
            username=user.username,
            email=user.email,
            ip_address=context.ip_address,
            hwid=context.hwid,
        ):
            return PolicyResult.deny(DenialReason.BLACKLISTED)

        if not user.is_active:
            return PolicyResult.deny(DenialReason.ACCOUNT_DISABLED)
        if user.is_paused:
            return PolicyResult.deny(DenialReason.ACCOUNT_PAUSED)

        if user.expires_at is not None and user.expires_at < now:
            return PolicyResult.deny(DenialReason.ACCOUNT_EXPIRED)

        if settings.require_version and context.version != settings.allowed_version:
            return PolicyResult.deny(DenialReason.VERSION_MISMATCH)

        if settings.require_hwid:
            if not context.hwid:
                return PolicyResult.deny(DenialReason.HWID_MISMATCH)
            if user.hwid is None:
                return PolicyResult.allow(bind_hwid=context.hwid)
            if user.hwid != context.hwid:
                return PolicyResult.deny(DenialReason.HWID_MISMATCH)

        return PolicyResult.allow()

    async def commit_hwid_binding(self, user: AppUser, hwid: str) -> PolicyResult:
        """Bind *hwid* to *user* if it is still unbound.

        When a concurrent login won the race, the request is allowed only
        if the winner bound the same hardware id.
        """
        if await self._repo.app_users.bind_hwid_if_unset(user.id, hwid):
            logger.info("Bound hwid for user=%s app=%s", user.id, user.application_id)
            return PolicyResult.allow()

        current = await self._repo.app_users.by_id(user.id)
        if current is not None and current.hwid == hwid:
            return PolicyResult.allow()
        logger.info("Lost hwid binding race for user=%s", user.id)
        return PolicyResult.deny(DenialReason.HWID_MISMATCH)
