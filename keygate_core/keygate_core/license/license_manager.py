"""License key validation and seat accounting.

``validate`` is a read-only pre-check that yields a deterministic denial
reason; ``consume_seat`` is the authoritative, race-safe gate.  A caller
that passed ``validate`` can still lose the seat to a concurrent
registration, in which case ``consume_seat`` returns ``False`` and the
registration fails with ``SEATS_EXHAUSTED``.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from keygate_core.models.outcomes import DenialReason, LicenseCheck
from keygate_core.state.protocols import Repository

logger = logging.getLogger(__name__)


class LicenseManager:
    """Validate license keys against an application and track seat usage."""

    def __init__(self, repository: Repository) -> None:
        self._repo = repository

    async def validate(self, key: str, application_id: str, *, now: datetime | None = None) -> LicenseCheck:
        """Check *key* for use by *application_id*.

        Checks run in a fixed order: existence, application match,
        activation, expiry and finally seat availability.
        """
        now = now or datetime.now(UTC)
        license_key = await self._repo.license_keys.by_key(key, application_id)
        if license_key is None:
            # Keys are unique per application only; a key issued elsewhere
            # is reported as such rather than as missing.
            if await self._repo.license_keys.by_key(key) is not None:
                return LicenseCheck(reason=DenialReason.LICENSE_WRONG_APPLICATION)
            return LicenseCheck(reason=DenialReason.LICENSE_NOT_FOUND)
        if not license_key.is_active:
            return LicenseCheck(reason=DenialReason.LICENSE_INACTIVE)
        if license_key.expires_at is not None and now > license_key.expires_at:
            return LicenseCheck(reason=DenialReason.LICENSE_EXPIRED)
        if license_key.current_users >= license_key.max_users:
            return LicenseCheck(reason=DenialReason.SEATS_EXHAUSTED)
        return LicenseCheck(license=license_key)

    async def consume_seat(self, license_key_id: str) -> bool:
        """Atomically take one seat; ``False`` when none is free."""
        consumed = await self._repo.license_keys.atomic_increment_usage(license_key_id)
        if not consumed:
            logger.info("Seat not consumed for license %s: no seat available", license_key_id)
        return consumed

    async def release_seat(self, license_key_id: str) -> bool:
        """Atomically give one seat back, never going below zero."""
        released = await self._repo.license_keys.atomic_decrement_usage(license_key_id)
        if not released:
            logger.warning("Seat release for license %s was a no-op", license_key_id)
        return released
