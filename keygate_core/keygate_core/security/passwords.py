"""Password hashing behind a small pluggable interface.

The default :class:`BcryptVerifier` runs bcrypt on a worker thread so the
event loop is never blocked by the deliberately slow hash.  Passwords are
pre-hashed with SHA-256 so inputs longer than bcrypt's 72-byte limit are
neither truncated nor rejected.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
from typing import Protocol, runtime_checkable

import bcrypt

logger = logging.getLogger(__name__)


@runtime_checkable
class CredentialVerifier(Protocol):
    """Hash and verify end-user passwords."""

    async def hash(self, password: str) -> str: ...

    async def verify(self, password: str, password_hash: str) -> bool: ...

    async def dummy_verify(self, password: str) -> None:
        """Spend roughly one ``verify`` worth of time without a real hash."""
        ...


def _prepare_password(password: str) -> bytes:
    """Pre-hash with SHA-256 so bcrypt always sees a fixed 44-byte input."""
    return base64.b64encode(hashlib.sha256(password.encode("utf-8")).digest())


class BcryptVerifier:
    """bcrypt-backed :class:`CredentialVerifier`.

    Parameters
    ----------
    rounds:
        bcrypt cost factor (log2 of the iteration count).
    """

    def __init__(self, rounds: int = 12) -> None:
        self._rounds = rounds
        self._dummy_hash: bytes | None = None

    def _hash_sync(self, password: str) -> str:
        return bcrypt.hashpw(_prepare_password(password), bcrypt.gensalt(rounds=self._rounds)).decode("utf-8")

    @staticmethod
    def _verify_sync(password: str, password_hash: str) -> bool:
        try:
            return bcrypt.checkpw(_prepare_password(password), password_hash.encode("utf-8"))
        except ValueError:
            # Malformed or non-bcrypt hash stored for this user.
            logger.warning("Stored password hash is not a valid bcrypt hash")
            return False

    async def hash(self, password: str) -> str:
        return await asyncio.to_thread(self._hash_sync, password)

    async def verify(self, password: str, password_hash: str) -> bool:
        return await asyncio.to_thread(self._verify_sync, password, password_hash)

    async def dummy_verify(self, password: str) -> None:
        """Compare against a throwaway hash to mask unknown-username timing."""
        if self._dummy_hash is None:
            self._dummy_hash = (await self.hash("dummy-password-for-timing")).encode("utf-8")
        dummy = self._dummy_hash.decode("utf-8")
        await asyncio.to_thread(self._verify_sync, password, dummy)
