"""Shared fixtures for the Keygate core tests.

Everything runs against :class:`MemoryRepository` unless a test module
builds its own SQLite-backed session.  bcrypt runs at the minimum cost
factor to keep the suite fast.
"""

from __future__ import annotations

import itertools
from collections.abc import Awaitable, Callable
from typing import Any

import pytest
import pytest_asyncio
from keygate_core.config import CoreSettings
from keygate_core.models.entities import Application, ApplicationSettings, AppUser, LicenseKey
from keygate_core.security.passwords import BcryptVerifier
from keygate_core.state.memory import MemoryRepository

API_KEY = "kg_test_application_key"


@pytest.fixture
def settings() -> CoreSettings:
    return CoreSettings(bcrypt_rounds=4, session_ttl_seconds=None)


@pytest.fixture
def repo() -> MemoryRepository:
    return MemoryRepository()


@pytest.fixture
def verifier() -> BcryptVerifier:
    return BcryptVerifier(rounds=4)


@pytest_asyncio.fixture
async def application(repo: MemoryRepository) -> Application:
    """An active application with default settings (license required)."""
    return await repo.applications.create(Application(owner_id="owner-1", name="Test App", api_key=API_KEY))


@pytest.fixture
def make_application(repo: MemoryRepository) -> Callable[..., Awaitable[Application]]:
    """Factory for applications whose settings override the defaults."""
    counter = itertools.count(1)

    async def _make(**settings: Any) -> Application:
        return await repo.applications.create(
            Application(
                owner_id="owner-1",
                name="Configured App",
                api_key=f"kg_configured_{next(counter)}",
                settings=ApplicationSettings(**settings),
            )
        )

    return _make


@pytest.fixture
def make_license(repo: MemoryRepository) -> Callable[..., Awaitable[LicenseKey]]:
    async def _make(application: Application, **fields: Any) -> LicenseKey:
        fields.setdefault("key", "LICENSE-0001")
        return await repo.license_keys.create(LicenseKey(application_id=application.id, **fields))

    return _make


@pytest.fixture
def make_user(repo: MemoryRepository, verifier: BcryptVerifier) -> Callable[..., Awaitable[AppUser]]:
    async def _make(
        application: Application,
        username: str = "dave",
        password: str = "hunter22",
        **fields: Any,
    ) -> AppUser:
        return await repo.app_users.create(
            AppUser(
                application_id=application.id,
                username=username,
                password_hash=await verifier.hash(password),
                **fields,
            )
        )

    return _make
