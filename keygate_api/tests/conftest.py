"""Shared fixtures for the Keygate API tests.

Every test runs the real application against an in-memory SQLite
database; the session, verifier and dispatcher dependencies are
overridden so that no lifespan, network or production bcrypt cost is
involved.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Any

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from keygate_core.admin.service import TenantAdminService
from keygate_core.audit.dispatcher import NotificationDispatcher
from keygate_core.config import CoreSettings
from keygate_core.models.entities import Application, ApplicationSettings, LicenseKey
from keygate_core.security.passwords import BcryptVerifier
from keygate_core.state import SqlRepository, create_tables, get_engine, get_session, get_session_factory
from sqlalchemy.ext.asyncio import AsyncEngine

from keygate_api.dependencies import (
    NotificationsDep,
    get_core_settings,
    get_db_session,
    get_dispatcher,
    get_verifier,
    unit_of_work,
)
from keygate_api.main import create_app

OWNER = "tenant-1"


@pytest.fixture()
def core_settings() -> CoreSettings:
    return CoreSettings(_env_file=None, bcrypt_rounds=4, session_ttl_seconds=3600)


@pytest.fixture()
def verifier() -> BcryptVerifier:
    return BcryptVerifier(rounds=4)


@pytest_asyncio.fixture()
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = get_engine("sqlite+aiosqlite:///:memory:")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
def webhook_requests() -> list[httpx.Request]:
    """Requests received by the mocked webhook endpoint."""
    return []


@pytest_asyncio.fixture()
async def dispatcher(core_settings, webhook_requests) -> AsyncGenerator[NotificationDispatcher, None]:
    def handler(request: httpx.Request) -> httpx.Response:
        webhook_requests.append(request)
        return httpx.Response(204)

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    dispatcher = NotificationDispatcher(http_client=http_client, settings=core_settings)
    yield dispatcher
    await dispatcher.close()
    await http_client.aclose()


@pytest.fixture()
def app(engine, core_settings, verifier, dispatcher):
    """Create the FastAPI app with dependency overrides for testing."""
    application = create_app()

    async def _override_session(notifications: NotificationsDep):
        async with unit_of_work(get_session_factory(engine), notifications) as session:
            yield session

    application.dependency_overrides[get_db_session] = _override_session
    application.dependency_overrides[get_core_settings] = lambda: core_settings
    application.dependency_overrides[get_verifier] = lambda: verifier
    application.dependency_overrides[get_dispatcher] = lambda: dispatcher
    return application


@pytest_asyncio.fixture()
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------


@pytest.fixture()
def seed(engine, verifier, core_settings):
    """Run an admin action in its own committed transaction and return its result."""

    async def _seed(action_name: str, *args: Any, **kwargs: Any) -> Any:
        async with get_session(engine) as session:
            admin = TenantAdminService(SqlRepository(session), verifier, core_settings, owner_id=OWNER)
            return await getattr(admin, action_name)(*args, **kwargs)

    return _seed


@pytest_asyncio.fixture()
async def application(seed) -> Application:
    return await seed("create_application", "Launcher")


@pytest_asyncio.fixture()
async def license_key(seed, application) -> LicenseKey:
    return await seed("create_license_key", application.id, key="SEAT-0001", max_users=1)


@pytest_asyncio.fixture()
async def open_application(seed) -> Application:
    """An application that does not require license keys."""
    return await seed("create_application", "Open", settings=ApplicationSettings(require_license=False))
