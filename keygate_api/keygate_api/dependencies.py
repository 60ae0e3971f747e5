"""FastAPI dependency injection for database sessions, settings and the core services."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends
from keygate_core.audit.dispatcher import NotificationBatch, NotificationDispatcher
from keygate_core.auth.orchestrator import AuthOrchestrator
from keygate_core.config import CoreSettings, load_settings
from keygate_core.security.passwords import BcryptVerifier, CredentialVerifier
from keygate_core.state import SqlRepository, get_engine
from keygate_core.state import get_session_factory as _core_session_factory
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from keygate_api.config import APISettings, load_api_settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None
_core_settings_cache: CoreSettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


def get_core_settings() -> CoreSettings:
    """Return the cached :class:`CoreSettings` singleton."""
    global _core_settings_cache  # noqa: PLW0603
    if _core_settings_cache is None:
        _core_settings_cache = load_settings()
    return _core_settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]
CoreSettingsDep = Annotated[CoreSettings, Depends(get_core_settings)]

# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

_dispatcher: NotificationDispatcher | None = None


def init_dispatcher(settings: CoreSettings) -> NotificationDispatcher:
    """Create the process-wide webhook dispatcher (owns its HTTP client)."""
    global _dispatcher  # noqa: PLW0603
    _dispatcher = NotificationDispatcher(settings=settings)
    return _dispatcher


async def dispose_dispatcher() -> None:
    """Wait for in-flight deliveries, then close the HTTP client."""
    global _dispatcher  # noqa: PLW0603
    if _dispatcher is not None:
        await _dispatcher.close()
        _dispatcher = None


def get_dispatcher() -> NotificationDispatcher | None:
    """Return the dispatcher, or ``None`` when notifications are not wired."""
    return _dispatcher


def get_notifications(
    dispatcher: Annotated[NotificationDispatcher | None, Depends(get_dispatcher)],
) -> NotificationBatch | None:
    """Per-request notification buffer, flushed by :func:`get_db_session`."""
    if dispatcher is None:
        return None
    return NotificationBatch(dispatcher)


NotificationsDep = Annotated[NotificationBatch | None, Depends(get_notifications)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _session_factory = _core_session_factory(_engine)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


@asynccontextmanager
async def unit_of_work(
    factory: async_sessionmaker[AsyncSession],
    notifications: NotificationBatch | None,
) -> AsyncIterator[AsyncSession]:
    """Yield a session that commits on clean exit, then sends notifications.

    One session is one request's unit of work: denials commit their
    activity rows, while an exception rolls back every write the request
    made, including any seat it consumed.  Webhooks collected during the
    request go out only after the commit succeeds and are dropped on
    rollback.
    """
    session = factory()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        if notifications is not None:
            notifications.discard()
        raise
    finally:
        await session.close()
    if notifications is not None:
        notifications.flush()


async def get_db_session(notifications: NotificationsDep) -> AsyncGenerator[AsyncSession, None]:
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    async with unit_of_work(_session_factory, notifications) as session:
        yield session


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Core services
# ---------------------------------------------------------------------------

_verifier: BcryptVerifier | None = None


def get_verifier(core_settings: CoreSettingsDep) -> CredentialVerifier:
    global _verifier  # noqa: PLW0603
    if _verifier is None:
        _verifier = BcryptVerifier(rounds=core_settings.bcrypt_rounds)
    return _verifier


def get_orchestrator(
    session: SessionDep,
    core_settings: CoreSettingsDep,
    verifier: Annotated[CredentialVerifier, Depends(get_verifier)],
    notifications: NotificationsDep,
) -> AuthOrchestrator:
    """Build a per-request orchestrator over the request's session."""
    return AuthOrchestrator(SqlRepository(session), verifier, notifications, core_settings)


OrchestratorDep = Annotated[AuthOrchestrator, Depends(get_orchestrator)]
