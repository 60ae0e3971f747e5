"""Tests for the request unit of work: commit first, then send webhooks."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from keygate_core.audit.dispatcher import NotificationBatch, NotificationDispatcher, PendingNotification
from keygate_core.models.entities import Application, Webhook

from keygate_api.dependencies import unit_of_work


def _application() -> Application:
    return Application(owner_id="tenant-1", name="Launcher", api_key="kg_uow")


def _pending(application: Application) -> PendingNotification:
    webhook = Webhook(
        owner_id=application.owner_id,
        application_id=application.id,
        name="audit",
        url="https://hooks.example.com/keygate",
        events=["user_register"],
    )
    return PendingNotification(webhooks=[webhook], event="user_register", payload={"event": "user_register"})


@pytest.fixture()
def dispatcher() -> MagicMock:
    dispatcher = MagicMock(spec=NotificationDispatcher)
    dispatcher.prepare = AsyncMock(side_effect=lambda repo, application, event, **kw: _pending(application))
    return dispatcher


def _factory(session: AsyncMock):
    return lambda: session


class TestUnitOfWork:
    @pytest.mark.asyncio
    async def test_notifications_sent_after_commit(self, dispatcher):
        session = AsyncMock()
        calls: list[str] = []
        session.commit.side_effect = lambda: calls.append("commit")
        dispatcher.schedule.side_effect = lambda pending: calls.append("schedule")
        batch = NotificationBatch(dispatcher)

        async with unit_of_work(_factory(session), batch):
            await batch.notify(None, _application(), "user_register")
            assert calls == []

        assert calls == ["commit", "schedule"]
        session.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_commit_sends_nothing(self, dispatcher):
        session = AsyncMock()
        session.commit.side_effect = RuntimeError("commit failed")
        batch = NotificationBatch(dispatcher)

        with pytest.raises(RuntimeError, match="commit failed"):
            async with unit_of_work(_factory(session), batch):
                await batch.notify(None, _application(), "user_register")

        session.rollback.assert_awaited_once()
        dispatcher.schedule.assert_not_called()
        assert len(batch) == 0

    @pytest.mark.asyncio
    async def test_request_error_rolls_back_and_discards(self, dispatcher):
        session = AsyncMock()
        batch = NotificationBatch(dispatcher)

        with pytest.raises(ValueError):
            async with unit_of_work(_factory(session), batch):
                await batch.notify(None, _application(), "user_register")
                raise ValueError("handler failed")

        session.commit.assert_not_awaited()
        session.rollback.assert_awaited_once()
        dispatcher.schedule.assert_not_called()

    @pytest.mark.asyncio
    async def test_without_notifications(self):
        session = AsyncMock()
        async with unit_of_work(_factory(session), None) as yielded:
            assert yielded is session
        session.commit.assert_awaited_once()
