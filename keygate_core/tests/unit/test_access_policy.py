"""Unit tests for the access policy pipeline and hardware binding."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from keygate_core.models.entities import BlacklistEntry, BlacklistType
from keygate_core.models.outcomes import ClientContext, DenialReason
from keygate_core.policy.access_policy import AccessPolicyEngine


async def _blacklist(repo, application, kind: BlacklistType, value: str) -> None:
    await repo.blacklist.create(BlacklistEntry(application_id=application.id, type=kind, value=value))


class TestEvaluationOrder:
    @pytest.mark.asyncio
    async def test_clean_user_is_allowed(self, repo, application, make_user):
        user = await make_user(application)
        result = await AccessPolicyEngine(repo).evaluate(application, user, ClientContext())
        assert result.allowed
        assert result.bind_hwid is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kind,value,context",
        [
            (BlacklistType.IP, "203.0.113.9", ClientContext(ip_address="203.0.113.9")),
            (BlacklistType.USERNAME, "dave", ClientContext()),
            (BlacklistType.EMAIL, "dave@example.com", ClientContext()),
            (BlacklistType.HWID, "HW-1", ClientContext(hwid="HW-1")),
        ],
    )
    async def test_each_blacklist_type_denies(self, repo, application, make_user, kind, value, context):
        user = await make_user(application, email="dave@example.com")
        await _blacklist(repo, application, kind, value)
        result = await AccessPolicyEngine(repo).evaluate(application, user, context)
        assert not result.allowed
        assert result.reason == DenialReason.BLACKLISTED

    @pytest.mark.asyncio
    async def test_blacklist_is_scoped_to_application(self, repo, application, make_application, make_user):
        other = await make_application()
        user = await make_user(application)
        await _blacklist(repo, other, BlacklistType.USERNAME, "dave")
        result = await AccessPolicyEngine(repo).evaluate(application, user, ClientContext())
        assert result.allowed

    @pytest.mark.asyncio
    async def test_blacklist_checked_before_account_state(self, repo, application, make_user):
        user = await make_user(application, is_active=False, is_paused=True)
        await _blacklist(repo, application, BlacklistType.USERNAME, "dave")
        result = await AccessPolicyEngine(repo).evaluate(application, user, ClientContext())
        assert result.reason == DenialReason.BLACKLISTED

    @pytest.mark.asyncio
    async def test_disabled_wins_over_paused(self, repo, application, make_user):
        user = await make_user(application, is_active=False, is_paused=True)
        result = await AccessPolicyEngine(repo).evaluate(application, user, ClientContext())
        assert result.reason == DenialReason.ACCOUNT_DISABLED

    @pytest.mark.asyncio
    async def test_paused(self, repo, application, make_user):
        user = await make_user(application, is_paused=True)
        result = await AccessPolicyEngine(repo).evaluate(application, user, ClientContext())
        assert result.reason == DenialReason.ACCOUNT_PAUSED

    @pytest.mark.asyncio
    async def test_expired(self, repo, application, make_user):
        user = await make_user(application, expires_at=datetime.now(UTC) - timedelta(seconds=1))
        result = await AccessPolicyEngine(repo).evaluate(application, user, ClientContext())
        assert result.reason == DenialReason.ACCOUNT_EXPIRED

    @pytest.mark.asyncio
    async def test_future_expiry_is_fine(self, repo, application, make_user):
        user = await make_user(application, expires_at=datetime.now(UTC) + timedelta(days=1))
        result = await AccessPolicyEngine(repo).evaluate(application, user, ClientContext())
        assert result.allowed

    @pytest.mark.asyncio
    async def test_version_gate(self, repo, make_application, make_user):
        app = await make_application(require_version=True, allowed_version="2.0.0")
        user = await make_user(app)
        engine = AccessPolicyEngine(repo)

        denied = await engine.evaluate(app, user, ClientContext(version="1.9.9"))
        missing = await engine.evaluate(app, user, ClientContext())
        allowed = await engine.evaluate(app, user, ClientContext(version="2.0.0"))

        assert denied.reason == DenialReason.VERSION_MISMATCH
        assert missing.reason == DenialReason.VERSION_MISMATCH
        assert allowed.allowed

    @pytest.mark.asyncio
    async def test_version_ignored_when_not_required(self, repo, application, make_user):
        user = await make_user(application)
        result = await AccessPolicyEngine(repo).evaluate(application, user, ClientContext(version="0.0.1"))
        assert result.allowed

    @pytest.mark.asyncio
    async def test_expired_wins_over_version(self, repo, make_application, make_user):
        app = await make_application(require_version=True, allowed_version="2.0.0")
        user = await make_user(app, expires_at=datetime.now(UTC) - timedelta(days=1))
        result = await AccessPolicyEngine(repo).evaluate(app, user, ClientContext(version="1.0.0"))
        assert result.reason == DenialReason.ACCOUNT_EXPIRED


class TestHardwareBinding:
    @pytest.mark.asyncio
    async def test_unbound_user_gets_binding_instruction(self, repo, make_application, make_user):
        app = await make_application(require_hwid=True)
        user = await make_user(app)
        result = await AccessPolicyEngine(repo).evaluate(app, user, ClientContext(hwid="HW-A"))
        assert result.allowed
        assert result.bind_hwid == "HW-A"
        # evaluate() itself never writes the binding
        assert (await repo.app_users.by_id(user.id)).hwid is None

    @pytest.mark.asyncio
    async def test_missing_hwid_is_a_mismatch(self, repo, make_application, make_user):
        app = await make_application(require_hwid=True)
        user = await make_user(app)
        result = await AccessPolicyEngine(repo).evaluate(app, user, ClientContext())
        assert result.reason == DenialReason.HWID_MISMATCH

    @pytest.mark.asyncio
    async def test_bound_user_with_other_device_is_denied(self, repo, make_application, make_user):
        app = await make_application(require_hwid=True)
        user = await make_user(app, hwid="HW-A")
        engine = AccessPolicyEngine(repo)
        assert (await engine.evaluate(app, user, ClientContext(hwid="HW-B"))).reason == DenialReason.HWID_MISMATCH
        assert (await engine.evaluate(app, user, ClientContext(hwid="HW-A"))).allowed

    @pytest.mark.asyncio
    async def test_hwid_ignored_when_not_required(self, repo, application, make_user):
        user = await make_user(application, hwid="HW-A")
        result = await AccessPolicyEngine(repo).evaluate(application, user, ClientContext(hwid="HW-B"))
        assert result.allowed

    @pytest.mark.asyncio
    async def test_commit_binding(self, repo, make_application, make_user):
        app = await make_application(require_hwid=True)
        user = await make_user(app)
        result = await AccessPolicyEngine(repo).commit_hwid_binding(user, "HW-A")
        assert result.allowed
        assert (await repo.app_users.by_id(user.id)).hwid == "HW-A"

    @pytest.mark.asyncio
    async def test_concurrent_first_bindings_have_one_winner(self, repo, make_application, make_user):
        app = await make_application(require_hwid=True)
        user = await make_user(app)
        engine = AccessPolicyEngine(repo)

        results = await asyncio.gather(
            engine.commit_hwid_binding(user, "HW-A"),
            engine.commit_hwid_binding(user, "HW-B"),
        )

        allowed = [r for r in results if r.allowed]
        denied = [r for r in results if not r.allowed]
        assert len(allowed) == 1
        assert len(denied) == 1
        assert denied[0].reason == DenialReason.HWID_MISMATCH
        assert (await repo.app_users.by_id(user.id)).hwid in {"HW-A", "HW-B"}

    @pytest.mark.asyncio
    async def test_losing_race_with_same_device_is_allowed(self, repo, make_application, make_user):
        app = await make_application(require_hwid=True)
        user = await make_user(app)
        engine = AccessPolicyEngine(repo)

        results = await asyncio.gather(
            engine.commit_hwid_binding(user, "HW-A"),
            engine.commit_hwid_binding(user, "HW-A"),
        )
        assert all(r.allowed for r in results)


class TestRegistrationBlacklist:
    @pytest.mark.asyncio
    async def test_check_blacklist_ignores_missing_values(self, repo, application):
        await _blacklist(repo, application, BlacklistType.EMAIL, "x@example.com")
        engine = AccessPolicyEngine(repo)
        assert not await engine.check_blacklist(application.id, username="erin")
        assert await engine.check_blacklist(application.id, username="erin", email="x@example.com")
