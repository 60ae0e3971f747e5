"""Tests for tenant administration: ownership, seat accounting and validation."""

from __future__ import annotations

import re

import pytest
from keygate_core.admin.service import TenantAdminService, generate_license_key
from keygate_core.auth.orchestrator import AuthOrchestrator
from keygate_core.config import CoreSettings
from keygate_core.errors import NotFoundError, ValidationError
from keygate_core.models.entities import ActivityLog, ApplicationSettings
from keygate_core.models.outcomes import ClientContext, DenialReason


@pytest.fixture
def admin(repo, verifier) -> TenantAdminService:
    settings = CoreSettings(
        bcrypt_rounds=4,
        activity_log_default_limit=5,
        activity_log_max_limit=10,
    )
    return TenantAdminService(repo, verifier, settings, owner_id="owner-1")


@pytest.fixture
def intruder(repo, verifier) -> TenantAdminService:
    return TenantAdminService(repo, verifier, owner_id="owner-2")


def test_generated_license_key_format():
    key = generate_license_key()
    assert re.fullmatch(r"[0-9A-F]{4}(-[0-9A-F]{4}){3}", key)
    assert generate_license_key() != key


class TestApplications:
    @pytest.mark.asyncio
    async def test_create_generates_prefixed_key(self, admin):
        app = await admin.create_application("  Game Launcher  ")
        assert app.name == "Game Launcher"
        assert app.api_key.startswith("kg_")
        assert app.owner_id == "owner-1"
        assert app.settings == ApplicationSettings()

    @pytest.mark.asyncio
    async def test_blank_name_rejected(self, admin):
        with pytest.raises(ValidationError):
            await admin.create_application("   ")

    @pytest.mark.asyncio
    async def test_api_key_is_immutable(self, admin):
        app = await admin.create_application("Launcher")
        with pytest.raises(ValidationError, match="immutable"):
            await admin.update_application(app.id, api_key="kg_chosen")

    @pytest.mark.asyncio
    async def test_update_settings(self, admin):
        app = await admin.create_application("Launcher")
        updated = await admin.update_application(
            app.id, settings=ApplicationSettings(require_hwid=True), description="desktop"
        )
        assert updated.settings.require_hwid is True
        assert updated.description == "desktop"
        assert updated.api_key == app.api_key

    @pytest.mark.asyncio
    async def test_unknown_field_rejected(self, admin):
        app = await admin.create_application("Launcher")
        with pytest.raises(ValidationError):
            await admin.update_application(app.id, owner_id="owner-2")

    @pytest.mark.asyncio
    async def test_other_owner_sees_not_found(self, admin, intruder):
        app = await admin.create_application("Launcher")
        with pytest.raises(NotFoundError):
            await intruder.get_application(app.id)
        with pytest.raises(NotFoundError):
            await intruder.delete_application(app.id)
        assert await intruder.list_applications() == []
        assert [a.id for a in await admin.list_applications()] == [app.id]

    @pytest.mark.asyncio
    async def test_delete_cascades_but_keeps_activity(self, repo, admin):
        app = await admin.create_application("Launcher")
        key = await admin.create_license_key(app.id, max_users=3)
        user = await admin.create_app_user(app.id, "dave", "hunter22")
        await admin.create_webhook(app.id, "sink", "https://hooks.example.com/x", ["user_login"])
        await repo.activity.append(ActivityLog(application_id=app.id, app_user_id=user.id, event="user_login"))

        await admin.delete_application(app.id)

        assert await repo.applications.by_id(app.id) is None
        assert await repo.license_keys.by_id(key.id) is None
        assert await repo.app_users.by_id(user.id) is None
        assert await repo.webhooks.list_by_application(app.id) == []
        assert len(await repo.activity.list_by_application(app.id, 10)) == 1


class TestLicenseKeys:
    @pytest.mark.asyncio
    async def test_create_with_validity(self, admin):
        app = await admin.create_application("Launcher")
        key = await admin.create_license_key(app.id, max_users=2, validity_days=30)
        assert key.current_users == 0
        assert key.expires_at is not None
        assert key.max_users == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("fields", [{"max_users": 0}, {"validity_days": 0}])
    async def test_invalid_create(self, admin, fields):
        app = await admin.create_application("Launcher")
        with pytest.raises(ValidationError):
            await admin.create_license_key(app.id, **fields)

    @pytest.mark.asyncio
    async def test_duplicate_key(self, admin):
        app = await admin.create_application("Launcher")
        await admin.create_license_key(app.id, key="SAME")
        with pytest.raises(ValidationError):
            await admin.create_license_key(app.id, key="SAME")

    @pytest.mark.asyncio
    async def test_current_users_not_editable(self, admin):
        app = await admin.create_application("Launcher")
        key = await admin.create_license_key(app.id)
        with pytest.raises(ValidationError):
            await admin.update_license_key(key.id, current_users=0)

    @pytest.mark.asyncio
    async def test_max_users_cannot_drop_below_usage(self, repo, admin, verifier):
        app = await admin.create_application("Launcher")
        key = await admin.create_license_key(app.id, key="TEAM", max_users=3)
        orchestrator = AuthOrchestrator(repo, verifier)
        for name in ("u1", "u2"):
            assert (await orchestrator.register(app.api_key, name, "secret1", "TEAM")).success

        with pytest.raises(ValidationError, match="below"):
            await admin.update_license_key(key.id, max_users=1)
        updated = await admin.update_license_key(key.id, max_users=2)
        assert updated.max_users == 2
        assert updated.current_users == 2


class TestAppUsers:
    @pytest.mark.asyncio
    async def test_delete_releases_exactly_one_seat(self, repo, admin, verifier):
        app = await admin.create_application("Launcher")
        key = await admin.create_license_key(app.id, key="PAIR", max_users=2)
        orchestrator = AuthOrchestrator(repo, verifier)
        first = await orchestrator.register(app.api_key, "alice", "secret1", "PAIR")
        await orchestrator.register(app.api_key, "bob", "secret2", "PAIR")
        login = await orchestrator.login(app.api_key, "alice", "secret1")
        assert (await repo.license_keys.by_id(key.id)).current_users == 2

        await admin.delete_app_user(first.user.id)

        assert (await repo.license_keys.by_id(key.id)).current_users == 1
        assert await repo.sessions.by_token(login.session.session_token) is None
        with pytest.raises(NotFoundError):
            await admin.delete_app_user(first.user.id)
        assert (await repo.license_keys.by_id(key.id)).current_users == 1

    @pytest.mark.asyncio
    async def test_admin_created_user_takes_no_seat(self, repo, admin):
        app = await admin.create_application("Launcher")
        key = await admin.create_license_key(app.id)
        user = await admin.create_app_user(app.id, "dave", "hunter22", email="dave@example.com")
        assert user.license_key_id is None
        assert (await repo.license_keys.by_id(key.id)).current_users == 0
        await admin.delete_app_user(user.id)
        assert (await repo.license_keys.by_id(key.id)).current_users == 0

    @pytest.mark.asyncio
    async def test_password_policy_and_duplicates(self, admin):
        app = await admin.create_application("Launcher")
        with pytest.raises(ValidationError):
            await admin.create_app_user(app.id, "dave", "123")
        await admin.create_app_user(app.id, "dave", "hunter22")
        other = await admin.create_app_user(app.id, "erin", "hunter22")
        with pytest.raises(ValidationError):
            await admin.create_app_user(app.id, "dave", "hunter22")
        with pytest.raises(ValidationError):
            await admin.update_app_user(other.id, username="dave")

    @pytest.mark.asyncio
    async def test_password_change_is_hashed(self, repo, admin, verifier):
        app = await admin.create_application("Launcher", settings=ApplicationSettings(require_license=False))
        user = await admin.create_app_user(app.id, "dave", "hunter22")
        updated = await admin.update_app_user(user.id, password="new-secret")
        assert updated.password_hash != "new-secret"
        assert await verifier.verify("new-secret", updated.password_hash)

        orchestrator = AuthOrchestrator(repo, verifier)
        assert not (await orchestrator.login(app.api_key, "dave", "hunter22")).success
        assert (await orchestrator.login(app.api_key, "dave", "new-secret")).success

    @pytest.mark.asyncio
    async def test_pause_and_reset_hwid(self, repo, admin, verifier):
        app = await admin.create_application("Launcher", settings=ApplicationSettings(require_hwid=True))
        user = await admin.create_app_user(app.id, "dave", "hunter22")
        orchestrator = AuthOrchestrator(repo, verifier)

        assert (await orchestrator.login(app.api_key, "dave", "hunter22", ClientContext(hwid="OLD"))).success
        await admin.pause_app_user(user.id)
        paused = await orchestrator.login(app.api_key, "dave", "hunter22", ClientContext(hwid="OLD"))
        assert paused.reason == DenialReason.ACCOUNT_PAUSED

        await admin.unpause_app_user(user.id)
        moved = await orchestrator.login(app.api_key, "dave", "hunter22", ClientContext(hwid="NEW"))
        assert moved.reason == DenialReason.HWID_MISMATCH

        assert (await admin.reset_hwid(user.id)).hwid is None
        assert (await orchestrator.login(app.api_key, "dave", "hunter22", ClientContext(hwid="NEW"))).success
        assert (await repo.app_users.by_id(user.id)).hwid == "NEW"

    @pytest.mark.asyncio
    async def test_users_of_other_owner_hidden(self, admin, intruder):
        app = await admin.create_application("Launcher")
        user = await admin.create_app_user(app.id, "dave", "hunter22")
        with pytest.raises(NotFoundError):
            await intruder.update_app_user(user.id, is_paused=True)
        with pytest.raises(NotFoundError):
            await intruder.list_app_users(app.id)


class TestBlacklist:
    @pytest.mark.asyncio
    async def test_add_list_remove(self, admin):
        app = await admin.create_application("Launcher")
        entry = await admin.add_blacklist_entry(app.id, "ip", " 10.0.0.9 ", reason="abuse")
        assert entry.value == "10.0.0.9"
        assert [e.id for e in await admin.list_blacklist(app.id)] == [entry.id]
        await admin.remove_blacklist_entry(entry.id)
        assert await admin.list_blacklist(app.id) == []
        with pytest.raises(NotFoundError):
            await admin.remove_blacklist_entry(entry.id)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind,value", [("country", "XX"), ("ip", "   ")])
    async def test_invalid_entries(self, admin, kind, value):
        app = await admin.create_application("Launcher")
        with pytest.raises(ValidationError):
            await admin.add_blacklist_entry(app.id, kind, value)


class TestWebhooks:
    @pytest.mark.asyncio
    async def test_create_dedupes_events(self, admin):
        app = await admin.create_application("Launcher")
        hook = await admin.create_webhook(
            app.id, "sink", "https://hooks.example.com/x", ["user_login", "user_login", "login_failed"]
        )
        assert hook.events == ["user_login", "login_failed"]
        assert hook.secret is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "url,events",
        [
            ("ftp://hooks.example.com/x", ["user_login"]),
            ("http://127.0.0.1/x", ["user_login"]),
            ("http://localhost:8080/x", ["user_login"]),
            ("https://hooks.example.com/x", []),
            ("https://hooks.example.com/x", ["user_login", "coffee_break"]),
        ],
    )
    async def test_invalid_webhooks(self, admin, url, events):
        app = await admin.create_application("Launcher")
        with pytest.raises(ValidationError):
            await admin.create_webhook(app.id, "sink", url, events)

    @pytest.mark.asyncio
    async def test_update_and_ownership(self, admin, intruder):
        app = await admin.create_application("Launcher")
        hook = await admin.create_webhook(app.id, "sink", "https://hooks.example.com/x", ["user_login"])
        updated = await admin.update_webhook(hook.id, is_active=False, events=["user_logout"])
        assert updated.is_active is False
        assert updated.events == ["user_logout"]
        with pytest.raises(NotFoundError):
            await intruder.delete_webhook(hook.id)
        await admin.delete_webhook(hook.id)
        assert await admin.list_webhooks(app.id) == []


class TestSessionsAndActivity:
    @pytest.mark.asyncio
    async def test_terminate_session(self, repo, admin, verifier):
        app = await admin.create_application("Launcher", settings=ApplicationSettings(require_license=False))
        other = await admin.create_application("Other")
        await admin.create_app_user(app.id, "dave", "hunter22")
        login = await AuthOrchestrator(repo, verifier).login(app.api_key, "dave", "hunter22")
        token = login.session.session_token

        assert [s.session_token for s in await admin.list_sessions(app.id)] == [token]
        with pytest.raises(NotFoundError):
            await admin.terminate_session(other.id, token)
        await admin.terminate_session(app.id, token)
        assert await admin.list_sessions(app.id) == []

    @pytest.mark.asyncio
    async def test_activity_limits(self, repo, admin):
        app = await admin.create_application("Launcher")
        user = await admin.create_app_user(app.id, "dave", "hunter22")
        for n in range(15):
            await repo.activity.append(
                ActivityLog(application_id=app.id, app_user_id=user.id, event="user_login", metadata={"n": n})
            )

        assert len(await admin.list_activity(app.id)) == 5
        assert len(await admin.list_activity(app.id, limit=500)) == 10
        assert len(await admin.list_activity(app.id, limit=0)) == 1
        newest = await admin.list_user_activity(user.id, limit=3)
        assert [entry.metadata["n"] for entry in newest] == [14, 13, 12]
