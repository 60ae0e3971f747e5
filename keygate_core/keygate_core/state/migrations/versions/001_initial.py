"""Initial schema: applications, license keys, users, blacklist, sessions, activity, webhooks.

Revision ID: 001
Revises:
Create Date: 2026-09-01 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_JSON = postgresql.JSONB().with_variant(sa.JSON(), "sqlite")


def _timestamps(with_updated: bool = True) -> list[sa.Column]:
    columns = [sa.Column("created_at", sa.DateTime(timezone=True), nullable=False)]
    if with_updated:
        columns.append(sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False))
    return columns


def upgrade() -> None:
    op.create_table(
        "applications",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("owner_id", sa.String(128), nullable=False),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("api_key", sa.String(128), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("settings", _JSON, nullable=False),
        sa.Column("messages", _JSON, nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("api_key", name="uq_applications_api_key"),
    )
    op.create_index("ix_applications_owner", "applications", ["owner_id"])

    op.create_table(
        "license_keys",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column(
            "application_id",
            sa.String(64),
            sa.ForeignKey("applications.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("key", sa.String(256), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("max_users", sa.Integer(), nullable=False),
        sa.Column("current_users", sa.Integer(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("application_id", "key", name="uq_license_keys_app_key"),
        sa.CheckConstraint("max_users >= 1", name="ck_license_keys_max_users"),
        sa.CheckConstraint(
            "current_users >= 0 AND current_users <= max_users",
            name="ck_license_keys_current_users",
        ),
    )
    op.create_index("ix_license_keys_key", "license_keys", ["key"])

    op.create_table(
        "app_users",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column(
            "application_id",
            sa.String(64),
            sa.ForeignKey("applications.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("username", sa.String(256), nullable=False),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("password_hash", sa.String(256), nullable=False),
        sa.Column("hwid", sa.String(512), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("is_paused", sa.Boolean(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "license_key_id",
            sa.String(64),
            sa.ForeignKey("license_keys.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("last_login", sa.DateTime(timezone=True), nullable=True),
        sa.Column("login_attempts", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("application_id", "username", name="uq_app_users_app_username"),
    )
    op.create_index("ix_app_users_app_email", "app_users", ["application_id", "email"])
    op.create_index("ix_app_users_license", "app_users", ["license_key_id"])

    op.create_table(
        "blacklist",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column(
            "application_id",
            sa.String(64),
            sa.ForeignKey("applications.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("type", sa.String(16), nullable=False),
        sa.Column("value", sa.String(512), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        *_timestamps(with_updated=False),
        sa.CheckConstraint("type IN ('ip', 'username', 'email', 'hwid')", name="ck_blacklist_type"),
    )
    op.create_index("ix_blacklist_lookup", "blacklist", ["application_id", "type", "value"])

    op.create_table(
        "active_sessions",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column(
            "application_id",
            sa.String(64),
            sa.ForeignKey("applications.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "app_user_id",
            sa.String(64),
            sa.ForeignKey("app_users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("session_token", sa.String(256), nullable=False),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.String(1024), nullable=True),
        sa.Column("location", sa.String(256), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_activity", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("session_token", name="uq_active_sessions_token"),
    )
    op.create_index("ix_active_sessions_app", "active_sessions", ["application_id"])
    op.create_index("ix_active_sessions_user", "active_sessions", ["app_user_id"])
    op.create_index("ix_active_sessions_expires", "active_sessions", ["expires_at"])

    op.create_table(
        "activity_logs",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("application_id", sa.String(64), nullable=False),
        sa.Column("app_user_id", sa.String(64), nullable=True),
        sa.Column("username", sa.String(256), nullable=True),
        sa.Column("event", sa.String(64), nullable=False),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.String(1024), nullable=True),
        sa.Column("location", sa.String(256), nullable=True),
        sa.Column("hwid", sa.String(512), nullable=True),
        sa.Column("metadata_json", _JSON, nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        *_timestamps(with_updated=False),
    )
    op.create_index("ix_activity_app_created", "activity_logs", ["application_id", "created_at"])
    op.create_index("ix_activity_user_created", "activity_logs", ["app_user_id", "created_at"])

    op.create_table(
        "webhooks",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("owner_id", sa.String(128), nullable=False),
        sa.Column(
            "application_id",
            sa.String(64),
            sa.ForeignKey("applications.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("url", sa.String(2048), nullable=False),
        sa.Column("secret", sa.String(256), nullable=True),
        sa.Column("events", _JSON, nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_webhooks_app_active", "webhooks", ["application_id", "is_active"])
    op.create_index("ix_webhooks_owner", "webhooks", ["owner_id"])


def downgrade() -> None:
    op.drop_table("webhooks")
    op.drop_table("activity_logs")
    op.drop_table("active_sessions")
    op.drop_table("blacklist")
    op.drop_table("app_users")
    op.drop_table("license_keys")
    op.drop_table("applications")
