"""Create integration access exchange tables

Revision ID: 20261019_integration_exchange
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "20261019_integration_exchange"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _uuid() -> sa.types.TypeEngine:
    return sa.Uuid(as_uuid=True)


def _json() -> sa.types.TypeEngine:
    return sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def _timestamp(name: str, nullable: bool = False, server_default: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=nullable,
        server_default=sa.text("CURRENT_TIMESTAMP") if server_default else None,
    )


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("user_id", _uuid(), primary_key=True, nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=32), nullable=True),
        sa.Column("username", sa.String(length=100), nullable=True),
        sa.Column("display_name", sa.String(length=255), nullable=True),
        sa.Column("avatar_url", sa.String(length=1024), nullable=True),
        _timestamp("created_at", server_default=True),
    )
    op.create_index("ix_users_user_id", "users", ["user_id"])
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "waitlist_members",
        sa.Column("member_id", _uuid(), primary_key=True, nullable=False),
        sa.Column("app_space_id", _uuid(), nullable=False),
        sa.Column("user_id", _uuid(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("badge_tier", sa.String(length=32), nullable=True),
        _timestamp("joined_at", server_default=True),
        _timestamp("approved_at", nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.user_id"], ondelete="CASCADE"),
        sa.UniqueConstraint("app_space_id", "user_id", name="uq_waitlist_members_space_user"),
        sa.CheckConstraint("status IN ('pending', 'approved')", name="ck_waitlist_members_status"),
    )
    op.create_index("ix_waitlist_members_member_id", "waitlist_members", ["member_id"])
    op.create_index("ix_waitlist_members_app_space_id", "waitlist_members", ["app_space_id"])
    op.create_index("ix_waitlist_members_user_id", "waitlist_members", ["user_id"])

    op.create_table(
        "integration_apps",
        sa.Column("integration_app_id", _uuid(), primary_key=True, nullable=False),
        sa.Column("app_space_id", _uuid(), nullable=False),
        sa.Column("public_app_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=True),
        sa.Column("redirect_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("embedded_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("web_redirect_url", sa.String(length=2048), nullable=True),
        sa.Column("mobile_deep_link_url", sa.String(length=2048), nullable=True),
        sa.Column("allowed_origins", _json(), nullable=False),
        sa.Column("webhook_url", sa.String(length=2048), nullable=True),
        sa.Column("webhook_secret_encrypted", sa.Text(), nullable=True),
        sa.Column("webhook_secret_last_four", sa.String(length=4), nullable=True),
        _timestamp("created_at", server_default=True),
        _timestamp("updated_at", server_default=True),
    )
    op.create_index("ix_integration_apps_integration_app_id", "integration_apps", ["integration_app_id"])
    op.create_index("ix_integration_apps_app_space_id", "integration_apps", ["app_space_id"], unique=True)
    op.create_index("ix_integration_apps_public_app_id", "integration_apps", ["public_app_id"], unique=True)

    op.create_table(
        "integration_api_keys",
        sa.Column("api_key_id", _uuid(), primary_key=True, nullable=False),
        sa.Column("integration_app_id", _uuid(), nullable=False),
        sa.Column("key_id", sa.String(length=64), nullable=False),
        sa.Column("secret_hash", sa.String(length=64), nullable=False),
        sa.Column("last_four", sa.String(length=4), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=True),
        sa.Column("request_count", sa.BigInteger(), nullable=False, server_default="0"),
        _timestamp("last_used_at", nullable=True),
        _timestamp("created_at", server_default=True),
        _timestamp("revoked_at", nullable=True),
        sa.ForeignKeyConstraint(
            ["integration_app_id"], ["integration_apps.integration_app_id"], ondelete="CASCADE"
        ),
    )
    op.create_index("ix_integration_api_keys_api_key_id", "integration_api_keys", ["api_key_id"])
    op.create_index("ix_integration_api_keys_integration_app_id", "integration_api_keys", ["integration_app_id"])
    op.create_index("ix_integration_api_keys_key_id", "integration_api_keys", ["key_id"], unique=True)

    op.create_table(
        "integration_identity_links",
        sa.Column("link_id", _uuid(), primary_key=True, nullable=False),
        sa.Column("integration_app_id", _uuid(), nullable=False),
        sa.Column("external_user_id", sa.String(length=255), nullable=False),
        sa.Column("user_id", _uuid(), nullable=False),
        sa.Column("current_plan_tier", sa.String(length=8), nullable=False, server_default="free"),
        _timestamp("created_at", server_default=True),
        _timestamp("updated_at", server_default=True),
        sa.ForeignKeyConstraint(
            ["integration_app_id"], ["integration_apps.integration_app_id"], ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(["user_id"], ["users.user_id"], ondelete="CASCADE"),
        sa.UniqueConstraint("integration_app_id", "external_user_id", name="uq_integration_links_app_external"),
        sa.UniqueConstraint("integration_app_id", "user_id", name="uq_integration_links_app_user"),
        sa.CheckConstraint("current_plan_tier IN ('free', 'mid', 'pro')", name="ck_integration_links_plan_tier"),
    )
    op.create_index("ix_integration_identity_links_link_id", "integration_identity_links", ["link_id"])
    op.create_index(
        "ix_integration_identity_links_integration_app_id", "integration_identity_links", ["integration_app_id"]
    )
    op.create_index("ix_integration_identity_links_user_id", "integration_identity_links", ["user_id"])

    op.create_table(
        "integration_access_codes",
        sa.Column("access_code_id", _uuid(), primary_key=True, nullable=False),
        sa.Column("integration_app_id", _uuid(), nullable=False),
        sa.Column("user_id", _uuid(), nullable=False),
        sa.Column("app_space_id", _uuid(), nullable=False),
        sa.Column("code_hash", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="issued"),
        _timestamp("expires_at"),
        _timestamp("redeemed_at", nullable=True),
        sa.Column("expected_external_user_id", sa.String(length=255), nullable=True),
        sa.Column("redeemed_external_user_id", sa.String(length=255), nullable=True),
        _timestamp("created_at", server_default=True),
        sa.ForeignKeyConstraint(
            ["integration_app_id"], ["integration_apps.integration_app_id"], ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(["user_id"], ["users.user_id"], ondelete="CASCADE"),
        sa.CheckConstraint(
            "status IN ('issued', 'redeemed', 'expired')", name="ck_integration_access_codes_status"
        ),
    )
    op.create_index("ix_integration_access_codes_access_code_id", "integration_access_codes", ["access_code_id"])
    op.create_index("ix_integration_access_codes_code_hash", "integration_access_codes", ["code_hash"], unique=True)
    op.create_index(
        "ix_integration_access_codes_app_user_status",
        "integration_access_codes",
        ["integration_app_id", "user_id", "status"],
    )

    op.create_table(
        "integration_usage_sessions",
        sa.Column("session_id", _uuid(), primary_key=True, nullable=False),
        sa.Column("integration_app_id", _uuid(), nullable=False),
        sa.Column("user_id", _uuid(), nullable=False),
        sa.Column("client_platform", sa.String(length=32), nullable=False, server_default="web"),
        sa.Column("membership_status", sa.String(length=16), nullable=True),
        _timestamp("started_at", server_default=True),
        _timestamp("last_seen_at", server_default=True),
        _timestamp("ended_at", nullable=True),
        sa.Column("duration_seconds", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(
            ["integration_app_id"], ["integration_apps.integration_app_id"], ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(["user_id"], ["users.user_id"], ondelete="CASCADE"),
    )
    op.create_index("ix_integration_usage_sessions_session_id", "integration_usage_sessions", ["session_id"])
    op.create_index(
        "ix_integration_usage_sessions_open",
        "integration_usage_sessions",
        ["integration_app_id", "user_id", "ended_at"],
    )

    op.create_table(
        "integration_webhook_deliveries",
        sa.Column("delivery_id", _uuid(), primary_key=True, nullable=False),
        sa.Column("integration_app_id", _uuid(), nullable=False),
        sa.Column("event_id", sa.String(length=64), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("payload", _json(), nullable=False),
        sa.Column("signature", sa.String(length=128), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        _timestamp("next_retry_at", nullable=True),
        sa.Column("response_status", sa.Integer(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        _timestamp("delivered_at", nullable=True),
        _timestamp("created_at", server_default=True),
        _timestamp("updated_at", server_default=True),
        sa.ForeignKeyConstraint(
            ["integration_app_id"], ["integration_apps.integration_app_id"], ondelete="CASCADE"
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'delivered', 'failed')", name="ck_integration_webhook_deliveries_status"
        ),
    )
    op.create_index(
        "ix_integration_webhook_deliveries_delivery_id", "integration_webhook_deliveries", ["delivery_id"]
    )
    op.create_index(
        "ix_integration_webhook_deliveries_integration_app_id",
        "integration_webhook_deliveries",
        ["integration_app_id"],
    )
    op.create_index("ix_integration_webhook_deliveries_event_id", "integration_webhook_deliveries", ["event_id"])
    op.create_index(
        "ix_integration_webhook_deliveries_retry",
        "integration_webhook_deliveries",
        ["status", "next_retry_at"],
    )

    op.create_table(
        "integration_waitlist_intents",
        sa.Column("intent_id", _uuid(), primary_key=True, nullable=False),
        sa.Column("integration_app_id", _uuid(), nullable=False),
        sa.Column("token_hash", sa.String(length=64), nullable=False),
        sa.Column("external_user_id", sa.String(length=255), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=32), nullable=True),
        sa.Column("return_to", sa.String(length=2048), nullable=True),
        _timestamp("expires_at"),
        _timestamp("consumed_at", nullable=True),
        _timestamp("created_at", server_default=True),
        sa.ForeignKeyConstraint(
            ["integration_app_id"], ["integration_apps.integration_app_id"], ondelete="CASCADE"
        ),
    )
    op.create_index("ix_integration_waitlist_intents_intent_id", "integration_waitlist_intents", ["intent_id"])
    op.create_index(
        "ix_integration_waitlist_intents_integration_app_id",
        "integration_waitlist_intents",
        ["integration_app_id"],
    )
    op.create_index(
        "ix_integration_waitlist_intents_token_hash", "integration_waitlist_intents", ["token_hash"], unique=True
    )


def downgrade() -> None:
    op.drop_table("integration_waitlist_intents")
    op.drop_table("integration_webhook_deliveries")
    op.drop_table("integration_usage_sessions")
    op.drop_table("integration_access_codes")
    op.drop_table("integration_identity_links")
    op.drop_table("integration_api_keys")
    op.drop_table("integration_apps")
    op.drop_table("waitlist_members")
    op.drop_table("users")
