"""base schema: accounts, user data, snapshots and upgrade journal

Revision ID: 0001_base_schema
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_base_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("user_id", sa.String(length=128), primary_key=True),
        sa.Column("tier", sa.String(length=32), nullable=False, server_default="free"),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "user_data_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("category", sa.String(length=64), nullable=False),
        sa.Column("identifier", sa.String(length=128), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("user_id", "category", "identifier", name="uq_user_data_item"),
    )
    op.create_index("ix_user_data_items_user_id", "user_data_items", ["user_id"])

    op.create_table(
        "feature_access",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("feature", sa.String(length=64), nullable=False),
        sa.Column("enabled", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("user_id", "feature", name="uq_feature_access"),
    )
    op.create_index("ix_feature_access_user_id", "feature_access", ["user_id"])

    op.create_table(
        "feature_records",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("feature", sa.String(length=64), nullable=False),
        sa.Column("record_key", sa.String(length=128), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("archived", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_feature_records_user_id", "feature_records", ["user_id"])

    op.create_table(
        "user_quotas",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("quota_type", sa.String(length=64), nullable=False),
        sa.Column("quota_limit", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("user_id", "quota_type", name="uq_user_quota"),
    )
    op.create_index("ix_user_quotas_user_id", "user_quotas", ["user_id"])

    op.create_table(
        "data_snapshots",
        sa.Column("snapshot_id", sa.String(length=64), primary_key=True),
        sa.Column("session_id", sa.String(length=64), nullable=False, unique=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("item_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("captured_at", sa.DateTime(), nullable=False),
        sa.Column("archived_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_data_snapshots_user_id", "data_snapshots", ["user_id"])

    op.create_table(
        "snapshot_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("snapshot_id", sa.String(length=64), sa.ForeignKey("data_snapshots.snapshot_id"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("category", sa.String(length=64), nullable=False),
        sa.Column("identifier", sa.String(length=128), nullable=False),
        sa.Column("payload_hash", sa.String(length=64), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
    )
    op.create_index("ix_snapshot_items_snapshot_id", "snapshot_items", ["snapshot_id"])

    op.create_table(
        "upgrade_sessions",
        sa.Column("session_id", sa.String(length=64), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("current_tier", sa.String(length=32), nullable=False),
        sa.Column("target_tier", sa.String(length=32), nullable=False),
        sa.Column("billing_interval", sa.String(length=16), nullable=False),
        sa.Column("state", sa.String(length=32), nullable=False),
        sa.Column("progress_percent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("snapshot_id", sa.String(length=64), nullable=True),
        sa.Column("charge_id", sa.String(length=128), nullable=True),
        sa.Column("error_kind", sa.String(length=32), nullable=False, server_default=""),
        sa.Column("error_message", sa.Text(), nullable=False, server_default=""),
        sa.Column("needs_manual_review", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("retry_of", sa.String(length=64), nullable=True),
        sa.Column("started_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_upgrade_sessions_user_id", "upgrade_sessions", ["user_id"])

    op.create_table(
        "upgrade_state_transitions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("session_id", sa.String(length=64), sa.ForeignKey("upgrade_sessions.session_id"), nullable=False),
        sa.Column("state", sa.String(length=32), nullable=False),
        sa.Column("progress_percent", sa.Integer(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_upgrade_state_transitions_session_id", "upgrade_state_transitions", ["session_id"])


def downgrade() -> None:
    op.drop_index("ix_upgrade_state_transitions_session_id", table_name="upgrade_state_transitions")
    op.drop_table("upgrade_state_transitions")
    op.drop_index("ix_upgrade_sessions_user_id", table_name="upgrade_sessions")
    op.drop_table("upgrade_sessions")
    op.drop_index("ix_snapshot_items_snapshot_id", table_name="snapshot_items")
    op.drop_table("snapshot_items")
    op.drop_index("ix_data_snapshots_user_id", table_name="data_snapshots")
    op.drop_table("data_snapshots")
    op.drop_index("ix_user_quotas_user_id", table_name="user_quotas")
    op.drop_table("user_quotas")
    op.drop_index("ix_feature_records_user_id", table_name="feature_records")
    op.drop_table("feature_records")
    op.drop_index("ix_feature_access_user_id", table_name="feature_access")
    op.drop_table("feature_access")
    op.drop_index("ix_user_data_items_user_id", table_name="user_data_items")
    op.drop_table("user_data_items")
    op.drop_table("accounts")
