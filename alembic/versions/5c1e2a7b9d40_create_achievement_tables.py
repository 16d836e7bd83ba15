"""Create achievement tables

Revision ID: 5c1e2a7b9d40
Revises:
Create Date: 2026-10-18 09:12:44.108311

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '5c1e2a7b9d40'
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create the event log, catalog, progress and audit tables."""

    # --- achievement_events ---
    op.create_table(
        "achievement_events",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("event_data", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column(
            "triggered_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "processing_status", sa.String(20), nullable=False, server_default="pending",
        ),
        sa.Column("error_message", sa.Text, nullable=True),
    )
    op.create_index(
        "ix_achievement_events_status_time", "achievement_events",
        ["processing_status", "triggered_at"],
    )
    op.create_index(
        "ix_achievement_events_user_time", "achievement_events", ["user_id", "triggered_at"],
    )
    op.create_index(
        "ix_achievement_events_type_time", "achievement_events", ["event_type", "triggered_at"],
    )

    # --- achievements ---
    op.create_table(
        "achievements",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("key", sa.String(100), nullable=False, unique=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("category", sa.String(30), nullable=False, server_default="participation"),
        sa.Column("tier", sa.String(20), nullable=False, server_default="common"),
        sa.Column("trigger_type", sa.String(20), nullable=False),
        sa.Column("trigger_config", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("reward_xp", sa.Integer, server_default="0"),
        sa.Column("reward_tokens", sa.Integer, server_default="0"),
        sa.Column("reward_reputation", sa.Integer, server_default="0"),
        sa.Column("reward_badge", sa.String(100), nullable=True),
        sa.Column("reward_title", sa.String(100), nullable=True),
        sa.Column("icon_emoji", sa.String(16), nullable=True),
        sa.Column("unlock_message", sa.Text, nullable=True),
        sa.Column("is_active", sa.Boolean, server_default=sa.true()),
        sa.Column("is_secret", sa.Boolean, server_default=sa.false()),
        sa.Column("is_retroactive", sa.Boolean, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_achievements_active_trigger", "achievements", ["is_active", "trigger_type"],
    )
    op.create_index("ix_achievements_category_tier", "achievements", ["category", "tier"])

    # --- user_achievements ---
    op.create_table(
        "user_achievements",
        sa.Column("user_id", sa.String(64), primary_key=True),
        sa.Column(
            "achievement_id",
            sa.Integer,
            sa.ForeignKey("achievements.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("current_progress", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("progress_percentage", sa.Float, nullable=False, server_default="0"),
        sa.Column("is_completed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completion_data", postgresql.JSONB, nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_user_achievements_completed", "user_achievements",
        ["achievement_id", "is_completed"],
    )

    # --- admin_log ---
    op.create_table(
        "admin_log",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("actor_id", sa.String(64), nullable=False),
        sa.Column("action_type", sa.String(50), nullable=False),
        sa.Column("target_table", sa.String(50), nullable=False),
        sa.Column("target_id", sa.String(100), nullable=True),
        sa.Column("before_snapshot", postgresql.JSONB, nullable=True),
        sa.Column("after_snapshot", postgresql.JSONB, nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("reason", sa.Text, nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_admin_log_actor_time", "admin_log", ["actor_id", "timestamp"])
    op.create_index(
        "ix_admin_log_target", "admin_log", ["target_table", "target_id", "timestamp"],
    )


def downgrade() -> None:
    """Drop the achievement tables."""
    op.drop_table("admin_log")
    op.drop_table("user_achievements")
    op.drop_table("achievements")
    op.drop_table("achievement_events")
