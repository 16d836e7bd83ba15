"""
medallion.database.models — SQLAlchemy 2.0 Data Models
=======================================================

Tables:
- achievement_events — Append-only log of user activity with a per-row
                       processing status (pending → processing → done)
- achievements       — Catalog of achievement definitions and their triggers
- user_achievements  — Per-(user, achievement) progress; the completion
                       idempotency key
- admin_log          — Append-only audit trail of catalog mutations
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Medallion ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class EventType(enum.StrEnum):
    """Every kind of user activity the forum reports to the event log."""
    POST_CREATED = "post_created"
    THREAD_CREATED = "thread_created"
    USER_LOGIN = "user_login"
    TIP_SENT = "tip_sent"
    TIP_RECEIVED = "tip_received"
    SHOUTBOX_MESSAGE = "shoutbox_message"
    LIKE_GIVEN = "like_given"
    LIKE_RECEIVED = "like_received"
    USER_MENTIONED = "user_mentioned"
    DAILY_STREAK = "daily_streak"
    WALLET_LOSS = "wallet_loss"
    THREAD_NECROMANCY = "thread_necromancy"
    CRASH_SENTIMENT = "crash_sentiment"
    DIAMOND_HANDS = "diamond_hands"
    PAPER_HANDS = "paper_hands"
    MARKET_PREDICTION = "market_prediction"
    THREAD_LOCKED = "thread_locked"
    CUSTOM_EVENT = "custom_event"


class ProcessingStatus(enum.StrEnum):
    """Lifecycle of an event row.  Transitions only move forward."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class TriggerType(enum.StrEnum):
    """How an achievement decides that it has been earned."""
    COUNT = "count"
    THRESHOLD = "threshold"
    EVENT = "event"
    COMPOSITE = "composite"
    CUSTOM = "custom"
    MANUAL = "manual"


class AchievementCategory(enum.StrEnum):
    PARTICIPATION = "participation"
    XP = "xp"
    CULTURAL = "cultural"
    SECRET = "secret"
    SOCIAL = "social"
    ECONOMY = "economy"
    PROGRESSION = "progression"
    SPECIAL = "special"


class AchievementTier(enum.StrEnum):
    """Ordinal rarity, lowest first."""
    COMMON = "common"
    RARE = "rare"
    EPIC = "epic"
    LEGENDARY = "legendary"
    MYTHIC = "mythic"


class AdminActionType(enum.StrEnum):
    """Categories of admin mutations recorded in admin_log."""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    BULK_UPDATE = "BULK_UPDATE"
    DEACTIVATE = "DEACTIVATE"
    MANUAL_AWARD = "MANUAL_AWARD"


# ---------------------------------------------------------------------------
# AchievementEvent — append-only activity log
# ---------------------------------------------------------------------------
class AchievementEvent(Base):
    __tablename__ = "achievement_events"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    event_data: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    triggered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    claimed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    processing_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ProcessingStatus.PENDING,
        server_default=ProcessingStatus.PENDING.value,
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_achievement_events_status_time", "processing_status", "triggered_at"),
        Index("ix_achievement_events_user_time", "user_id", "triggered_at"),
        Index("ix_achievement_events_type_time", "event_type", "triggered_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<AchievementEvent id={self.id} user={self.user_id} "
            f"type={self.event_type} status={self.processing_status}>"
        )


# ---------------------------------------------------------------------------
# Achievement — catalog definitions
# ---------------------------------------------------------------------------
class Achievement(Base):
    __tablename__ = "achievements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(
        String(30), nullable=False, default=AchievementCategory.PARTICIPATION
    )
    tier: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AchievementTier.COMMON
    )
    trigger_type: Mapped[str] = mapped_column(String(20), nullable=False)
    trigger_config: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)

    # Rewards
    reward_xp: Mapped[int] = mapped_column(Integer, default=0)
    reward_tokens: Mapped[int] = mapped_column(Integer, default=0)
    reward_reputation: Mapped[int] = mapped_column(Integer, default=0)
    reward_badge: Mapped[str | None] = mapped_column(String(100), nullable=True)
    reward_title: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Presentation
    icon_emoji: Mapped[str | None] = mapped_column(String(16), nullable=True)
    unlock_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_secret: Mapped[bool] = mapped_column(Boolean, default=False)
    is_retroactive: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    progress: Mapped[list[UserAchievement]] = relationship(
        back_populates="achievement", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_achievements_active_trigger", "is_active", "trigger_type"),
        Index("ix_achievements_category_tier", "category", "tier"),
    )

    def __repr__(self) -> str:
        return f"<Achievement id={self.id} key={self.key!r} trigger={self.trigger_type}>"


# ---------------------------------------------------------------------------
# UserAchievement — per-user progress (composite PK = idempotency key)
# ---------------------------------------------------------------------------
class UserAchievement(Base):
    __tablename__ = "user_achievements"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    achievement_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("achievements.id", ondelete="CASCADE"), primary_key=True
    )
    current_progress: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    progress_percentage: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    is_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completion_data: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    achievement: Mapped[Achievement] = relationship(back_populates="progress")

    __table_args__ = (
        Index("ix_user_achievements_completed", "achievement_id", "is_completed"),
    )

    def __repr__(self) -> str:
        return (
            f"<UserAchievement user={self.user_id} achievement={self.achievement_id} "
            f"pct={self.progress_percentage:.0f} done={self.is_completed}>"
        )


# ---------------------------------------------------------------------------
# AdminLog — append-only audit trail
# ---------------------------------------------------------------------------
class AdminLog(Base):
    __tablename__ = "admin_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    target_table: Mapped[str] = mapped_column(String(50), nullable=False)
    target_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    before_snapshot: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    after_snapshot: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_admin_log_actor_time", "actor_id", "timestamp"),
        Index("ix_admin_log_target", "target_table", "target_id", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<AdminLog id={self.id} actor={self.actor_id} action={self.action_type}>"
