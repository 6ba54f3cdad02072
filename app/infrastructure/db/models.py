"""
SQLAlchemy ORM models (notification tables + activity read models)
"""
from decimal import Decimal
from datetime import time as time_type
from sqlalchemy import String, Integer, Text, TIMESTAMP, Time, func, Boolean, Numeric, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import JSONB

from app.infrastructure.db.session import Base


class User(Base):
    """
    User model (existing)
    """
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    username: Mapped[str] = mapped_column(String(64), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")

    # Consecutive saving days, maintained by the savings module
    current_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    created_at: Mapped[TIMESTAMP] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False
    )


# ============================================================================
# Activity read models (written by savings / gamification modules)
# ============================================================================


class SavingsTransactionModel(Base):
    """Read model: savings ledger entries (deposit, round_up, yield, withdrawal)"""
    __tablename__ = "savings_transactions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(precision=20, scale=2), nullable=False)
    created_at: Mapped[TIMESTAMP] = mapped_column(TIMESTAMP(timezone=True), nullable=False, index=True)


class UserAchievementModel(Base):
    """Read model: achievements unlocked by a user"""
    __tablename__ = "user_achievements"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    achievement_code: Mapped[str] = mapped_column(String(64), nullable=False)
    unlocked_at: Mapped[TIMESTAMP] = mapped_column(TIMESTAMP(timezone=True), nullable=False, index=True)


class ChallengeParticipationModel(Base):
    """Read model: a user's participation in a savings challenge"""
    __tablename__ = "challenge_participants"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    challenge_id: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)  # active, completed, abandoned
    completed_at: Mapped[TIMESTAMP | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)


# ============================================================================
# Notifications
# ============================================================================


class NotificationPreferenceModel(Base):
    """Per-user channel preferences, quiet hours and digest cadence."""
    __tablename__ = "notification_preferences"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)

    # {"achievement": {"in_app": true, "push": true, "email": false}, ...}
    # Missing categories fall back to the default table.
    channels_json: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)

    quiet_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    quiet_start: Mapped[time_type] = mapped_column(Time, nullable=False, default=time_type(22, 0))
    quiet_end: Mapped[time_type] = mapped_column(Time, nullable=False, default=time_type(8, 0))
    quiet_timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC", server_default="UTC")

    digest_frequency: Mapped[str] = mapped_column(
        String(16), nullable=False, default="weekly", server_default="weekly"
    )  # never / daily / weekly

    updated_at: Mapped[TIMESTAMP] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


class NotificationModel(Base):
    """One persisted notification record per submitted intent."""
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    category: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    data_json: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="medium")

    requested_channels: Mapped[list] = mapped_column(JSONB, nullable=False)
    resolved_channels: Mapped[list] = mapped_column(JSONB, nullable=False)

    status: Mapped[str] = mapped_column(String(24), nullable=False)  # scheduled / sent / partial_failure / failed
    delivery_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    scheduled_for: Mapped[TIMESTAMP | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    expires_at: Mapped[TIMESTAMP | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    # Set by the reprocessor when it takes a due scheduled record
    claimed_at: Mapped[TIMESTAMP | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    dispatched_at: Mapped[TIMESTAMP | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    read_at: Mapped[TIMESTAMP | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    # e.g. "digest:daily:2026-10-17"; NULL for regular notifications
    dedup_key: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[TIMESTAMP] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("user_id", "dedup_key", name="uq_notification_dedup"),
        Index("ix_notifications_user_unread", "user_id", "is_read"),
        Index("ix_notifications_due", "status", "scheduled_for"),
    )


class PushSubscription(Base):
    """Web Push subscription for a user device."""
    __tablename__ = "push_subscriptions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    endpoint: Mapped[str] = mapped_column(Text, nullable=False)
    p256dh: Mapped[str] = mapped_column(Text, nullable=False)
    auth: Mapped[str] = mapped_column(Text, nullable=False)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)
    device_type: Mapped[str | None] = mapped_column(String(16), nullable=True)  # mobile / desktop / tablet

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    deactivated_reason: Mapped[str | None] = mapped_column(String(16), nullable=True)  # unsubscribed / gone

    created_at: Mapped[TIMESTAMP] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )
    last_updated: Mapped[TIMESTAMP] = mapped_column(TIMESTAMP(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "endpoint", name="uq_push_user_endpoint"),
    )
