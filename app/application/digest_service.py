"""
Savings digest — periodic email summary of a user's activity.

Daily digest:  at DIGEST_DAILY_HOUR local time, window = last 24 hours.
Weekly digest: at DIGEST_WEEKLY_WEEKDAY / DIGEST_WEEKLY_HOUR, window = last 7 days.

Users with no activity in the window get nothing. Each digest carries a
dedup key per cadence period, so repeated ticks inside the boundary hour
do not resend.
"""
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from zoneinfo import ZoneInfo

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from app.application.notification_dispatcher import DispatchCoordinator
from app.application.notification_preferences import PreferenceStore
from app.application.notification_records import DuplicateNotificationError, RecordStore
from app.application.users import UserDirectory
from app.domain.notification import (
    Category,
    Channel,
    DigestAggregate,
    DigestFrequency,
    NotificationIntent,
    NotificationRecord,
    Priority,
)
from app.infrastructure.db.models import (
    ChallengeParticipationModel,
    SavingsTransactionModel,
    User,
    UserAchievementModel,
)
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)

WINDOW_BY_FREQUENCY = {
    DigestFrequency.DAILY: timedelta(days=1),
    DigestFrequency.WEEKLY: timedelta(days=7),
}

WITHDRAWAL_KIND = "withdrawal"
YIELD_KIND = "yield"


class ActivityLedger:
    """Read-only roll-ups over the savings / gamification read models."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def aggregate(self, user_id: int, start: datetime, end: datetime) -> DigestAggregate:
        with self.session_factory() as db:
            in_window = (
                SavingsTransactionModel.user_id == user_id,
                SavingsTransactionModel.created_at >= start,
                SavingsTransactionModel.created_at < end,
            )
            saved = (
                db.query(func.sum(SavingsTransactionModel.amount))
                .filter(*in_window, SavingsTransactionModel.kind != WITHDRAWAL_KIND)
                .scalar()
            )
            yield_earned = (
                db.query(func.sum(SavingsTransactionModel.amount))
                .filter(*in_window, SavingsTransactionModel.kind == YIELD_KIND)
                .scalar()
            )
            achievements = (
                db.query(func.count(UserAchievementModel.id))
                .filter(
                    UserAchievementModel.user_id == user_id,
                    UserAchievementModel.unlocked_at >= start,
                    UserAchievementModel.unlocked_at < end,
                )
                .scalar()
            )
            challenges = (
                db.query(func.count(ChallengeParticipationModel.id))
                .filter(
                    ChallengeParticipationModel.user_id == user_id,
                    ChallengeParticipationModel.status == "completed",
                    ChallengeParticipationModel.completed_at >= start,
                    ChallengeParticipationModel.completed_at < end,
                )
                .scalar()
            )
            streak = db.query(User.current_streak).filter(User.id == user_id).scalar()

        return DigestAggregate(
            user_id=user_id,
            window_start=start,
            window_end=end,
            amount_saved=Decimal(str(saved or 0)),
            achievements_unlocked=achievements or 0,
            challenges_completed=challenges or 0,
            yield_earned=Decimal(str(yield_earned or 0)),
            streak_days=streak or 0,
        )


def digest_period_key(frequency: DigestFrequency, local_now: datetime) -> str:
    """digest:daily:2026-10-17 / digest:weekly:2026-W42"""
    if frequency == DigestFrequency.DAILY:
        return f"digest:daily:{local_now.date().isoformat()}"
    year, week, _ = local_now.isocalendar()
    return f"digest:weekly:{year}-W{week:02d}"


def due_frequencies(local_now: datetime, daily_hour: int, weekly_weekday: int, weekly_hour: int) -> list[DigestFrequency]:
    """Cadences whose boundary hour contains local_now."""
    due = []
    if local_now.hour == daily_hour:
        due.append(DigestFrequency.DAILY)
    if local_now.weekday() == weekly_weekday and local_now.hour == weekly_hour:
        due.append(DigestFrequency.WEEKLY)
    return due


def _format_amount(value: Decimal) -> str:
    return f"{value.quantize(Decimal('0.01')):,}"


def build_digest_intent(aggregate: DigestAggregate, frequency: DigestFrequency) -> NotificationIntent:
    period = "daily" if frequency == DigestFrequency.DAILY else "weekly"
    data = aggregate.to_dict()
    data["frequency"] = period
    data["amount_saved"] = _format_amount(aggregate.amount_saved)
    data["yield_earned"] = _format_amount(aggregate.yield_earned)
    return NotificationIntent(
        user_id=aggregate.user_id,
        category=Category.DIGEST,
        title=f"Your {period} savings summary",
        body=(
            f"You saved {data['amount_saved']} and earned {data['yield_earned']} in yield. "
            f"Achievements: {aggregate.achievements_unlocked}, "
            f"challenges completed: {aggregate.challenges_completed}."
        ),
        data=data,
        priority=Priority.LOW,
        requested_channels=frozenset({Channel.EMAIL}),
    )


class DigestService:
    def __init__(
        self,
        coordinator: DispatchCoordinator,
        preferences: PreferenceStore,
        records: RecordStore,
        users: UserDirectory,
        ledger: ActivityLedger,
        timezone: str = "UTC",
        daily_hour: int = 8,
        weekly_weekday: int = 0,
        weekly_hour: int = 9,
    ):
        self.coordinator = coordinator
        self.preferences = preferences
        self.records = records
        self.users = users
        self.ledger = ledger
        self.tz = ZoneInfo(timezone)
        self.daily_hour = daily_hour
        self.weekly_weekday = weekly_weekday
        self.weekly_hour = weekly_hour

    def run(self, now: datetime | None = None) -> int:
        """Emit every digest whose cadence boundary is now. Returns number sent."""
        now = now or utcnow()
        local_now = now.astimezone(self.tz)
        total = 0
        for frequency in due_frequencies(local_now, self.daily_hour, self.weekly_weekday, self.weekly_hour):
            total += self.send_digests(frequency, now)
        return total

    def send_digests(self, frequency: DigestFrequency, now: datetime) -> int:
        frequency = DigestFrequency(frequency)
        if frequency == DigestFrequency.NEVER:
            return 0

        user_ids = self.users.active_user_ids()
        cadence = self.preferences.digest_frequency_for(user_ids)
        targets = [uid for uid in user_ids if cadence[uid] == frequency]
        if not targets:
            logger.info("%s digest: no users to notify", frequency.value.capitalize())
            return 0

        sent = 0
        for user_id in targets:
            try:
                if self.emit_for_user(user_id, frequency, now) is not None:
                    sent += 1
            except SQLAlchemyError:
                raise
            except Exception:
                logger.exception("%s digest failed for user %d", frequency.value.capitalize(), user_id)

        logger.info(
            "%s digest: sent %d digest(s) to %d candidate user(s)",
            frequency.value.capitalize(), sent, len(targets),
        )
        return sent

    def emit_for_user(self, user_id: int, frequency: DigestFrequency, now: datetime) -> NotificationRecord | None:
        """
        Compute and send one user's digest.

        Returns None when the user had no activity or already got this period's digest.
        """
        dedup_key = digest_period_key(frequency, now.astimezone(self.tz))
        if self.records.has_dedup_key(user_id, dedup_key):
            logger.debug("Digest %s already emitted for user_id=%s", dedup_key, user_id)
            return None

        aggregate = self.ledger.aggregate(user_id, now - WINDOW_BY_FREQUENCY[frequency], now)
        if not aggregate.has_activity:
            logger.debug("No activity for user_id=%s in %s window, skipping digest", user_id, frequency.value)
            return None

        intent = build_digest_intent(aggregate, frequency)
        try:
            # A digest is its own category; it bypasses per-category routing
            return self.coordinator.deliver(intent, {Channel.EMAIL}, dedup_key=dedup_key)
        except DuplicateNotificationError:
            logger.info("Digest %s emitted concurrently for user_id=%s", dedup_key, user_id)
            return None
