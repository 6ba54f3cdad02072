"""
Tests for the savings digest.

Covers:
  - Activity roll-up over the window (withdrawals excluded, yield counted)
  - Skip rule: no activity in the window -> no digest
  - Cadence: daily / weekly boundary hours in the configured time zone
  - Dedup: one digest per user per period, even with repeated ticks
  - Digest bypasses per-category routing and goes out by email only
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from app.application.digest_service import (
    ActivityLedger,
    DigestService,
    digest_period_key,
    due_frequencies,
)
from app.domain.notification import Category, Channel, DeliveryStatus, DigestFrequency
from app.infrastructure.db.models import (
    ChallengeParticipationModel,
    SavingsTransactionModel,
    UserAchievementModel,
)


_tz = timezone.utc
# Monday 2026-10-19 09:00 UTC falls in the weekly boundary hour
MONDAY_9 = datetime(2026, 10, 19, 9, 0, tzinfo=_tz)
SATURDAY_8 = datetime(2026, 10, 17, 8, 0, tzinfo=_tz)


def _tx(db, user_id, kind, amount, at):
    db.add(SavingsTransactionModel(user_id=user_id, kind=kind, amount=Decimal(amount), created_at=at))


@pytest.fixture
def ledger(session_factory):
    return ActivityLedger(session_factory)


@pytest.fixture
def digests(coordinator, preferences, records, users, ledger):
    return DigestService(coordinator, preferences, records, users, ledger, timezone="UTC",
                         daily_hour=8, weekly_weekday=0, weekly_hour=9)


class TestActivityLedger:
    def test_rollup(self, ledger, db_session, make_user):
        make_user(1, current_streak=6)
        end = SATURDAY_8
        inside = end - timedelta(hours=3)
        _tx(db_session, 1, "deposit", "10.00", inside)
        _tx(db_session, 1, "round_up", "0.75", inside)
        _tx(db_session, 1, "yield", "0.25", inside)
        _tx(db_session, 1, "withdrawal", "50.00", inside)
        _tx(db_session, 1, "deposit", "99.00", end - timedelta(days=2))  # outside window
        _tx(db_session, 2, "deposit", "99.00", inside)  # other user
        db_session.add(UserAchievementModel(user_id=1, achievement_code="first_save", unlocked_at=inside))
        db_session.add(ChallengeParticipationModel(user_id=1, challenge_id=7, status="completed", completed_at=inside))
        db_session.add(ChallengeParticipationModel(user_id=1, challenge_id=8, status="active", completed_at=None))
        db_session.commit()

        agg = ledger.aggregate(1, end - timedelta(days=1), end)

        assert agg.amount_saved == Decimal("11.00")
        assert agg.yield_earned == Decimal("0.25")
        assert agg.achievements_unlocked == 1
        assert agg.challenges_completed == 1
        assert agg.streak_days == 6
        assert agg.has_activity is True

    def test_window_end_is_exclusive(self, ledger, db_session, make_user):
        make_user(1)
        _tx(db_session, 1, "deposit", "5.00", SATURDAY_8)
        db_session.commit()

        assert ledger.aggregate(1, SATURDAY_8 - timedelta(days=1), SATURDAY_8).has_activity is False

    def test_streak_without_activity(self, ledger, make_user):
        make_user(1, current_streak=30)
        agg = ledger.aggregate(1, SATURDAY_8 - timedelta(days=1), SATURDAY_8)
        assert agg.streak_days == 30
        assert agg.has_activity is False


class TestCadence:
    def test_daily_hour(self):
        assert due_frequencies(SATURDAY_8, 8, 0, 9) == [DigestFrequency.DAILY]
        assert due_frequencies(SATURDAY_8.replace(hour=9), 8, 0, 9) == []

    def test_weekly_weekday_and_hour(self):
        assert due_frequencies(MONDAY_9, 8, 0, 9) == [DigestFrequency.WEEKLY]
        assert due_frequencies(MONDAY_9.replace(hour=8), 8, 0, 9) == [DigestFrequency.DAILY]

    def test_period_keys(self):
        assert digest_period_key(DigestFrequency.DAILY, SATURDAY_8) == "digest:daily:2026-10-17"
        assert digest_period_key(DigestFrequency.WEEKLY, MONDAY_9) == "digest:weekly:2026-W43"


class TestDigestService:
    def _activity(self, db_session, user_id, at):
        _tx(db_session, user_id, "deposit", "20.00", at - timedelta(hours=1))
        db_session.commit()

    def test_sends_email_digest(self, digests, preferences, db_session, make_user, mail_sender, broadcaster, records):
        make_user(1, username="ana")
        preferences.upsert(1, {"digest": "daily"})
        self._activity(db_session, 1, SATURDAY_8)

        sent = digests.run(SATURDAY_8)

        assert sent == 1
        assert len(mail_sender.sent) == 1
        assert "daily savings summary" in mail_sender.sent[0]["subject"]
        assert "Saved: 20.00" in mail_sender.sent[0]["text"]
        assert broadcaster.pushed == []

        record = records.list_for_user(1, now=SATURDAY_8).items[0]
        assert record.category is Category.DIGEST
        assert record.resolved_channels == {Channel.EMAIL}
        assert record.status is DeliveryStatus.SENT

    def test_skip_user_without_activity(self, digests, preferences, make_user, mail_sender, records):
        make_user(1, current_streak=10)
        preferences.upsert(1, {"digest": "daily"})

        assert digests.run(SATURDAY_8) == 0
        assert mail_sender.sent == []
        assert records.list_for_user(1, now=SATURDAY_8).total == 0

    def test_repeated_tick_does_not_resend(self, digests, preferences, db_session, make_user, mail_sender):
        make_user(1)
        preferences.upsert(1, {"digest": "daily"})
        self._activity(db_session, 1, SATURDAY_8)

        digests.run(SATURDAY_8)
        digests.run(SATURDAY_8 + timedelta(minutes=1))

        assert len(mail_sender.sent) == 1

    def test_only_matching_cadence(self, digests, preferences, db_session, make_user, mail_sender):
        make_user(1)
        make_user(2)
        make_user(3)
        preferences.upsert(1, {"digest": "daily"})
        preferences.upsert(3, {"digest": "never"})
        for uid in (1, 2, 3):
            self._activity(db_session, uid, MONDAY_9)

        # user 2 has the default (weekly) cadence
        assert digests.run(MONDAY_9) == 1
        assert [m["address"] for m in mail_sender.sent] == ["user2@example.com"]

    def test_inactive_users_skipped(self, digests, preferences, db_session, make_user, mail_sender):
        make_user(1, is_active=False)
        preferences.upsert(1, {"digest": "daily"})
        self._activity(db_session, 1, SATURDAY_8)

        assert digests.run(SATURDAY_8) == 0

    def test_digest_ignores_category_preferences(self, digests, preferences, db_session, make_user, mail_sender):
        make_user(1)
        preferences.upsert(1, {"digest": "daily", "categories": {"digest": {"email": False}}})
        self._activity(db_session, 1, SATURDAY_8)

        assert digests.run(SATURDAY_8) == 1

    def test_one_user_failing_does_not_stop_others(self, digests, preferences, db_session, make_user,
                                                   mail_sender, monkeypatch):
        make_user(1)
        make_user(2)
        for uid in (1, 2):
            preferences.upsert(uid, {"digest": "daily"})
            self._activity(db_session, uid, SATURDAY_8)

        original = digests.ledger.aggregate

        def flaky(user_id, start, end):
            if user_id == 1:
                raise RuntimeError("bad row")
            return original(user_id, start, end)

        monkeypatch.setattr(digests.ledger, "aggregate", flaky)

        assert digests.run(SATURDAY_8) == 1
        assert [m["address"] for m in mail_sender.sent] == ["user2@example.com"]

    def test_outside_boundary_hour_sends_nothing(self, digests, preferences, db_session, make_user, mail_sender):
        make_user(1)
        preferences.upsert(1, {"digest": "daily"})
        self._activity(db_session, 1, SATURDAY_8)

        assert digests.run(SATURDAY_8 + timedelta(hours=3)) == 0
