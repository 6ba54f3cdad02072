"""
Tests for due-scheduled reprocessing and the CLI entry point.

Covers:
  - Due records dispatched exactly once, even when claimed twice
  - Re-route at dispatch time with current preferences
  - Records whose channels are all suppressed now are discarded
  - Expired records closed as failed
  - CLI exit status
"""
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from app.application import reprocessor
from app.application.reprocessor import process_due_notifications
from app.domain.notification import Category, Channel, DeliveryStatus, NotificationIntent


LEASE = timedelta(minutes=15)


def _schedule(coordinator, clock, channels=frozenset({Channel.IN_APP, Channel.EMAIL}), **kw):
    intent = NotificationIntent(
        user_id=1, category=Category.CHALLENGE, title="Challenge starts", body="Weekly saver starts now",
        requested_channels=channels, scheduled_for=clock.now + timedelta(minutes=30), **kw,
    )
    return coordinator.submit(intent)


@pytest.fixture
def user(make_user):
    return make_user(1)


class TestProcessDue:
    def test_dispatches_due_record(self, coordinator, records, clock, user, broadcaster, mail_sender):
        scheduled = _schedule(coordinator, clock)
        clock.now = clock.now + timedelta(hours=1)

        result = process_due_notifications(coordinator, records, clock.now, LEASE)

        assert (result.claimed, result.dispatched) == (1, 1)
        stored = records.get(scheduled.id)
        assert stored.status is DeliveryStatus.SENT
        assert stored.dispatched_at == clock.now
        assert len(broadcaster.pushed) == 1
        assert len(mail_sender.sent) == 1

    def test_not_yet_due_untouched(self, coordinator, records, clock, user, broadcaster):
        scheduled = _schedule(coordinator, clock)

        result = process_due_notifications(coordinator, records, clock.now, LEASE)

        assert result.claimed == 0
        assert records.get(scheduled.id).status is DeliveryStatus.SCHEDULED
        assert broadcaster.pushed == []

    def test_claimed_twice_dispatches_once(self, coordinator, records, clock, user, broadcaster):
        scheduled = _schedule(coordinator, clock)
        clock.now = clock.now + timedelta(hours=1)

        first = records.claim(scheduled.id, clock.now, LEASE)
        second = records.claim(scheduled.id, clock.now, LEASE)
        assert first is not None and second is None

        coordinator.dispatch_scheduled(first)
        again = process_due_notifications(coordinator, records, clock.now, LEASE)

        assert again.claimed == 0
        assert len(broadcaster.pushed) == 1

    def test_two_passes_dispatch_once(self, coordinator, records, clock, user, broadcaster):
        _schedule(coordinator, clock)
        clock.now = clock.now + timedelta(hours=1)

        process_due_notifications(coordinator, records, clock.now, LEASE)
        process_due_notifications(coordinator, records, clock.now + timedelta(seconds=1), LEASE)

        assert len(broadcaster.pushed) == 1

    def test_reroutes_with_current_preferences(self, coordinator, records, preferences, clock, user, mail_sender):
        scheduled = _schedule(coordinator, clock)
        assert scheduled.resolved_channels == {Channel.IN_APP, Channel.EMAIL}

        preferences.upsert(1, {"categories": {"challenge": {"email": False}}})
        clock.now = clock.now + timedelta(hours=1)
        process_due_notifications(coordinator, records, clock.now, LEASE)

        stored = records.get(scheduled.id)
        assert stored.resolved_channels == {Channel.IN_APP}
        assert mail_sender.sent == []

    def test_reroute_may_enable_channel_suppressed_at_creation(self, coordinator, records, preferences, clock, user):
        preferences.upsert(1, {"categories": {"challenge": {"email": False}}})
        scheduled = _schedule(coordinator, clock)
        assert scheduled.resolved_channels == {Channel.IN_APP}

        preferences.upsert(1, {"categories": {"challenge": {"email": True}}})
        clock.now = clock.now + timedelta(hours=1)
        process_due_notifications(coordinator, records, clock.now, LEASE)

        assert records.get(scheduled.id).resolved_channels == {Channel.IN_APP, Channel.EMAIL}

    def test_fully_suppressed_at_dispatch_is_discarded(self, coordinator, records, preferences, clock, user):
        scheduled = _schedule(coordinator, clock, channels=frozenset({Channel.EMAIL}))
        preferences.upsert(1, {"categories": {"challenge": {"email": False}}})
        clock.now = clock.now + timedelta(hours=1)

        result = process_due_notifications(coordinator, records, clock.now, LEASE)

        assert result.discarded == 1
        assert records.get(scheduled.id) is None

    def test_expired_before_dispatch(self, coordinator, records, clock, user, broadcaster):
        scheduled = _schedule(coordinator, clock, expires_at=clock.now + timedelta(minutes=45))
        clock.now = clock.now + timedelta(hours=1)

        result = process_due_notifications(coordinator, records, clock.now, LEASE)

        assert result.expired == 1
        stored = records.get(scheduled.id)
        assert stored.status is DeliveryStatus.FAILED
        assert stored.delivery_error == "expired before dispatch"
        assert broadcaster.pushed == []

    def test_store_error_propagates(self, coordinator, clock):
        records = MagicMock()
        records.claim_due.side_effect = OperationalError("SELECT", {}, Exception("db down"))
        with pytest.raises(OperationalError):
            process_due_notifications(coordinator, records, clock.now, LEASE)


class TestCli:
    def _services(self):
        services = MagicMock()
        services.settings.SCHEDULED_CLAIM_LEASE_MINUTES = 15
        return services

    def test_success_exit_code(self):
        services = self._services()
        with patch.object(reprocessor, "build_services", return_value=services), \
                patch.object(reprocessor, "process_due_notifications") as process:
            code = reprocessor.main(["--now", "2026-10-17T08:00:00+00:00"])

        assert code == 0
        now = process.call_args[0][2]
        assert now.isoformat() == "2026-10-17T08:00:00+00:00"
        services.digests.run.assert_called_once_with(now)
        services.close.assert_called_once()

    def test_store_failure_exit_code(self):
        services = self._services()
        with patch.object(reprocessor, "build_services", return_value=services), \
                patch.object(reprocessor, "process_due_notifications",
                             side_effect=OperationalError("SELECT", {}, Exception("db down"))):
            code = reprocessor.main(["--skip-digest"])

        assert code == 1
        services.digests.run.assert_not_called()
        services.close.assert_called_once()

    def test_cleanup_flag(self):
        services = self._services()
        services.settings.NOTIFICATION_RETENTION_DAYS = 30
        services.settings.PUSH_SUBSCRIPTION_STALE_DAYS = 90
        with patch.object(reprocessor, "build_services", return_value=services), \
                patch.object(reprocessor, "process_due_notifications"):
            code = reprocessor.main(["--skip-digest", "--cleanup", "--now", "2026-10-17T08:00:00"])

        assert code == 0
        services.records.cleanup.assert_called_once()
        services.subscriptions.purge_stale.assert_called_once()

    def test_invalid_now_rejected(self):
        with pytest.raises(SystemExit):
            reprocessor.main(["--now", "yesterday"])
