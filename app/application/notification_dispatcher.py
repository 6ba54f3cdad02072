"""
Dispatch coordinator — routes an intent, persists one record and fans
delivery out across channels.

Flow for submit(intent):
  1. preferences + quiet hours -> route() -> allowed channels
  2. no channels  -> no-op, nothing persisted
  3. deferred     -> persisted as `scheduled`, reprocessor dispatches later
  4. immediate    -> record committed, then in-app / push / email attempted
                     concurrently, each bounded by channel_timeout; one channel
                     failing never affects another
  5. outcomes     -> sent / partial_failure / failed (+ delivery_error)

Channel errors never reach the caller; store errors do.

A timed-out attempt cannot be interrupted: its worker thread stays busy until
the collaborator returns. While every worker is held that way, new attempts
wait in the pool queue and are recorded as never started rather than run late.
"""
import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field

from sqlalchemy.exc import SQLAlchemyError

from app.application.channels import MailSender, PushResult, PushSender, RealtimeBroadcaster
from app.application.email_service import render_digest_email, render_notification_email
from app.application.notification_preferences import PreferenceStore
from app.application.notification_records import RecordStore
from app.application.push_service import build_push_payload
from app.application.push_subscriptions import SubscriptionRegistry
from app.application.users import Recipient, UserDirectory
from app.domain.notification import (
    Category,
    Channel,
    DeliveryStatus,
    NotificationIntent,
    NotificationRecord,
    NotificationValidationError,
    Priority,
    PushEndpoint,
    ordered_channels,
)
from app.domain.quiet_hours import is_suppressed
from app.domain.routing import route
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)

EXPIRED_BEFORE_DISPATCH = "expired before dispatch"


@dataclass(frozen=True)
class ChannelOutcome:
    channel: Channel
    ok: bool
    error: str | None = None
    gone_endpoints: tuple[PushEndpoint, ...] = ()


@dataclass
class _DeliveryContext:
    """Lookups done before fan-out so channel workers never touch the database."""
    recipient: Recipient | None = None
    endpoints: list[PushEndpoint] = field(default_factory=list)


def aggregate_status(outcomes: list[ChannelOutcome]) -> tuple[DeliveryStatus, str | None]:
    """
    sent            — every attempted channel succeeded
    partial_failure — at least one succeeded and at least one failed
    failed          — every attempted channel failed
    delivery_error names each failed channel: "push: timed out after 10s; email: ..."
    """
    failed = [o for o in outcomes if not o.ok]
    if not failed:
        return DeliveryStatus.SENT, None
    error = "; ".join(f"{o.channel.value}: {o.error or 'unknown error'}" for o in failed)
    if len(failed) == len(outcomes):
        return DeliveryStatus.FAILED, error
    return DeliveryStatus.PARTIAL_FAILURE, error


def in_app_payload(record: NotificationRecord) -> dict:
    return {
        "id": record.id,
        "category": record.category.value,
        "title": record.title,
        "body": record.body,
        "data": record.data,
        "priority": record.priority.value,
        "created_at": record.created_at.isoformat() if record.created_at else None,
        "read": record.is_read,
    }


def _describe(exc: Exception) -> str:
    return str(exc) or exc.__class__.__name__


class DispatchCoordinator:
    def __init__(
        self,
        preferences: PreferenceStore,
        records: RecordStore,
        subscriptions: SubscriptionRegistry,
        users: UserDirectory,
        broadcaster: RealtimeBroadcaster,
        push_sender: PushSender,
        mail_sender: MailSender,
        channel_timeout: float = 10.0,
        max_workers: int = 8,
        clock=utcnow,
    ):
        self.preferences = preferences
        self.records = records
        self.subscriptions = subscriptions
        self.users = users
        self.broadcaster = broadcaster
        self.push_sender = push_sender
        self.mail_sender = mail_sender
        self.channel_timeout = channel_timeout
        self.clock = clock
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notify-channel")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(self, intent: NotificationIntent) -> NotificationRecord | None:
        """
        Route, persist and (unless deferred) deliver one intent.

        Returns None when routing left no channel (nothing is persisted).
        """
        if not isinstance(intent, NotificationIntent):
            raise NotificationValidationError("submit() expects a NotificationIntent")

        now = self.clock()
        channels = self.resolve_channels(intent, now)
        if not channels:
            logger.info(
                "No allowed channels for %s notification to user_id=%s, skipping",
                intent.category.value, intent.user_id,
            )
            return None

        if intent.is_deferred(now):
            record = self.records.create_scheduled(intent, channels, now)
            logger.info(
                "Notification %s scheduled for %s (user_id=%s)",
                record.id, record.scheduled_for.isoformat(), record.user_id,
            )
            return record

        return self.deliver(intent, channels)

    def deliver(self, intent: NotificationIntent, channels, dedup_key: str | None = None) -> NotificationRecord:
        """Persist and dispatch now on exactly `channels`, without routing."""
        channels = frozenset(channels)
        context = self._prepare(intent.user_id, channels)
        outcomes: list[ChannelOutcome] = []

        def _deliver(record: NotificationRecord):
            outcomes.extend(self._fan_out(record, channels, context))
            return aggregate_status(outcomes)

        record = self.records.create_dispatched(intent, channels, self.clock(), _deliver, dedup_key=dedup_key)
        self._log_result(record)
        self._heal_endpoints(outcomes)
        return record

    def dispatch_scheduled(self, record: NotificationRecord) -> NotificationRecord | None:
        """
        Dispatch a claimed scheduled record.

        Channels are re-routed with the user's current preferences and quiet
        hours, starting from the originally requested channels. A record whose
        channels are now all suppressed is discarded (returns None).
        """
        now = self.clock()
        if record.expires_at is not None and record.expires_at <= now:
            logger.info("Scheduled notification %s expired before dispatch", record.id)
            return self.records.complete_scheduled(
                record.id, DeliveryStatus.FAILED, record.resolved_channels, EXPIRED_BEFORE_DISPATCH, now
            )

        channels = self.resolve_channels(record.to_intent(), now)
        if not channels:
            logger.info("Scheduled notification %s suppressed at dispatch time, discarding", record.id)
            self.records.discard_scheduled(record.id)
            return None

        context = self._prepare(record.user_id, channels)
        outcomes = self._fan_out(record, channels, context)
        status, error = aggregate_status(outcomes)
        result = self.records.complete_scheduled(record.id, status, channels, error, self.clock())
        if result is not None:
            self._log_result(result)
        self._heal_endpoints(outcomes)
        return result

    def resolve_channels(self, intent: NotificationIntent, now) -> frozenset[Channel]:
        prefs = self.preferences.get_preferences(intent.user_id)
        # Urgent notifications are never held back by quiet hours
        quiet = False if intent.priority == Priority.URGENT else is_suppressed(prefs.quiet_hours, now)
        return route(intent, prefs.for_category(intent.category), quiet)

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work; with wait=True in-flight channel attempts finish first."""
        self._executor.shutdown(wait=wait)

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    def _prepare(self, user_id: int, channels) -> _DeliveryContext:
        context = _DeliveryContext()
        if Channel.EMAIL in channels:
            context.recipient = self.users.get_recipient(user_id)
        if Channel.PUSH in channels:
            context.endpoints = self.subscriptions.list_active(user_id)
        return context

    def _fan_out(self, record: NotificationRecord, channels, context: _DeliveryContext) -> list[ChannelOutcome]:
        futures = {
            self._executor.submit(self._attempt, channel, record, context): channel
            for channel in ordered_channels(channels)
        }
        # All attempts start together, so one deadline bounds each of them
        _, pending = wait(futures, timeout=self.channel_timeout)

        outcomes = []
        for future, channel in futures.items():
            if future not in pending:
                outcomes.append(future.result())
            elif future.cancel():
                logger.warning(
                    "%s delivery of notification %s not started within %gs, dispatch pool is busy",
                    channel.value, record.id, self.channel_timeout,
                )
                outcomes.append(ChannelOutcome(
                    channel, False, f"not started within {self.channel_timeout:g}s (dispatch pool busy)"
                ))
            else:
                logger.warning(
                    "%s delivery of notification %s timed out after %gs",
                    channel.value, record.id, self.channel_timeout,
                )
                outcomes.append(ChannelOutcome(channel, False, f"timed out after {self.channel_timeout:g}s"))
        return outcomes

    def _attempt(self, channel: Channel, record: NotificationRecord, context: _DeliveryContext) -> ChannelOutcome:
        try:
            if channel == Channel.IN_APP:
                self.broadcaster.push(record.user_id, in_app_payload(record))
                return ChannelOutcome(channel, True)
            if channel == Channel.PUSH:
                return self._send_push(record, context.endpoints)
            return self._send_email(record, context.recipient)
        except Exception as e:
            logger.exception("Failed to send %s notification %s", channel.value, record.id)
            return ChannelOutcome(channel, False, _describe(e))

    def _send_push(self, record: NotificationRecord, endpoints: list[PushEndpoint]) -> ChannelOutcome:
        if not endpoints:
            logger.debug("No push subscriptions for user_id=%s", record.user_id)
            return ChannelOutcome(Channel.PUSH, True)

        payload = build_push_payload(record)
        delivered = 0
        gone: list[PushEndpoint] = []
        errors: list[str] = []
        for endpoint in endpoints:
            try:
                result = self.push_sender.send(endpoint, payload, record.priority)
            except Exception as e:
                logger.exception("Push to subscription %s failed", endpoint.id)
                result = PushResult.TRANSIENT_ERROR
                errors.append(_describe(e))
            if result == PushResult.OK:
                delivered += 1
            elif result == PushResult.GONE:
                gone.append(endpoint)

        if delivered:
            return ChannelOutcome(Channel.PUSH, True, gone_endpoints=tuple(gone))

        transient = len(endpoints) - len(gone)
        error = f"all {len(endpoints)} endpoint(s) failed (gone: {len(gone)}, transient: {transient})"
        if errors:
            error += f": {errors[0]}"
        return ChannelOutcome(Channel.PUSH, False, error, gone_endpoints=tuple(gone))

    def _send_email(self, record: NotificationRecord, recipient: Recipient | None) -> ChannelOutcome:
        if recipient is None:
            return ChannelOutcome(Channel.EMAIL, False, "user has no email address")
        if record.category == Category.DIGEST:
            subject, html, text = render_digest_email(record, recipient.username)
        else:
            subject, html, text = render_notification_email(record, recipient.username)
        self.mail_sender.send(recipient.email, subject, html, text)
        return ChannelOutcome(Channel.EMAIL, True)

    def _heal_endpoints(self, outcomes: list[ChannelOutcome]) -> None:
        for outcome in outcomes:
            for endpoint in outcome.gone_endpoints:
                try:
                    self.subscriptions.mark_invalid(endpoint.endpoint, seen_last_updated=endpoint.last_updated)
                except SQLAlchemyError:
                    # The record is already stored; the endpoint is retried and re-reported next time
                    logger.exception("Could not deactivate gone push endpoint %s", endpoint.id)

    def _log_result(self, record: NotificationRecord) -> None:
        channels = ",".join(ch.value for ch in ordered_channels(record.resolved_channels))
        if record.status == DeliveryStatus.SENT:
            logger.info("Notification %s sent via %s (user_id=%s)", record.id, channels, record.user_id)
        else:
            logger.warning(
                "Notification %s %s via %s (user_id=%s): %s",
                record.id, record.status.value, channels, record.user_id, record.delivery_error,
            )
