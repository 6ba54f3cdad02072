"""
Service wiring — builds the notification engine with its collaborators.

One NotificationServices instance per process (app lifespan or CLI run);
nothing in the engine reaches for module-level singletons.
"""
import logging
from dataclasses import dataclass

from sqlalchemy.orm import sessionmaker

from app.application.channels import LoggingBroadcaster, MailSender, PushSender, RealtimeBroadcaster
from app.application.digest_service import ActivityLedger, DigestService
from app.application.email_service import SmtpMailSender
from app.application.notification_dispatcher import DispatchCoordinator
from app.application.notification_preferences import PreferenceStore
from app.application.notification_records import RecordStore
from app.application.push_service import WebPushSender
from app.application.push_subscriptions import SubscriptionRegistry
from app.application.users import UserDirectory
from app.config import Settings, get_settings
from app.infrastructure.db.session import get_session_factory

logger = logging.getLogger(__name__)


@dataclass
class NotificationServices:
    settings: Settings
    preferences: PreferenceStore
    records: RecordStore
    subscriptions: SubscriptionRegistry
    users: UserDirectory
    broadcaster: RealtimeBroadcaster
    push_sender: PushSender
    coordinator: DispatchCoordinator
    digests: DigestService

    def close(self) -> None:
        """Let in-flight channel attempts finish, then release the worker pool."""
        self.coordinator.shutdown(wait=True)


def build_services(
    session_factory: sessionmaker | None = None,
    settings: Settings | None = None,
    broadcaster: RealtimeBroadcaster | None = None,
    push_sender: PushSender | None = None,
    mail_sender: MailSender | None = None,
) -> NotificationServices:
    settings = settings or get_settings()
    session_factory = session_factory or get_session_factory()

    preferences = PreferenceStore(session_factory)
    records = RecordStore(session_factory)
    subscriptions = SubscriptionRegistry(session_factory)
    users = UserDirectory(session_factory)
    broadcaster = broadcaster or LoggingBroadcaster()
    push_sender = push_sender or WebPushSender(settings)
    mail_sender = mail_sender or SmtpMailSender(settings)

    coordinator = DispatchCoordinator(
        preferences=preferences,
        records=records,
        subscriptions=subscriptions,
        users=users,
        broadcaster=broadcaster,
        push_sender=push_sender,
        mail_sender=mail_sender,
        channel_timeout=settings.CHANNEL_TIMEOUT_SECONDS,
        max_workers=settings.DISPATCH_MAX_WORKERS,
    )
    digests = DigestService(
        coordinator=coordinator,
        preferences=preferences,
        records=records,
        users=users,
        ledger=ActivityLedger(session_factory),
        timezone=settings.TIMEZONE,
        daily_hour=settings.DIGEST_DAILY_HOUR,
        weekly_weekday=settings.DIGEST_WEEKLY_WEEKDAY,
        weekly_hour=settings.DIGEST_WEEKLY_HOUR,
    )
    logger.debug("Notification services built (timeout=%ss, workers=%d)",
                 settings.CHANNEL_TIMEOUT_SECONDS, settings.DISPATCH_MAX_WORKERS)
    return NotificationServices(
        settings=settings,
        preferences=preferences,
        records=records,
        subscriptions=subscriptions,
        users=users,
        broadcaster=broadcaster,
        push_sender=push_sender,
        coordinator=coordinator,
        digests=digests,
    )
