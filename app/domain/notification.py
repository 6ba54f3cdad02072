"""
Notification domain types — intents, records, preferences, digest aggregates.

Closed vocabularies (category, channel, priority, status) are str-enums so
they compare equal to their stored string values and are validated at the
boundary where external input enters.
"""
from dataclasses import dataclass, field
from datetime import datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable


class NotificationValidationError(ValueError):
    pass


class Category(str, Enum):
    ACHIEVEMENT = "achievement"
    CHALLENGE = "challenge"
    FRIEND = "friend"
    TRANSACTION = "transaction"
    SYSTEM = "system"
    SAVINGS_MILESTONE = "savings_milestone"
    # Periodic summary; emitted by the digest job only
    DIGEST = "digest"


class Channel(str, Enum):
    IN_APP = "in_app"
    PUSH = "push"
    EMAIL = "email"


# Stable iteration order for channel sets (logs, diagnostics, persistence)
CHANNEL_ORDER: tuple[Channel, ...] = (Channel.IN_APP, Channel.PUSH, Channel.EMAIL)


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class DeliveryStatus(str, Enum):
    SCHEDULED = "scheduled"
    SENT = "sent"
    PARTIAL_FAILURE = "partial_failure"
    FAILED = "failed"


class DigestFrequency(str, Enum):
    NEVER = "never"
    DAILY = "daily"
    WEEKLY = "weekly"


def coerce_enum(enum_cls, value, field_name: str):
    """Return enum_cls(value) or raise NotificationValidationError."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise NotificationValidationError(
            f"Invalid {field_name} {value!r} (expected one of: {allowed})"
        ) from None


def coerce_channels(values: Iterable) -> frozenset[Channel]:
    return frozenset(coerce_enum(Channel, v, "channel") for v in values)


def ordered_channels(channels: Iterable[Channel]) -> list[Channel]:
    present = set(channels)
    return [ch for ch in CHANNEL_ORDER if ch in present]


def _require_aware(value: datetime | None, field_name: str) -> None:
    if value is not None and value.tzinfo is None:
        raise NotificationValidationError(f"{field_name} must be timezone-aware")


@dataclass(frozen=True)
class CategoryPreference:
    """Channel enablement for one notification category."""
    in_app: bool
    push: bool
    email: bool

    def allows(self, channel: Channel) -> bool:
        if channel == Channel.IN_APP:
            return self.in_app
        if channel == Channel.PUSH:
            return self.push
        return self.email

    def to_dict(self) -> dict[str, bool]:
        return {"in_app": self.in_app, "push": self.push, "email": self.email}


@dataclass(frozen=True)
class QuietHoursConfig:
    """
    Push suppression window in wall-clock time of `timezone`.

    start_time > end_time means the window wraps midnight (22:00–08:00).
    """
    enabled: bool = False
    start_time: time = time(22, 0)
    end_time: time = time(8, 0)
    timezone: str = "UTC"


@dataclass(frozen=True)
class NotificationPreferences:
    """Everything the engine needs to know about one user's settings."""
    user_id: int
    categories: dict[Category, CategoryPreference]
    quiet_hours: QuietHoursConfig
    digest: DigestFrequency

    def for_category(self, category: Category) -> CategoryPreference:
        return self.categories[category]


@dataclass
class NotificationIntent:
    """
    A request to notify a user, before routing and persistence.

    scheduled_for=None means deliver immediately.
    """
    user_id: int
    category: Category
    title: str
    body: str
    data: dict[str, Any] = field(default_factory=dict)
    priority: Priority = Priority.MEDIUM
    requested_channels: frozenset[Channel] = frozenset({Channel.IN_APP})
    scheduled_for: datetime | None = None
    expires_at: datetime | None = None

    def __post_init__(self):
        self.category = coerce_enum(Category, self.category, "category")
        self.priority = coerce_enum(Priority, self.priority, "priority")
        self.requested_channels = coerce_channels(self.requested_channels)
        if not isinstance(self.title, str) or not self.title.strip():
            raise NotificationValidationError("Notification title cannot be empty")
        if self.data is None:
            self.data = {}
        _require_aware(self.scheduled_for, "scheduled_for")
        _require_aware(self.expires_at, "expires_at")

    def is_deferred(self, now: datetime) -> bool:
        return self.scheduled_for is not None and self.scheduled_for > now


@dataclass(frozen=True)
class NotificationRecord:
    """Persisted notification, detached from the ORM session."""
    id: int
    user_id: int
    category: Category
    title: str
    body: str
    data: dict[str, Any]
    priority: Priority
    requested_channels: frozenset[Channel]
    resolved_channels: frozenset[Channel]
    status: DeliveryStatus
    delivery_error: str | None
    scheduled_for: datetime | None
    expires_at: datetime | None
    is_read: bool
    read_at: datetime | None
    created_at: datetime
    dispatched_at: datetime | None = None

    def to_intent(self) -> NotificationIntent:
        return NotificationIntent(
            user_id=self.user_id,
            category=self.category,
            title=self.title,
            body=self.body,
            data=dict(self.data),
            priority=self.priority,
            requested_channels=self.requested_channels,
            scheduled_for=self.scheduled_for,
            expires_at=self.expires_at,
        )


@dataclass(frozen=True)
class PushEndpoint:
    """One device registered for Web Push."""
    id: int
    user_id: int
    endpoint: str
    p256dh: str
    auth: str
    is_active: bool
    last_updated: datetime
    user_agent: str | None = None
    device_type: str | None = None

    def subscription_info(self) -> dict:
        return {"endpoint": self.endpoint, "keys": {"p256dh": self.p256dh, "auth": self.auth}}


@dataclass(frozen=True)
class DigestAggregate:
    """Roll-up of a user's activity over [window_start, window_end)."""
    user_id: int
    window_start: datetime
    window_end: datetime
    amount_saved: Decimal = Decimal("0")
    achievements_unlocked: int = 0
    challenges_completed: int = 0
    yield_earned: Decimal = Decimal("0")
    streak_days: int = 0

    @property
    def has_activity(self) -> bool:
        # Streak alone is carried-over state, not activity in the window
        return (
            self.amount_saved > 0
            or self.yield_earned > 0
            or self.achievements_unlocked > 0
            or self.challenges_completed > 0
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "amount_saved": str(self.amount_saved),
            "achievements_unlocked": self.achievements_unlocked,
            "challenges_completed": self.challenges_completed,
            "yield_earned": str(self.yield_earned),
            "streak_days": self.streak_days,
            "window_start": self.window_start.isoformat(),
            "window_end": self.window_end.isoformat(),
        }
