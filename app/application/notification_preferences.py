"""
Notification preferences — per-user channel enablement per category,
quiet hours and digest cadence.

A user without a stored row is a normal state: every read falls back to
the default table below, which is the only place defaults are defined.
"""
import logging
from datetime import time
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from app.domain.notification import (
    Category,
    CategoryPreference,
    DigestFrequency,
    NotificationPreferences,
    QuietHoursConfig,
)
from app.domain.quiet_hours import parse_wall_clock
from app.infrastructure.db.models import NotificationPreferenceModel

logger = logging.getLogger(__name__)


class PreferenceValidationError(ValueError):
    pass


DEFAULT_CATEGORY_PREFERENCES: dict[Category, CategoryPreference] = {
    Category.ACHIEVEMENT: CategoryPreference(in_app=True, push=True, email=False),
    Category.CHALLENGE: CategoryPreference(in_app=True, push=True, email=True),
    Category.FRIEND: CategoryPreference(in_app=True, push=True, email=False),
    Category.TRANSACTION: CategoryPreference(in_app=True, push=False, email=False),
    Category.SAVINGS_MILESTONE: CategoryPreference(in_app=True, push=True, email=True),
    Category.SYSTEM: CategoryPreference(in_app=True, push=False, email=True),
    Category.DIGEST: CategoryPreference(in_app=False, push=False, email=True),
}

DEFAULT_QUIET_HOURS = QuietHoursConfig(
    enabled=False, start_time=time(22, 0), end_time=time(8, 0), timezone="UTC"
)

DEFAULT_DIGEST_FREQUENCY = DigestFrequency.WEEKLY

_CHANNEL_KEYS = ("in_app", "push", "email")


def default_preferences(user_id: int) -> NotificationPreferences:
    return NotificationPreferences(
        user_id=user_id,
        categories=dict(DEFAULT_CATEGORY_PREFERENCES),
        quiet_hours=DEFAULT_QUIET_HOURS,
        digest=DEFAULT_DIGEST_FREQUENCY,
    )


def _merge_category(base: CategoryPreference, raw: dict) -> CategoryPreference:
    values = base.to_dict()
    for key, value in raw.items():
        if key not in _CHANNEL_KEYS:
            raise PreferenceValidationError(f"Unknown channel {key!r}")
        if not isinstance(value, bool):
            raise PreferenceValidationError(f"Channel flag {key!r} must be a boolean")
        values[key] = value
    return CategoryPreference(**values)


def _category(value) -> Category:
    try:
        return Category(value)
    except ValueError:
        raise PreferenceValidationError(f"Unknown notification category {value!r}") from None


def _merge_quiet_hours(base: QuietHoursConfig, raw: dict) -> QuietHoursConfig:
    enabled = raw.get("enabled", base.enabled)
    if not isinstance(enabled, bool):
        raise PreferenceValidationError("quiet_hours.enabled must be a boolean")
    try:
        start = parse_wall_clock(raw.get("start_time", base.start_time))
        end = parse_wall_clock(raw.get("end_time", base.end_time))
    except ValueError as e:
        raise PreferenceValidationError(str(e)) from None
    tz = raw.get("timezone", base.timezone)
    try:
        ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError, TypeError):
        raise PreferenceValidationError(f"Unknown time zone {tz!r}") from None
    return QuietHoursConfig(enabled=enabled, start_time=start, end_time=end, timezone=tz)


def _from_model(row: NotificationPreferenceModel) -> NotificationPreferences:
    categories = dict(DEFAULT_CATEGORY_PREFERENCES)
    for key, raw in (row.channels_json or {}).items():
        try:
            category = Category(key)
        except ValueError:
            logger.warning("Ignoring stored preference for unknown category %r (user_id=%s)", key, row.user_id)
            continue
        categories[category] = _merge_category(categories[category], raw or {})

    try:
        digest = DigestFrequency(row.digest_frequency)
    except ValueError:
        digest = DEFAULT_DIGEST_FREQUENCY

    return NotificationPreferences(
        user_id=row.user_id,
        categories=categories,
        quiet_hours=QuietHoursConfig(
            enabled=bool(row.quiet_enabled),
            start_time=row.quiet_start or DEFAULT_QUIET_HOURS.start_time,
            end_time=row.quiet_end or DEFAULT_QUIET_HOURS.end_time,
            timezone=row.quiet_timezone or DEFAULT_QUIET_HOURS.timezone,
        ),
        digest=digest,
    )


def merge_preferences(current: NotificationPreferences, changes: dict) -> NotificationPreferences:
    """
    Apply a partial update on top of `current`.

    changes format:
        {"categories": {"achievement": {"email": true}},
         "quiet_hours": {"enabled": true, "start_time": "22:00", "timezone": "Europe/Berlin"},
         "digest": "daily"}
    """
    unknown = set(changes) - {"categories", "quiet_hours", "digest"}
    if unknown:
        raise PreferenceValidationError(f"Unknown preference fields: {', '.join(sorted(unknown))}")

    categories = dict(current.categories)
    for key, raw in (changes.get("categories") or {}).items():
        category = _category(key)
        if not isinstance(raw, dict):
            raise PreferenceValidationError(f"Preference for {key!r} must be an object")
        categories[category] = _merge_category(categories[category], raw)

    quiet_hours = current.quiet_hours
    if changes.get("quiet_hours") is not None:
        quiet_hours = _merge_quiet_hours(quiet_hours, changes["quiet_hours"])

    digest = current.digest
    if changes.get("digest") is not None:
        try:
            digest = DigestFrequency(changes["digest"])
        except ValueError:
            raise PreferenceValidationError(f"Unknown digest frequency {changes['digest']!r}") from None

    return NotificationPreferences(
        user_id=current.user_id,
        categories=categories,
        quiet_hours=quiet_hours,
        digest=digest,
    )


def _apply_to_model(row: NotificationPreferenceModel, prefs: NotificationPreferences) -> None:
    row.channels_json = {cat.value: pref.to_dict() for cat, pref in prefs.categories.items()}
    row.quiet_enabled = prefs.quiet_hours.enabled
    row.quiet_start = prefs.quiet_hours.start_time
    row.quiet_end = prefs.quiet_hours.end_time
    row.quiet_timezone = prefs.quiet_hours.timezone
    row.digest_frequency = prefs.digest.value


class PreferenceStore:
    """Read/write adapter over notification_preferences."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def get_preferences(self, user_id: int) -> NotificationPreferences:
        with self.session_factory() as db:
            row = db.query(NotificationPreferenceModel).filter_by(user_id=user_id).first()
            if row is None:
                return default_preferences(user_id)
            return _from_model(row)

    def resolve(self, user_id: int, category: Category) -> CategoryPreference:
        return self.get_preferences(user_id).for_category(Category(category))

    def upsert(self, user_id: int, changes: dict) -> NotificationPreferences:
        """Merge `changes` into stored preferences, creating the row with defaults."""
        try:
            return self._upsert(user_id, changes)
        except IntegrityError:
            # Concurrent first write for the same user; the row exists now
            logger.info("Preference row created concurrently for user_id=%s, retrying as update", user_id)
            return self._upsert(user_id, changes)

    def _upsert(self, user_id: int, changes: dict) -> NotificationPreferences:
        with self.session_factory() as db:
            row = db.query(NotificationPreferenceModel).filter_by(user_id=user_id).first()
            current = _from_model(row) if row is not None else default_preferences(user_id)
            merged = merge_preferences(current, changes)
            if row is None:
                row = NotificationPreferenceModel(user_id=user_id)
                db.add(row)
            _apply_to_model(row, merged)
            db.commit()
            return merged

    def digest_frequency_for(self, user_ids: list[int]) -> dict[int, DigestFrequency]:
        """Digest cadence per user id; users without a stored row get the default."""
        result = {uid: DEFAULT_DIGEST_FREQUENCY for uid in user_ids}
        if not user_ids:
            return result
        with self.session_factory() as db:
            rows = (
                db.query(NotificationPreferenceModel.user_id, NotificationPreferenceModel.digest_frequency)
                .filter(NotificationPreferenceModel.user_id.in_(user_ids))
                .all()
            )
        for user_id, raw in rows:
            try:
                result[user_id] = DigestFrequency(raw)
            except ValueError:
                logger.warning("Unknown stored digest frequency %r for user_id=%s", raw, user_id)
        return result
