"""
Notification records — persistence of one record per submitted intent.

Lifecycle:
    immediate:  insert (placeholder `failed`, not yet dispatched) -> dispatch -> final status
    deferred:   insert as `scheduled` -> claim -> dispatch -> final status
A record never changes after leaving `scheduled`, except read state.
"""
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from app.domain.notification import (
    Category,
    DeliveryStatus,
    NotificationIntent,
    NotificationRecord,
    Priority,
    coerce_channels,
    ordered_channels,
)
from app.infrastructure.db.models import NotificationModel
from app.utils.clock import as_utc, utcnow

logger = logging.getLogger(__name__)


DISPATCH_INTERRUPTED = "dispatch interrupted"


class DuplicateNotificationError(Exception):
    """A record with the same (user_id, dedup_key) already exists."""


@dataclass(frozen=True)
class NotificationPage:
    items: list[NotificationRecord]
    total: int
    unread_count: int


def _to_record(row: NotificationModel) -> NotificationRecord:
    return NotificationRecord(
        id=row.id,
        user_id=row.user_id,
        category=Category(row.category),
        title=row.title,
        body=row.body,
        data=dict(row.data_json or {}),
        priority=Priority(row.priority),
        requested_channels=coerce_channels(row.requested_channels or []),
        resolved_channels=coerce_channels(row.resolved_channels or []),
        status=DeliveryStatus(row.status),
        delivery_error=row.delivery_error,
        scheduled_for=as_utc(row.scheduled_for),
        expires_at=as_utc(row.expires_at),
        is_read=row.is_read,
        read_at=as_utc(row.read_at),
        created_at=as_utc(row.created_at),
        dispatched_at=as_utc(row.dispatched_at),
    )


def _channel_values(channels) -> list[str]:
    return [ch.value for ch in ordered_channels(channels)]


def _new_row(intent: NotificationIntent, channels, status: DeliveryStatus, now: datetime,
             dedup_key: str | None) -> NotificationModel:
    return NotificationModel(
        user_id=intent.user_id,
        category=intent.category.value,
        title=intent.title,
        body=intent.body,
        data_json=dict(intent.data),
        priority=intent.priority.value,
        requested_channels=_channel_values(intent.requested_channels),
        resolved_channels=_channel_values(channels),
        status=status.value,
        scheduled_for=as_utc(intent.scheduled_for),
        expires_at=as_utc(intent.expires_at),
        is_read=False,
        dedup_key=dedup_key,
        created_at=now,
    )


def _not_expired(now: datetime):
    return or_(NotificationModel.expires_at.is_(None), NotificationModel.expires_at > now)


class RecordStore:
    def __init__(self, session_factory: sessionmaker, clock=utcnow):
        self.session_factory = session_factory
        self.clock = clock

    # ------------------------------------------------------------------
    # Write side
    # ------------------------------------------------------------------

    def create_scheduled(self, intent: NotificationIntent, channels, now: datetime) -> NotificationRecord:
        with self.session_factory() as db:
            row = _new_row(intent, channels, DeliveryStatus.SCHEDULED, now, None)
            db.add(row)
            db.commit()
            return _to_record(row)

    def create_dispatched(
        self,
        intent: NotificationIntent,
        channels,
        now: datetime,
        deliver: Callable[[NotificationRecord], tuple[DeliveryStatus, str | None]],
        dedup_key: str | None = None,
    ) -> NotificationRecord:
        """
        Commit the record, run `deliver` with its id assigned, then store the
        outcome in a second transaction.

        Until the outcome lands the row reads as `failed` with
        DISPATCH_INTERRUPTED and no `dispatched_at`, so a dispatch that dies
        midway stays visible to operators.
        """
        with self.session_factory() as db:
            row = _new_row(intent, channels, DeliveryStatus.FAILED, now, dedup_key)
            row.delivery_error = DISPATCH_INTERRUPTED
            db.add(row)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                if dedup_key is None:
                    raise
                raise DuplicateNotificationError(f"user_id={intent.user_id} key={dedup_key}") from None
            record = _to_record(row)

        status, error = deliver(record)
        return self._complete_dispatched(record, status, error, self.clock())

    def _complete_dispatched(
        self, record: NotificationRecord, status: DeliveryStatus, delivery_error: str | None, now: datetime
    ) -> NotificationRecord:
        record_id = record.id
        with self.session_factory() as db:
            count = (
                db.query(NotificationModel)
                .filter(
                    NotificationModel.id == record_id,
                    NotificationModel.status == DeliveryStatus.FAILED.value,
                    NotificationModel.dispatched_at.is_(None),
                )
                .update(
                    {
                        NotificationModel.status: status.value,
                        NotificationModel.delivery_error: delivery_error,
                        NotificationModel.dispatched_at: now,
                    },
                    synchronize_session=False,
                )
            )
            db.commit()
            if count != 1:
                logger.warning("Notification %s changed during dispatch, outcome %s not stored", record_id, status.value)
            row = db.get(NotificationModel, record_id)
            if row is None:
                # Deleted by the user while channels were attempted
                return replace(record, status=status, delivery_error=delivery_error, dispatched_at=now)
            return _to_record(row)

    def claim(self, record_id: int, now: datetime, lease: timedelta) -> NotificationRecord | None:
        """
        Take a due scheduled record for dispatch.

        Succeeds only while the record is still `scheduled` and unclaimed
        (or its previous claim is older than `lease`, i.e. that pass died).
        """
        stale_before = now - lease
        with self.session_factory() as db:
            count = (
                db.query(NotificationModel)
                .filter(
                    NotificationModel.id == record_id,
                    NotificationModel.status == DeliveryStatus.SCHEDULED.value,
                    NotificationModel.scheduled_for <= now,
                    or_(NotificationModel.claimed_at.is_(None), NotificationModel.claimed_at < stale_before),
                )
                .update({NotificationModel.claimed_at: now}, synchronize_session=False)
            )
            db.commit()
            if count != 1:
                return None
            row = db.get(NotificationModel, record_id)
            return _to_record(row)

    def claim_due(self, now: datetime, lease: timedelta, limit: int = 100) -> list[NotificationRecord]:
        stale_before = now - lease
        with self.session_factory() as db:
            ids = [
                r[0]
                for r in db.query(NotificationModel.id)
                .filter(
                    NotificationModel.status == DeliveryStatus.SCHEDULED.value,
                    NotificationModel.scheduled_for <= now,
                    or_(NotificationModel.claimed_at.is_(None), NotificationModel.claimed_at < stale_before),
                )
                .order_by(NotificationModel.scheduled_for, NotificationModel.id)
                .limit(limit)
                .all()
            ]
        claimed = []
        for record_id in ids:
            record = self.claim(record_id, now, lease)
            if record is not None:
                claimed.append(record)
        return claimed

    def complete_scheduled(
        self,
        record_id: int,
        status: DeliveryStatus,
        channels,
        delivery_error: str | None,
        now: datetime,
    ) -> NotificationRecord | None:
        """Move a scheduled record to its final status. None if it already left `scheduled`."""
        with self.session_factory() as db:
            count = (
                db.query(NotificationModel)
                .filter(
                    NotificationModel.id == record_id,
                    NotificationModel.status == DeliveryStatus.SCHEDULED.value,
                )
                .update(
                    {
                        NotificationModel.status: status.value,
                        NotificationModel.resolved_channels: _channel_values(channels),
                        NotificationModel.delivery_error: delivery_error,
                        NotificationModel.dispatched_at: now,
                    },
                    synchronize_session=False,
                )
            )
            db.commit()
            if count != 1:
                logger.warning("Scheduled notification %s was completed by another pass", record_id)
                return None
            return _to_record(db.get(NotificationModel, record_id))

    def discard_scheduled(self, record_id: int) -> bool:
        """Drop a scheduled record whose channels were all suppressed at dispatch time."""
        with self.session_factory() as db:
            count = (
                db.query(NotificationModel)
                .filter(
                    NotificationModel.id == record_id,
                    NotificationModel.status == DeliveryStatus.SCHEDULED.value,
                )
                .delete(synchronize_session=False)
            )
            db.commit()
            return bool(count)

    def cleanup(self, older_than_days: int = 30, now: datetime | None = None) -> int:
        """Delete delivered records older than the retention window, and expired ones."""
        now = now or self.clock()
        cutoff = now - timedelta(days=older_than_days)
        with self.session_factory() as db:
            deleted = (
                db.query(NotificationModel)
                .filter(
                    NotificationModel.status != DeliveryStatus.SCHEDULED.value,
                    or_(
                        NotificationModel.created_at < cutoff,
                        NotificationModel.expires_at < now,
                    ),
                )
                .delete(synchronize_session=False)
            )
            db.commit()
        logger.info("Notification cleanup: deleted %d record(s)", deleted)
        return deleted

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def get(self, record_id: int) -> NotificationRecord | None:
        with self.session_factory() as db:
            row = db.get(NotificationModel, record_id)
            return _to_record(row) if row is not None else None

    def has_dedup_key(self, user_id: int, dedup_key: str) -> bool:
        with self.session_factory() as db:
            return (
                db.query(NotificationModel.id)
                .filter(NotificationModel.user_id == user_id, NotificationModel.dedup_key == dedup_key)
                .first()
                is not None
            )

    def list_for_user(
        self,
        user_id: int,
        page: int = 1,
        limit: int = 20,
        category: Category | None = None,
        unread_only: bool = False,
        now: datetime | None = None,
    ) -> NotificationPage:
        now = now or self.clock()
        page = max(page, 1)
        with self.session_factory() as db:
            q = db.query(NotificationModel).filter(
                NotificationModel.user_id == user_id,
                NotificationModel.status != DeliveryStatus.SCHEDULED.value,
                _not_expired(now),
            )
            if category is not None:
                q = q.filter(NotificationModel.category == Category(category).value)
            if unread_only:
                q = q.filter(NotificationModel.is_read.is_(False))
            total = q.count()
            rows = (
                q.order_by(NotificationModel.created_at.desc(), NotificationModel.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
                .all()
            )
            items = [_to_record(r) for r in rows]
        return NotificationPage(items=items, total=total, unread_count=self.unread_count(user_id, now))

    def unread_count(self, user_id: int, now: datetime | None = None) -> int:
        now = now or self.clock()
        with self.session_factory() as db:
            return (
                db.query(func.count(NotificationModel.id))
                .filter(
                    NotificationModel.user_id == user_id,
                    NotificationModel.is_read.is_(False),
                    NotificationModel.status != DeliveryStatus.SCHEDULED.value,
                    _not_expired(now),
                )
                .scalar()
                or 0
            )

    def stats(self, user_id: int) -> dict:
        with self.session_factory() as db:
            base = db.query(NotificationModel).filter(
                NotificationModel.user_id == user_id,
                NotificationModel.status != DeliveryStatus.SCHEDULED.value,
            )
            total = base.count()
            unread = base.filter(NotificationModel.is_read.is_(False)).count()
            rows = (
                db.query(NotificationModel.category, func.count(NotificationModel.id))
                .filter(
                    NotificationModel.user_id == user_id,
                    NotificationModel.status != DeliveryStatus.SCHEDULED.value,
                )
                .group_by(NotificationModel.category)
                .all()
            )
        return {"total": total, "unread": unread, "by_category": dict(rows)}

    # ------------------------------------------------------------------
    # Read state
    # ------------------------------------------------------------------

    def _mark_read(self, *criteria) -> int:
        with self.session_factory() as db:
            count = (
                db.query(NotificationModel)
                .filter(
                    NotificationModel.is_read.is_(False),
                    # Not yet delivered; read state starts once the user has it
                    NotificationModel.status != DeliveryStatus.SCHEDULED.value,
                    *criteria,
                )
                .update(
                    {NotificationModel.is_read: True, NotificationModel.read_at: self.clock()},
                    synchronize_session=False,
                )
            )
            db.commit()
            return count

    def mark_read(self, record_id: int, user_id: int) -> bool:
        return bool(self._mark_read(NotificationModel.id == record_id, NotificationModel.user_id == user_id))

    def mark_all_read(self, user_id: int) -> int:
        return self._mark_read(NotificationModel.user_id == user_id)

    def mark_category_read(self, user_id: int, category: Category) -> int:
        return self._mark_read(
            NotificationModel.user_id == user_id,
            NotificationModel.category == Category(category).value,
        )

    def delete(self, record_id: int, user_id: int) -> bool:
        with self.session_factory() as db:
            count = (
                db.query(NotificationModel)
                .filter(NotificationModel.id == record_id, NotificationModel.user_id == user_id)
                .delete(synchronize_session=False)
            )
            db.commit()
            return bool(count)
