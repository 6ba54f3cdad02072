"""
Push subscription registry — zero or more Web Push endpoints per user.

Endpoints are deactivated (never deleted on the spot) on unsubscribe or
when a send reports them gone; purge_stale() removes them later.
Writes for one user are serialized with a per-user lock; different users
never contend. A lock lives only while some caller holds a reference to it.
"""
import logging
import threading
import weakref
from datetime import datetime, timedelta

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from app.domain.notification import PushEndpoint
from app.infrastructure.db.models import PushSubscription
from app.utils.clock import as_utc, utcnow

logger = logging.getLogger(__name__)

REASON_UNSUBSCRIBED = "unsubscribed"
REASON_GONE = "gone"

DEVICE_TYPES = ("mobile", "desktop", "tablet")


class SubscriptionValidationError(ValueError):
    pass


def _to_endpoint(row: PushSubscription) -> PushEndpoint:
    return PushEndpoint(
        id=row.id,
        user_id=row.user_id,
        endpoint=row.endpoint,
        p256dh=row.p256dh,
        auth=row.auth,
        is_active=row.is_active,
        last_updated=as_utc(row.last_updated),
        user_agent=row.user_agent,
        device_type=row.device_type,
    )


class SubscriptionRegistry:
    def __init__(self, session_factory: sessionmaker, clock=utcnow):
        self.session_factory = session_factory
        self.clock = clock
        self._locks: weakref.WeakValueDictionary[int, threading.Lock] = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _user_lock(self, user_id: int) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = self._locks[user_id] = threading.Lock()
            return lock

    def list_active(self, user_id: int) -> list[PushEndpoint]:
        with self.session_factory() as db:
            rows = (
                db.query(PushSubscription)
                .filter(PushSubscription.user_id == user_id, PushSubscription.is_active.is_(True))
                .order_by(PushSubscription.id)
                .all()
            )
            return [_to_endpoint(r) for r in rows]

    def upsert(
        self,
        user_id: int,
        endpoint: str,
        p256dh: str,
        auth: str,
        user_agent: str | None = None,
        device_type: str | None = None,
    ) -> PushEndpoint:
        """
        Register or refresh a device. Idempotent per (user, endpoint):
        an existing pair gets new keys/metadata and is reactivated.
        """
        endpoint = (endpoint or "").strip()
        if not endpoint:
            raise SubscriptionValidationError("Push endpoint cannot be empty")
        if not p256dh or not auth:
            raise SubscriptionValidationError("Push subscription keys are required")
        if device_type is not None and device_type not in DEVICE_TYPES:
            raise SubscriptionValidationError(f"Unknown device type {device_type!r}")

        with self._user_lock(user_id):
            try:
                return self._upsert(user_id, endpoint, p256dh, auth, user_agent, device_type)
            except IntegrityError:
                # Another process inserted the same pair first
                return self._upsert(user_id, endpoint, p256dh, auth, user_agent, device_type)

    def _upsert(self, user_id, endpoint, p256dh, auth, user_agent, device_type) -> PushEndpoint:
        now = self.clock()
        with self.session_factory() as db:
            row = db.query(PushSubscription).filter_by(user_id=user_id, endpoint=endpoint).first()
            if row is None:
                row = PushSubscription(user_id=user_id, endpoint=endpoint, created_at=now)
                db.add(row)
                logger.info("Push subscription added for user_id=%s", user_id)
            row.p256dh = p256dh
            row.auth = auth
            row.user_agent = user_agent
            row.device_type = device_type
            row.is_active = True
            row.deactivated_reason = None
            row.last_updated = now
            db.commit()
            return _to_endpoint(row)

    def deactivate(self, user_id: int, endpoint: str) -> bool:
        """Explicit unsubscribe. Returns False if nothing was active."""
        with self._user_lock(user_id):
            with self.session_factory() as db:
                count = (
                    db.query(PushSubscription)
                    .filter(
                        PushSubscription.user_id == user_id,
                        PushSubscription.endpoint == endpoint,
                        PushSubscription.is_active.is_(True),
                    )
                    .update(
                        {
                            PushSubscription.is_active: False,
                            PushSubscription.deactivated_reason: REASON_UNSUBSCRIBED,
                            PushSubscription.last_updated: self.clock(),
                        },
                        synchronize_session=False,
                    )
                )
                db.commit()
        if count:
            logger.info("Push subscription unsubscribed for user_id=%s", user_id)
        return bool(count)

    def mark_invalid(self, endpoint: str, seen_last_updated: datetime | None = None) -> int:
        """
        Deactivate an endpoint the push service reported as gone (404/410).

        With `seen_last_updated`, rows refreshed after that instant are left
        alone: the device re-subscribed while the failed send was in flight.
        Returns the number of rows deactivated.
        """
        with self.session_factory() as db:
            user_ids = [
                r[0]
                for r in db.query(PushSubscription.user_id)
                .filter(PushSubscription.endpoint == endpoint, PushSubscription.is_active.is_(True))
                .all()
            ]

        total = 0
        for user_id in user_ids:
            with self._user_lock(user_id):
                with self.session_factory() as db:
                    q = db.query(PushSubscription).filter(
                        PushSubscription.user_id == user_id,
                        PushSubscription.endpoint == endpoint,
                        PushSubscription.is_active.is_(True),
                    )
                    if seen_last_updated is not None:
                        q = q.filter(PushSubscription.last_updated <= seen_last_updated)
                    count = q.update(
                        {
                            PushSubscription.is_active: False,
                            PushSubscription.deactivated_reason: REASON_GONE,
                            PushSubscription.last_updated: self.clock(),
                        },
                        synchronize_session=False,
                    )
                    db.commit()
            if count:
                logger.info("Push endpoint gone, deactivated for user_id=%s: %s", user_id, endpoint[:60])
            total += count
        return total

    def purge_stale(self, older_than_days: int = 90, now: datetime | None = None) -> int:
        """Delete subscriptions not touched for `older_than_days` (deactivation counts as a touch)."""
        cutoff = (now or self.clock()) - timedelta(days=older_than_days)
        with self.session_factory() as db:
            deleted = (
                db.query(PushSubscription)
                .filter(PushSubscription.last_updated < cutoff)
                .delete(synchronize_session=False)
            )
            db.commit()
        logger.info("Purged %d stale push subscription(s)", deleted)
        return deleted

    def stats(self) -> dict:
        with self.session_factory() as db:
            total = db.query(func.count(PushSubscription.id)).scalar() or 0
            active = (
                db.query(func.count(PushSubscription.id))
                .filter(PushSubscription.is_active.is_(True))
                .scalar()
                or 0
            )
            rows = (
                db.query(PushSubscription.device_type, func.count(PushSubscription.id))
                .filter(PushSubscription.is_active.is_(True))
                .group_by(PushSubscription.device_type)
                .all()
            )
        return {
            "total": total,
            "active": active,
            "by_device": {(device or "unknown"): count for device, count in rows},
        }
