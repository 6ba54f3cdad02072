"""
Reprocessor — one pass over due scheduled notifications, digests and housekeeping.

Invoked by the in-process scheduler or by an external cron entry:

    python -m app.application.reprocessor
    python -m app.application.reprocessor --now 2026-10-17T08:00:00+00:00
    python -m app.application.reprocessor --cleanup

Exit status is 0 when the pass completed and 1 when it raised, so the
external trigger can alert on it.
"""
import argparse
import logging
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import SQLAlchemyError

from app.application.notification_dispatcher import EXPIRED_BEFORE_DISPATCH, DispatchCoordinator
from app.application.notification_records import RecordStore
from app.application.services import build_services
from app.domain.notification import DeliveryStatus, NotificationValidationError
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)


@dataclass
class ReprocessResult:
    claimed: int = 0
    dispatched: int = 0
    discarded: int = 0
    expired: int = 0
    failed: int = 0


def process_due_notifications(
    coordinator: DispatchCoordinator,
    records: RecordStore,
    now: datetime,
    lease: timedelta,
    batch_size: int = 100,
) -> ReprocessResult:
    """
    Claim and dispatch every scheduled record due at `now`.

    A record is only dispatched by the pass that claimed it; a second pass
    running concurrently sees it claimed and skips it.
    """
    result = ReprocessResult()
    while True:
        batch = records.claim_due(now, lease, limit=batch_size)
        if not batch:
            break
        result.claimed += len(batch)
        for record in batch:
            try:
                outcome = coordinator.dispatch_scheduled(record)
            except NotificationValidationError as e:
                # Row written by an older version with values no longer accepted
                logger.error("Scheduled notification %s is invalid: %s", record.id, e)
                records.complete_scheduled(record.id, DeliveryStatus.FAILED, record.resolved_channels, str(e), now)
                result.failed += 1
                continue
            if outcome is None:
                result.discarded += 1
            elif outcome.delivery_error == EXPIRED_BEFORE_DISPATCH:
                result.expired += 1
            else:
                result.dispatched += 1
        if len(batch) < batch_size:
            break

    if result.claimed:
        logger.info(
            "Reprocess pass: claimed=%d dispatched=%d discarded=%d expired=%d failed=%d",
            result.claimed, result.dispatched, result.discarded, result.expired, result.failed,
        )
    return result


def run_cleanup(services, now: datetime | None = None) -> dict:
    """Retention sweep for records and stale push endpoints."""
    settings = services.settings
    records_deleted = services.records.cleanup(settings.NOTIFICATION_RETENTION_DAYS, now=now)
    endpoints_purged = services.subscriptions.purge_stale(settings.PUSH_SUBSCRIPTION_STALE_DAYS, now=now)
    return {"records_deleted": records_deleted, "endpoints_purged": endpoints_purged}


def run_pass(services, now: datetime, skip_digest: bool = False, cleanup: bool = False) -> ReprocessResult:
    lease = timedelta(minutes=services.settings.SCHEDULED_CLAIM_LEASE_MINUTES)
    result = process_due_notifications(services.coordinator, services.records, now, lease)
    if not skip_digest:
        services.digests.run(now)
    if cleanup:
        run_cleanup(services, now)
    return result


def _parse_now(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid ISO 8601 instant: {value!r}") from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m app.application.reprocessor",
        description="Dispatch due scheduled notifications and emit digests.",
    )
    parser.add_argument("--now", type=_parse_now, default=None,
                        help="instant to run the pass for (ISO 8601, default: current time)")
    parser.add_argument("--skip-digest", action="store_true", help="do not emit digests in this pass")
    parser.add_argument("--cleanup", action="store_true", help="also run the retention sweep")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    now = args.now or utcnow()
    services = build_services()
    try:
        run_pass(services, now, skip_digest=args.skip_digest, cleanup=args.cleanup)
    except SQLAlchemyError:
        logger.exception("Reprocess pass failed: store unavailable")
        return 1
    except Exception:
        logger.exception("Reprocess pass failed")
        return 1
    finally:
        services.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
