"""
Pytest fixtures for testing
"""
from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine, JSON
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from sqlalchemy.dialects.postgresql import JSONB

from app.application.channels import MailSender, PushResult, PushSender, RealtimeBroadcaster
from app.application.notification_dispatcher import DispatchCoordinator
from app.application.notification_preferences import PreferenceStore
from app.application.notification_records import RecordStore
from app.application.push_subscriptions import SubscriptionRegistry
from app.application.users import UserDirectory
from app.infrastructure.db.models import User
from app.infrastructure.db.session import Base


NOW = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def db_engine():
    """Create in-memory SQLite engine for tests, with JSONB→JSON mapping."""
    # One shared connection so every session sees the same in-memory database
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Monkey-patch JSONB columns to JSON for SQLite compatibility
    for table in Base.metadata.tables.values():
        for col in table.columns:
            if isinstance(col.type, JSONB):
                col.type = JSON()
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def file_session_factory(db_engine, tmp_path) -> sessionmaker:
    """File-backed SQLite with a real connection pool, so sessions see only committed rows."""
    # db_engine has already remapped JSONB columns on the shared metadata
    engine = create_engine(
        f"sqlite:///{tmp_path / 'notifications.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> sessionmaker:
    return sessionmaker(bind=db_engine, autoflush=False)


@pytest.fixture
def db_session(session_factory) -> Session:
    """Create database session for tests"""
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


class FixedClock:
    """Callable clock the tests can move forward."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return FixedClock()


# ---------------------------------------------------------------------------
# Fake channel collaborators
# ---------------------------------------------------------------------------

class RecordingBroadcaster(RealtimeBroadcaster):
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.pushed: list[tuple[int, dict]] = []

    def push(self, user_id: int, payload: dict) -> None:
        if self.error is not None:
            raise self.error
        self.pushed.append((user_id, payload))


class FakePushSender(PushSender):
    """Returns a configured PushResult per endpoint URL (OK by default)."""

    def __init__(self, results: dict[str, PushResult] | None = None, default: PushResult = PushResult.OK):
        self.results = results or {}
        self.default = default
        self.sent: list[tuple[str, dict]] = []

    def send(self, endpoint, payload, priority=None) -> PushResult:
        self.sent.append((endpoint.endpoint, payload))
        return self.results.get(endpoint.endpoint, self.default)


class FakeMailSender(MailSender):
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.sent: list[dict] = []

    def send(self, address: str, subject: str, html: str, text: str) -> None:
        if self.error is not None:
            raise self.error
        self.sent.append({"address": address, "subject": subject, "html": html, "text": text})


@pytest.fixture
def broadcaster():
    return RecordingBroadcaster()


@pytest.fixture
def push_sender():
    return FakePushSender()


@pytest.fixture
def mail_sender():
    return FakeMailSender()


# ---------------------------------------------------------------------------
# Stores and coordinator
# ---------------------------------------------------------------------------

@pytest.fixture
def preferences(session_factory):
    return PreferenceStore(session_factory)


@pytest.fixture
def records(session_factory, clock):
    return RecordStore(session_factory, clock=clock)


@pytest.fixture
def subscriptions(session_factory, clock):
    return SubscriptionRegistry(session_factory, clock=clock)


@pytest.fixture
def users(session_factory):
    return UserDirectory(session_factory)


@pytest.fixture
def coordinator(preferences, records, subscriptions, users, broadcaster, push_sender, mail_sender, clock):
    c = DispatchCoordinator(
        preferences=preferences,
        records=records,
        subscriptions=subscriptions,
        users=users,
        broadcaster=broadcaster,
        push_sender=push_sender,
        mail_sender=mail_sender,
        channel_timeout=2.0,
        max_workers=4,
        clock=clock,
    )
    yield c
    c.shutdown(wait=True)


@pytest.fixture
def make_user(session_factory):
    def _make(user_id: int = 1, email: str | None = None, username: str | None = None,
              is_active: bool = True, current_streak: int = 0) -> int:
        with session_factory() as db:
            db.add(User(
                id=user_id,
                email=email if email is not None else f"user{user_id}@example.com",
                username=username or f"user{user_id}",
                is_active=is_active,
                current_streak=current_streak,
            ))
            db.commit()
        return user_id
    return _make
