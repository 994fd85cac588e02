"""Shared pytest fixtures for the test suite.

Provides a deterministic clock, in-memory SQLite session factories, and
guards wired to either the SQL or the in-memory stores.
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from harborguard.helpers.guard_db import Base, session_scope


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2025, 1, 1, tzinfo=timezone.utc)
        if self._now.tzinfo is None:
            self._now = self._now.replace(tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(
        self, *, seconds: float = 0, minutes: float = 0, hours: float = 0
    ) -> datetime:
        with self._lock:
            self._now += timedelta(seconds=seconds, minutes=minutes, hours=hours)
            return self._now

    def set(self, when: datetime) -> None:
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        with self._lock:
            self._now = when


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def session_factory():
    """Commit/rollback session scope over a shared in-memory SQLite database."""
    import harborguard.helpers.attempt_store  # noqa: F401  register models on Base
    import harborguard.helpers.ban_store  # noqa: F401

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)

    yield session_scope(sessionmaker(bind=engine))

    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def policy():
    from harborguard.helpers.policy import PolicyTable

    return PolicyTable.uniform(window_minutes=15, failure_threshold=5, ban_minutes=15)


@pytest.fixture(params=["memory", "sql"])
def stores(request, session_factory):
    """(attempt_store, ban_store) for each backend."""
    from harborguard.helpers.attempt_store import InMemoryAttemptStore, SqlAttemptStore
    from harborguard.helpers.ban_store import InMemoryBanStore, SqlBanStore

    if request.param == "memory":
        return InMemoryAttemptStore(), InMemoryBanStore()
    return SqlAttemptStore(session_factory), SqlBanStore(session_factory)


@pytest.fixture
def guard(stores, policy, clock):
    from harborguard.helpers.abuse_guard import AbuseGuard

    attempt_store, ban_store = stores
    return AbuseGuard(attempt_store, ban_store, policy, clock)
