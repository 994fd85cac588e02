"""Append-only log of failed verification attempts.

Every failed credential or token check writes one :class:`AttemptRecord`.
The guard counts records for an ``(identity, context)`` key over a
trailing window and deletes them in bulk after a successful check.
Records are never pruned here; housekeeping is left to the operator.

Two backends share :class:`AttemptStoreBase`:

* :class:`InMemoryAttemptStore` for tests and single-process setups.
* :class:`SqlAttemptStore` for SQLite / PostgreSQL via SQLAlchemy.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import Column, Index, Integer, String, delete, func, select

from harborguard.helpers import guard_db
from harborguard.helpers.clock import as_utc
from harborguard.helpers.guard_db import Base, SessionFactory, UTCDateTime


@dataclass(frozen=True)
class AttemptMeta:
    """Optional audit details supplied by the caller."""

    attempted_identifier: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class AttemptRecord:
    identity: str
    context: str
    created_at: datetime
    attempted_identifier: str | None = None
    user_agent: str | None = None


def _clean_meta(meta: AttemptMeta | None) -> tuple[str | None, str | None]:
    if meta is None:
        return None, None
    identifier = (meta.attempted_identifier or "").strip().lower() or None
    user_agent = (meta.user_agent or "").strip() or None
    return identifier, user_agent


class AttemptStoreBase(ABC):
    """Abstract base for attempt stores."""

    @abstractmethod
    def insert_attempt(self, record: AttemptRecord) -> None: ...

    @abstractmethod
    def count_attempts_since(
        self, identity: str, context: str, since: datetime
    ) -> int: ...

    @abstractmethod
    def delete_attempts(self, identity: str, context: str | None = None) -> int:
        """Delete records for *identity* (one context, or all when None)."""

    def record_failure(
        self,
        identity: str,
        context: str,
        meta: AttemptMeta | None,
        now: datetime,
    ) -> AttemptRecord:
        """Persist exactly one failure record stamped with *now*."""
        identifier, user_agent = _clean_meta(meta)
        record = AttemptRecord(
            identity=identity,
            context=str(context),
            created_at=as_utc(now),
            attempted_identifier=identifier,
            user_agent=user_agent,
        )
        self.insert_attempt(record)
        return record

    def count_since(self, identity: str, context: str, window_start: datetime) -> int:
        return self.count_attempts_since(identity, str(context), as_utc(window_start))

    def clear_failures(self, identity: str, context: str) -> int:
        return self.delete_attempts(identity, str(context))


class InMemoryAttemptStore(AttemptStoreBase):
    """Thread-safe in-memory attempt log."""

    def __init__(self) -> None:
        self._records: list[AttemptRecord] = []
        self._lock = threading.Lock()

    def insert_attempt(self, record: AttemptRecord) -> None:
        with self._lock:
            self._records.append(record)

    def count_attempts_since(self, identity: str, context: str, since: datetime) -> int:
        with self._lock:
            return sum(
                1
                for r in self._records
                if r.identity == identity
                and r.context == context
                and r.created_at >= since
            )

    def delete_attempts(self, identity: str, context: str | None = None) -> int:
        with self._lock:
            keep = [
                r
                for r in self._records
                if not (
                    r.identity == identity
                    and (context is None or r.context == str(context))
                )
            ]
            deleted = len(self._records) - len(keep)
            self._records = keep
            return deleted

    def all_records(self) -> list[AttemptRecord]:
        with self._lock:
            return list(self._records)


# ---------------------------------------------------------------------------
# SQL backend
# ---------------------------------------------------------------------------


class LoginAttempt(Base):
    """One failed verification (immutable)."""

    __tablename__ = "login_attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ip = Column(String, nullable=False)
    context = Column(String, nullable=False)
    attempted_email = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    created_at = Column(UTCDateTime(), nullable=False)

    __table_args__ = (
        Index("ix_login_attempts_ip_context_created_at", "ip", "context", "created_at"),
    )


class SqlAttemptStore(AttemptStoreBase):
    """Attempt log on the guard database.

    Each call runs in its own session and commits before returning, so a
    record is visible to the very next count.
    """

    def __init__(self, session_factory: SessionFactory | None = None) -> None:
        self._sf = session_factory or guard_db.get_session

    def insert_attempt(self, record: AttemptRecord) -> None:
        with guard_db.storage_errors("insert_attempt"):
            with self._sf() as db:
                db.add(
                    LoginAttempt(
                        ip=record.identity,
                        context=record.context,
                        attempted_email=record.attempted_identifier,
                        user_agent=record.user_agent,
                        created_at=record.created_at,
                    )
                )

    def count_attempts_since(self, identity: str, context: str, since: datetime) -> int:
        stmt = (
            select(func.count())
            .select_from(LoginAttempt)
            .where(
                LoginAttempt.ip == identity,
                LoginAttempt.context == context,
                LoginAttempt.created_at >= since,
            )
        )
        with guard_db.storage_errors("count_attempts_since"):
            with self._sf() as db:
                return int(db.execute(stmt).scalar_one())

    def delete_attempts(self, identity: str, context: str | None = None) -> int:
        stmt = delete(LoginAttempt).where(LoginAttempt.ip == identity)
        if context is not None:
            stmt = stmt.where(LoginAttempt.context == str(context))
        with guard_db.storage_errors("delete_attempts"):
            with self._sf() as db:
                return db.execute(stmt).rowcount or 0
