"""Temporary bans keyed by ``(identity, context)``.

A row is an *active* ban only while ``banned_until`` lies strictly in the
future.  Expired rows stay in place until a later breach overwrites them
or an administrator deletes them; readers must never treat them as
active.

Extending a ban always restarts the clock: ``banned_until`` becomes
``now + duration`` regardless of the previous value.
"""

from __future__ import annotations

import math
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from sqlalchemy import Column, Index, String, delete, select

from harborguard.helpers import guard_db
from harborguard.helpers.clock import as_utc
from harborguard.helpers.errors import ConfigurationError
from harborguard.helpers.guard_db import Base, SessionFactory, UTCDateTime


@dataclass(frozen=True)
class Ban:
    identity: str
    context: str
    banned_until: datetime
    created_at: datetime
    updated_at: datetime

    def is_active(self, now: datetime) -> bool:
        return self.banned_until > as_utc(now)

    def retry_after_sec(self, now: datetime) -> int:
        """Whole seconds until expiry, rounded up, never below 1."""
        remaining = (self.banned_until - as_utc(now)).total_seconds()
        return max(1, math.ceil(remaining))


class BanStoreBase(ABC):
    """Abstract base for ban stores."""

    @abstractmethod
    def get_ban(self, identity: str, context: str) -> Ban | None:
        """Return the stored row, active or not."""

    @abstractmethod
    def upsert_ban(
        self, identity: str, context: str, banned_until: datetime, now: datetime
    ) -> None:
        """Insert, or overwrite ``banned_until``/``updated_at`` on conflict."""

    @abstractmethod
    def delete_ban(self, identity: str, context: str | None = None) -> int:
        """Delete the ban for one context, or every context when None."""

    @abstractmethod
    def list_bans(self, identity: str) -> list[Ban]:
        """All stored rows for *identity*, active or not."""

    def get_active_ban(self, identity: str, context: str, now: datetime) -> Ban | None:
        ban = self.get_ban(identity, str(context))
        if ban is None or not ban.is_active(now):
            return None
        return ban

    def extend_ban(
        self, identity: str, context: str, duration_minutes: int, now: datetime
    ) -> datetime:
        now = as_utc(now)
        banned_until = now + timedelta(minutes=duration_minutes)
        self.upsert_ban(identity, str(context), banned_until, now)
        return banned_until


class InMemoryBanStore(BanStoreBase):
    """Thread-safe in-memory ban table."""

    def __init__(self) -> None:
        self._bans: dict[tuple[str, str], Ban] = {}
        self._lock = threading.Lock()

    def get_ban(self, identity: str, context: str) -> Ban | None:
        with self._lock:
            return self._bans.get((identity, str(context)))

    def upsert_ban(
        self, identity: str, context: str, banned_until: datetime, now: datetime
    ) -> None:
        key = (identity, str(context))
        with self._lock:
            existing = self._bans.get(key)
            if existing is None:
                self._bans[key] = Ban(
                    identity=identity,
                    context=str(context),
                    banned_until=as_utc(banned_until),
                    created_at=as_utc(now),
                    updated_at=as_utc(now),
                )
            else:
                self._bans[key] = replace(
                    existing, banned_until=as_utc(banned_until), updated_at=as_utc(now)
                )

    def delete_ban(self, identity: str, context: str | None = None) -> int:
        with self._lock:
            keys = [
                k
                for k in self._bans
                if k[0] == identity and (context is None or k[1] == str(context))
            ]
            for k in keys:
                del self._bans[k]
            return len(keys)

    def list_bans(self, identity: str) -> list[Ban]:
        with self._lock:
            return [b for (ident, _), b in self._bans.items() if ident == identity]


# ---------------------------------------------------------------------------
# SQL backend
# ---------------------------------------------------------------------------


class IpBan(Base):
    __tablename__ = "ip_bans"

    ip = Column(String, primary_key=True)
    context = Column(String, primary_key=True)
    banned_until = Column(UTCDateTime(), nullable=False)
    created_at = Column(UTCDateTime(), nullable=False)
    updated_at = Column(UTCDateTime(), nullable=False)

    __table_args__ = (Index("ix_ip_bans_banned_until", "banned_until"),)

    def to_ban(self) -> Ban:
        return Ban(
            identity=self.ip,
            context=self.context,
            banned_until=self.banned_until,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


def _dialect_insert(dialect_name: str):
    if dialect_name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert

        return insert
    if dialect_name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert

        return insert
    raise ConfigurationError(f"No ON CONFLICT upsert for dialect '{dialect_name}'")


class SqlBanStore(BanStoreBase):
    """Ban table on the guard database.

    The upsert is a single ``INSERT ... ON CONFLICT DO UPDATE`` on SQLite
    and PostgreSQL so concurrent writers for the same key stay correct
    without application locks.
    """

    def __init__(self, session_factory: SessionFactory | None = None) -> None:
        self._sf = session_factory or guard_db.get_session

    def get_ban(self, identity: str, context: str) -> Ban | None:
        with guard_db.storage_errors("get_ban"):
            with self._sf() as db:
                row = db.get(IpBan, (identity, str(context)))
                return row.to_ban() if row else None

    def upsert_ban(
        self, identity: str, context: str, banned_until: datetime, now: datetime
    ) -> None:
        values = {
            "ip": identity,
            "context": str(context),
            "banned_until": as_utc(banned_until),
            "created_at": as_utc(now),
            "updated_at": as_utc(now),
        }
        with guard_db.storage_errors("upsert_ban"):
            with self._sf() as db:
                insert = _dialect_insert(db.get_bind().dialect.name)
                stmt = insert(IpBan).values(**values)
                stmt = stmt.on_conflict_do_update(
                    index_elements=["ip", "context"],
                    set_={
                        "banned_until": stmt.excluded.banned_until,
                        "updated_at": stmt.excluded.updated_at,
                    },
                )
                db.execute(stmt)

    def delete_ban(self, identity: str, context: str | None = None) -> int:
        stmt = delete(IpBan).where(IpBan.ip == identity)
        if context is not None:
            stmt = stmt.where(IpBan.context == str(context))
        with guard_db.storage_errors("delete_ban"):
            with self._sf() as db:
                return db.execute(stmt).rowcount or 0

    def list_bans(self, identity: str) -> list[Ban]:
        stmt = select(IpBan).where(IpBan.ip == identity).order_by(IpBan.context)
        with guard_db.storage_errors("list_bans"):
            with self._sf() as db:
                return [row.to_ban() for row in db.scalars(stmt)]
