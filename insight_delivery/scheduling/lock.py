"""
Lease-based lock so only one scheduler instance evaluates a given time window.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol

from insight_delivery.database.connection import Database
from insight_delivery.database.repository import from_db_time, to_db_time

logger = logging.getLogger(__name__)


@dataclass
class LockLease:
    """Current owner of a lock."""

    name: str
    holder: str
    window: str
    expires_at: datetime

    def is_live(self, now: datetime) -> bool:
        return self.expires_at > now


class LockProvider(Protocol):
    """Mutual exclusion between scheduler instances."""

    def acquire(
        self, name: str, holder: str, window: str, now: datetime, ttl_seconds: float
    ) -> bool: ...

    def release(self, name: str, holder: str) -> None: ...

    def current_lease(self, name: str) -> Optional[LockLease]: ...


class SqliteLockProvider:
    """
    Lock rows in the scheduler_locks table.

    A lock is free when no row exists or the existing lease has expired. The
    holder that owns an unexpired lease may re-acquire it (for example for the
    next window). A window that was already evaluated by another holder stays
    locked for everyone else even after its lease expires.
    """

    def __init__(self, db: Database):
        self.db = db

    def acquire(
        self,
        name: str,
        holder: str,
        window: str,
        now: datetime,
        ttl_seconds: float,
    ) -> bool:
        expires_at = to_db_time(now + timedelta(seconds=ttl_seconds))
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO scheduler_locks (name, holder, time_window, expires_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    holder = excluded.holder,
                    time_window = excluded.time_window,
                    expires_at = excluded.expires_at
                WHERE scheduler_locks.holder = excluded.holder
                   OR (scheduler_locks.expires_at <= ?
                       AND scheduler_locks.time_window != excluded.time_window)
                """,
                (name, holder, window, expires_at, to_db_time(now)),
            )
            acquired = cursor.rowcount == 1

        if not acquired:
            logger.debug(f"Lock {name} for window {window} held by another instance")
        return acquired

    def release(self, name: str, holder: str) -> None:
        with self.db.transaction() as cursor:
            cursor.execute(
                "DELETE FROM scheduler_locks WHERE name = ? AND holder = ?",
                (name, holder),
            )

    def current_lease(self, name: str) -> Optional[LockLease]:
        with self.db.transaction() as cursor:
            cursor.execute("SELECT * FROM scheduler_locks WHERE name = ?", (name,))
            row = cursor.fetchone()
        if row is None:
            return None
        return LockLease(
            name=row["name"],
            holder=row["holder"],
            window=row["time_window"],
            expires_at=from_db_time(row["expires_at"]),
        )
