"""
Repository classes for CRUD operations.
"""

import sqlite3
from datetime import date, datetime, time, timezone
from typing import Any, Optional

from .connection import Database
from .models import (
    AnalysisResult,
    AttemptOutcome,
    Channel,
    ChannelAttempt,
    DeliveryJob,
    Frequency,
    JobStatus,
    NotificationPreference,
    TrackedProduct,
    TrackingStatus,
    User,
)


class JobStateError(Exception):
    """Raised when an operator action targets a job in the wrong state."""

    pass


def to_db_time(value: Optional[datetime]) -> Optional[str]:
    """Serialize an aware datetime as a fixed-width UTC ISO string."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp; naive values (SQLite defaults) are UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRepository:
    """CRUD operations for users."""

    def __init__(self, db: Database):
        self.db = db

    def create(self, user: User) -> User:
        """Create a new user."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO users (email, phone, push_token)
                VALUES (?, ?, ?)
                """,
                (user.email, user.phone, user.push_token),
            )
            user.id = cursor.lastrowid
        return user

    def get_by_id(self, user_id: int) -> Optional[User]:
        """Get user by ID."""
        with self.db.transaction() as cursor:
            cursor.execute("SELECT * FROM users WHERE id = ?", (user_id,))
            row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def update(self, user: User) -> None:
        """Update user contact details."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                UPDATE users
                SET email = ?, phone = ?, push_token = ?
                WHERE id = ?
                """,
                (user.email, user.phone, user.push_token, user.id),
            )

    def list_all(self) -> list[User]:
        """List all users."""
        with self.db.transaction() as cursor:
            cursor.execute("SELECT * FROM users ORDER BY id")
            rows = cursor.fetchall()
        return [self._row_to_user(row) for row in rows]

    def _row_to_user(self, row) -> User:
        """Convert database row to User."""
        return User(
            id=row["id"],
            email=row["email"],
            phone=row["phone"],
            push_token=row["push_token"],
            created_at=from_db_time(row["created_at"]),
        )


class TrackingRepository:
    """CRUD operations for tracked products."""

    def __init__(self, db: Database):
        self.db = db

    def create(self, tracked: TrackedProduct) -> TrackedProduct:
        """Start tracking a product for a user."""
        if tracked.created_at is None:
            tracked.created_at = _utcnow()
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO tracked_products (user_id, product_id, status, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (
                    tracked.user_id,
                    tracked.product_id,
                    tracked.status.value,
                    to_db_time(tracked.created_at),
                ),
            )
            tracked.id = cursor.lastrowid
        return tracked

    def get_by_id(self, tracked_id: int) -> Optional[TrackedProduct]:
        """Get tracked product by ID."""
        with self.db.transaction() as cursor:
            cursor.execute("SELECT * FROM tracked_products WHERE id = ?", (tracked_id,))
            row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_tracked(row)

    def set_status(
        self,
        tracked_id: int,
        status: TrackingStatus,
        now: Optional[datetime] = None,
    ) -> None:
        """
        Pause, resume or archive a tracked product.

        Archived rows are kept for the delivery audit trail and cannot be
        reactivated.
        """
        archived_at = to_db_time(now or _utcnow()) if status == TrackingStatus.ARCHIVED else None
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                UPDATE tracked_products
                SET status = ?, archived_at = COALESCE(archived_at, ?)
                WHERE id = ? AND status != 'archived'
                """,
                (status.value, archived_at, tracked_id),
            )
            if cursor.rowcount == 0:
                raise ValueError(f"Tracked product {tracked_id} not found or archived")

    def list_for_user(self, user_id: int) -> list[TrackedProduct]:
        """List every tracked product of a user, archived included."""
        with self.db.transaction() as cursor:
            cursor.execute(
                "SELECT * FROM tracked_products WHERE user_id = ? ORDER BY id",
                (user_id,),
            )
            rows = cursor.fetchall()
        return [self._row_to_tracked(row) for row in rows]

    def list_active_tracking(
        self,
    ) -> list[tuple[TrackedProduct, NotificationPreference]]:
        """Active tracked products paired with their owner's preference."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                SELECT t.*, p.channels, p.delivery_time, p.timezone,
                       p.frequency, p.weekly_day, p.updated_at
                FROM tracked_products t
                JOIN notification_preferences p ON p.user_id = t.user_id
                WHERE t.status = 'active'
                ORDER BY t.id
                """
            )
            rows = cursor.fetchall()
        return [
            (self._row_to_tracked(row), PreferenceRepository.row_to_preference(row))
            for row in rows
        ]

    def _row_to_tracked(self, row) -> TrackedProduct:
        """Convert database row to TrackedProduct."""
        return TrackedProduct(
            id=row["id"],
            user_id=row["user_id"],
            product_id=row["product_id"],
            status=TrackingStatus(row["status"]),
            created_at=from_db_time(row["created_at"]),
            archived_at=from_db_time(row["archived_at"]),
        )


class PreferenceRepository:
    """CRUD operations for notification preferences (one per user)."""

    def __init__(self, db: Database):
        self.db = db

    def upsert(self, preference: NotificationPreference) -> NotificationPreference:
        """Create or replace a user's preference."""
        preference.updated_at = _utcnow()
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO notification_preferences
                (user_id, channels, delivery_time, timezone, frequency, weekly_day, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    channels = excluded.channels,
                    delivery_time = excluded.delivery_time,
                    timezone = excluded.timezone,
                    frequency = excluded.frequency,
                    weekly_day = excluded.weekly_day,
                    updated_at = excluded.updated_at
                """,
                (
                    preference.user_id,
                    ",".join(c.value for c in preference.channels),
                    preference.delivery_time.strftime("%H:%M"),
                    preference.timezone,
                    preference.frequency.value,
                    preference.weekly_day,
                    to_db_time(preference.updated_at),
                ),
            )
        return preference

    def get_for_user(self, user_id: int) -> Optional[NotificationPreference]:
        """Get a user's preference."""
        with self.db.transaction() as cursor:
            cursor.execute(
                "SELECT * FROM notification_preferences WHERE user_id = ?",
                (user_id,),
            )
            row = cursor.fetchone()
        if row is None:
            return None
        return self.row_to_preference(row)

    @staticmethod
    def row_to_preference(row) -> NotificationPreference:
        """Convert database row to NotificationPreference."""
        channels = [Channel(c) for c in row["channels"].split(",") if c]
        return NotificationPreference(
            user_id=row["user_id"],
            channels=channels,
            delivery_time=time.fromisoformat(row["delivery_time"]),
            timezone=row["timezone"],
            frequency=Frequency(row["frequency"]),
            weekly_day=row["weekly_day"],
            updated_at=from_db_time(row["updated_at"]),
        )


class AnalysisRepository:
    """Latest analysis payload per product."""

    def __init__(self, db: Database):
        self.db = db

    def record(
        self, product_id: str, payload_ref: str, now: Optional[datetime] = None
    ) -> AnalysisResult:
        """Record a new analysis payload for a product."""
        result = AnalysisResult(
            product_id=product_id, payload_ref=payload_ref, created_at=now or _utcnow()
        )
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO analysis_results (product_id, payload_ref, created_at)
                VALUES (?, ?, ?)
                """,
                (product_id, payload_ref, to_db_time(result.created_at)),
            )
            result.id = cursor.lastrowid
        return result

    def get_latest_payload_ref(self, product_id: str) -> Optional[str]:
        """Return the newest payload ref, or None when analysis is not ready."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                SELECT payload_ref FROM analysis_results
                WHERE product_id = ?
                ORDER BY created_at DESC, id DESC
                LIMIT 1
                """,
                (product_id,),
            )
            row = cursor.fetchone()
        return row["payload_ref"] if row else None


class DeliveryJobRepository:
    """Storage and state transitions for delivery jobs."""

    def __init__(self, db: Database):
        self.db = db

    def create_if_absent(self, job: DeliveryJob, now: datetime) -> Optional[DeliveryJob]:
        """
        Insert a job unless one exists for (tracked_product_id, due_date).

        Returns:
            The created job, or None if the slot was already taken
        """
        job.created_at = job.updated_at = now
        try:
            with self.db.transaction() as cursor:
                cursor.execute(
                    """
                    INSERT INTO delivery_jobs
                    (tracked_product_id, user_id, due_date, due_at, payload_ref,
                     status, attempt_count, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?)
                    """,
                    (
                        job.tracked_product_id,
                        job.user_id,
                        job.due_date.isoformat(),
                        to_db_time(job.due_at),
                        job.payload_ref,
                        JobStatus.PENDING.value,
                        to_db_time(now),
                        to_db_time(now),
                    ),
                )
                job.id = cursor.lastrowid
        except sqlite3.IntegrityError:
            return None
        return job

    def exists(self, tracked_product_id: int, due_date: date) -> bool:
        """Check whether a job already exists for a product/day."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                SELECT 1 FROM delivery_jobs
                WHERE tracked_product_id = ? AND due_date = ?
                """,
                (tracked_product_id, due_date.isoformat()),
            )
            return cursor.fetchone() is not None

    def get_by_id(self, job_id: int) -> Optional[DeliveryJob]:
        """Get job by ID."""
        with self.db.transaction() as cursor:
            cursor.execute("SELECT * FROM delivery_jobs WHERE id = ?", (job_id,))
            row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_job(row)

    def list_due_pending(self, now: datetime, limit: int = 100) -> list[DeliveryJob]:
        """Pending jobs whose due time has passed, oldest first."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                SELECT * FROM delivery_jobs
                WHERE status = 'pending' AND due_at <= ?
                ORDER BY due_at, id
                LIMIT ?
                """,
                (to_db_time(now), limit),
            )
            rows = cursor.fetchall()
        return [self._row_to_job(row) for row in rows]

    def list_stale_claims(self, cutoff: datetime, limit: int = 100) -> list[DeliveryJob]:
        """In-flight jobs claimed at or before the cutoff."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                SELECT * FROM delivery_jobs
                WHERE status = 'in_flight' AND claimed_at <= ?
                ORDER BY claimed_at, id
                LIMIT ?
                """,
                (to_db_time(cutoff), limit),
            )
            rows = cursor.fetchall()
        return [self._row_to_job(row) for row in rows]

    def list_by_status(
        self, status: Optional[JobStatus] = None, limit: int = 50
    ) -> list[DeliveryJob]:
        """List recent jobs, optionally filtered by status."""
        with self.db.transaction() as cursor:
            if status is None:
                cursor.execute(
                    "SELECT * FROM delivery_jobs ORDER BY id DESC LIMIT ?",
                    (limit,),
                )
            else:
                cursor.execute(
                    """
                    SELECT * FROM delivery_jobs
                    WHERE status = ?
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (status.value, limit),
                )
            rows = cursor.fetchall()
        return [self._row_to_job(row) for row in rows]

    def count_by_status(self) -> dict[str, int]:
        """Number of jobs in each status."""
        with self.db.transaction() as cursor:
            cursor.execute(
                "SELECT status, COUNT(*) AS n FROM delivery_jobs GROUP BY status"
            )
            rows = cursor.fetchall()
        return {row["status"]: row["n"] for row in rows}

    def claim(self, job_id: int, worker_id: str, now: datetime) -> Optional[DeliveryJob]:
        """
        Atomically move a pending job to in-flight.

        Returns:
            The claimed job, or None if another worker got there first
        """
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                UPDATE delivery_jobs
                SET status = 'in_flight', claimed_by = ?, claimed_at = ?, updated_at = ?
                WHERE id = ? AND status = 'pending'
                """,
                (worker_id, to_db_time(now), to_db_time(now), job_id),
            )
            if cursor.rowcount != 1:
                return None
            cursor.execute("SELECT * FROM delivery_jobs WHERE id = ?", (job_id,))
            row = cursor.fetchone()
        return self._row_to_job(row)

    def mark_delivered(self, job_id: int, now: datetime) -> bool:
        """Mark an in-flight job delivered. Only the first caller wins."""
        return self._transition(
            job_id,
            JobStatus.DELIVERED,
            from_statuses=(JobStatus.IN_FLIGHT,),
            now=now,
            extra_sets={"delivered_at": to_db_time(now)},
        )

    def mark_failed(self, job_id: int, now: datetime) -> bool:
        """Mark an in-flight job failed after every channel gave up."""
        return self._transition(
            job_id, JobStatus.FAILED, from_statuses=(JobStatus.IN_FLIGHT,), now=now
        )

    def mark_cancelled(self, job_id: int, now: datetime) -> bool:
        """Cancel a job that has not been sent."""
        return self._transition(
            job_id,
            JobStatus.CANCELLED,
            from_statuses=(JobStatus.PENDING, JobStatus.IN_FLIGHT),
            now=now,
        )

    def increment_attempts(self, job_id: int) -> None:
        """Bump the total attempt counter."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                UPDATE delivery_jobs
                SET attempt_count = attempt_count + 1
                WHERE id = ?
                """,
                (job_id,),
            )

    def requeue(self, job_id: int, now: Optional[datetime] = None) -> None:
        """Operator action: send a failed job back to pending."""
        ok = self._transition(
            job_id,
            JobStatus.PENDING,
            from_statuses=(JobStatus.FAILED,),
            now=now or _utcnow(),
            extra_sets={"claimed_by": None, "claimed_at": None},
        )
        if not ok:
            raise JobStateError(f"Job {job_id} is not in failed state")

    def abandon(self, job_id: int, now: Optional[datetime] = None) -> None:
        """Operator action: give up on a failed job for good."""
        ok = self._transition(
            job_id,
            JobStatus.ABANDONED,
            from_statuses=(JobStatus.FAILED,),
            now=now or _utcnow(),
        )
        if not ok:
            raise JobStateError(f"Job {job_id} is not in failed state")

    def _transition(
        self,
        job_id: int,
        to_status: JobStatus,
        from_statuses: tuple[JobStatus, ...],
        now: datetime,
        extra_sets: Optional[dict[str, Any]] = None,
    ) -> bool:
        """Compare-and-set a job status."""
        sets = {"status": to_status.value, "updated_at": to_db_time(now)}
        sets.update(extra_sets or {})
        assignments = ", ".join(f"{column} = ?" for column in sets)
        placeholders = ", ".join("?" for _ in from_statuses)
        with self.db.transaction() as cursor:
            cursor.execute(
                f"""
                UPDATE delivery_jobs
                SET {assignments}
                WHERE id = ? AND status IN ({placeholders})
                """,
                (*sets.values(), job_id, *(s.value for s in from_statuses)),
            )
            return cursor.rowcount == 1

    def _row_to_job(self, row) -> DeliveryJob:
        """Convert database row to DeliveryJob."""
        return DeliveryJob(
            id=row["id"],
            tracked_product_id=row["tracked_product_id"],
            user_id=row["user_id"],
            due_date=date.fromisoformat(row["due_date"]),
            due_at=from_db_time(row["due_at"]),
            payload_ref=row["payload_ref"],
            status=JobStatus(row["status"]),
            attempt_count=row["attempt_count"],
            claimed_by=row["claimed_by"],
            claimed_at=from_db_time(row["claimed_at"]),
            delivered_at=from_db_time(row["delivered_at"]),
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
        )


class ChannelAttemptRepository:
    """Append-only audit log of channel attempts."""

    def __init__(self, db: Database):
        self.db = db

    def append(self, attempt: ChannelAttempt) -> ChannelAttempt:
        """Store an attempt. Attempts are never updated."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO channel_attempts
                (job_id, channel, attempt_number, attempted_at, outcome, latency_ms, error)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    attempt.job_id,
                    attempt.channel.value,
                    attempt.attempt_number,
                    to_db_time(attempt.attempted_at),
                    attempt.outcome.value,
                    attempt.latency_ms,
                    attempt.error,
                ),
            )
            attempt_id = cursor.lastrowid
        return ChannelAttempt(
            id=attempt_id,
            job_id=attempt.job_id,
            channel=attempt.channel,
            attempt_number=attempt.attempt_number,
            attempted_at=attempt.attempted_at,
            outcome=attempt.outcome,
            latency_ms=attempt.latency_ms,
            error=attempt.error,
        )

    def list_for_job(self, job_id: int) -> list[ChannelAttempt]:
        """All attempts for a job in insertion order."""
        with self.db.transaction() as cursor:
            cursor.execute(
                "SELECT * FROM channel_attempts WHERE job_id = ? ORDER BY id",
                (job_id,),
            )
            rows = cursor.fetchall()
        return [self._row_to_attempt(row) for row in rows]

    def delivery_stats(self, since: datetime) -> dict[str, Any]:
        """Success rate and latency of attempts since a point in time."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                SELECT channel,
                       COUNT(*) AS total,
                       SUM(CASE WHEN outcome = 'success' THEN 1 ELSE 0 END) AS succeeded,
                       AVG(latency_ms) AS avg_latency_ms,
                       MAX(latency_ms) AS max_latency_ms
                FROM channel_attempts
                WHERE attempted_at >= ?
                GROUP BY channel
                ORDER BY channel
                """,
                (to_db_time(since),),
            )
            rows = cursor.fetchall()

        channels = {}
        total = succeeded = 0
        for row in rows:
            total += row["total"]
            succeeded += row["succeeded"]
            channels[row["channel"]] = {
                "total": row["total"],
                "succeeded": row["succeeded"],
                "avg_latency_ms": round(row["avg_latency_ms"] or 0.0, 1),
                "max_latency_ms": round(row["max_latency_ms"] or 0.0, 1),
            }
        return {
            "total": total,
            "succeeded": succeeded,
            "success_rate_percent": round(succeeded / total * 100, 2) if total else 0.0,
            "channels": channels,
        }

    def _row_to_attempt(self, row) -> ChannelAttempt:
        """Convert database row to ChannelAttempt."""
        return ChannelAttempt(
            id=row["id"],
            job_id=row["job_id"],
            channel=Channel(row["channel"]),
            attempt_number=row["attempt_number"],
            attempted_at=from_db_time(row["attempted_at"]),
            outcome=AttemptOutcome(row["outcome"]),
            latency_ms=row["latency_ms"],
            error=row["error"],
        )
