"""
Notification scheduler.

Walks every active tracked product, works out whether its owner's insight is
due in their local timezone, and creates at most one DeliveryJob per
(tracked product, local date).
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Optional, Protocol
from zoneinfo import ZoneInfo

from insight_delivery.database.models import (
    DeliveryJob,
    Frequency,
    NotificationPreference,
    TrackedProduct,
)
from insight_delivery.database.repository import DeliveryJobRepository
from .clock import Clock, SystemClock

logger = logging.getLogger(__name__)


class TrackingStore(Protocol):
    def list_active_tracking(
        self,
    ) -> list[tuple[TrackedProduct, NotificationPreference]]: ...


class AnalysisStore(Protocol):
    def get_latest_payload_ref(self, product_id: str) -> Optional[str]: ...


@dataclass(frozen=True)
class DueSlot:
    """The local day a delivery belongs to and its moment in UTC."""

    due_date: date
    due_at: datetime


@dataclass
class SchedulerRunResult:
    """Summary of one evaluation pass."""

    lock_acquired: bool = True
    created: list[DeliveryJob] = field(default_factory=list)
    not_due: int = 0
    deferred: int = 0
    skipped_existing: int = 0
    errors: int = 0


def compute_due_slot(
    preference: NotificationPreference, now: datetime
) -> Optional[DueSlot]:
    """
    Return the due slot if the user's delivery moment has passed today.

    The due window opens at the preferred local time-of-day and closes at
    local midnight. Weekly preferences only open on their configured weekday.

    Args:
        preference: User's notification preference
        now: Current time (timezone-aware)

    Returns:
        DueSlot, or None if nothing is due yet

    Raises:
        zoneinfo.ZoneInfoNotFoundError: If the preference timezone is unknown
    """
    tz = ZoneInfo(preference.timezone)
    local_now = now.astimezone(tz)

    if (
        preference.frequency == Frequency.WEEKLY
        and local_now.weekday() != preference.weekly_day
    ):
        return None

    local_due = datetime.combine(local_now.date(), preference.delivery_time, tzinfo=tz)
    due_at = local_due.astimezone(timezone.utc)
    if now.astimezone(timezone.utc) < due_at:
        return None

    return DueSlot(due_date=local_now.date(), due_at=due_at)


class NotificationScheduler:
    """Creates delivery jobs for insights that have become due."""

    def __init__(
        self,
        tracking_store: TrackingStore,
        analysis_store: AnalysisStore,
        job_repo: DeliveryJobRepository,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize the scheduler.

        Args:
            tracking_store: Source of (TrackedProduct, NotificationPreference) pairs
            analysis_store: Source of payload refs per product
            job_repo: Delivery job storage
            clock: Time source, defaults to the system clock
        """
        self.tracking_store = tracking_store
        self.analysis_store = analysis_store
        self.job_repo = job_repo
        self.clock = clock or SystemClock()

    def evaluate(self, now: Optional[datetime] = None) -> SchedulerRunResult:
        """Run one evaluation pass over all active tracking."""
        now = now or self.clock.now()
        result = SchedulerRunResult()

        for tracked, preference in self.tracking_store.list_active_tracking():
            try:
                self._evaluate_one(tracked, preference, now, result)
            except Exception as e:
                result.errors += 1
                logger.error(f"Error evaluating tracked product {tracked.id}: {e}")

        logger.info(
            f"Scheduler pass: created={len(result.created)} deferred={result.deferred} "
            f"existing={result.skipped_existing} not_due={result.not_due} "
            f"errors={result.errors}"
        )
        return result

    def _evaluate_one(
        self,
        tracked: TrackedProduct,
        preference: NotificationPreference,
        now: datetime,
        result: SchedulerRunResult,
    ) -> None:
        """Evaluate a single tracked product."""
        # The store filters on status too; a row can change between list and here
        if not tracked.is_active:
            result.not_due += 1
            return

        slot = compute_due_slot(preference, now)
        if slot is None:
            result.not_due += 1
            return

        if self.job_repo.exists(tracked.id, slot.due_date):
            result.skipped_existing += 1
            return

        payload_ref = self.analysis_store.get_latest_payload_ref(tracked.product_id)
        if payload_ref is None:
            logger.debug(
                f"Analysis not ready for {tracked.product_id}, deferring to next cycle"
            )
            result.deferred += 1
            return

        job = self.job_repo.create_if_absent(
            DeliveryJob(
                tracked_product_id=tracked.id,
                user_id=tracked.user_id,
                due_date=slot.due_date,
                due_at=slot.due_at,
                payload_ref=payload_ref,
            ),
            now=now,
        )
        if job is None:
            result.skipped_existing += 1
            return

        logger.debug(
            f"Created delivery job {job.id} for tracked product {tracked.id} "
            f"due {slot.due_at.isoformat()}"
        )
        result.created.append(job)
