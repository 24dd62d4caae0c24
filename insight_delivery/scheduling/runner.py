"""
Lock-guarded scheduler cycle.
"""

import logging
from datetime import datetime
from typing import Optional

from insight_delivery.delivery.alerting import Alerter
from .clock import Clock, SystemClock
from .lock import LockLease, LockProvider
from .scheduler import NotificationScheduler, SchedulerRunResult

logger = logging.getLogger(__name__)


class SchedulerRunner:
    """Runs the scheduler once per minute window under a cross-instance lock."""

    LOCK_NAME = "notification-scheduler"

    def __init__(
        self,
        scheduler: NotificationScheduler,
        lock_provider: LockProvider,
        alerter: Alerter,
        instance_id: str,
        lock_ttl_seconds: float = 55,
        contention_alert_threshold: int = 5,
        clock: Optional[Clock] = None,
    ):
        self.scheduler = scheduler
        self.lock_provider = lock_provider
        self.alerter = alerter
        self.instance_id = instance_id
        self.lock_ttl_seconds = lock_ttl_seconds
        self.contention_alert_threshold = contention_alert_threshold
        self.clock = clock or SystemClock()
        self.consecutive_skips = 0

    def run_once(self) -> SchedulerRunResult:
        """
        Evaluate the current minute window if this instance wins the lock.

        A lost lock skips the cycle; the next window picks up anything missed.
        Losing to another instance with a live lease is normal standby and is
        not counted as contention. Only skips nothing explains (an expired
        lease that still could not be taken, or a lock store error) count
        toward the contention alert.
        """
        now = self.clock.now()
        window = now.strftime("%Y-%m-%dT%H:%M")

        try:
            acquired = self.lock_provider.acquire(
                self.LOCK_NAME,
                self.instance_id,
                window,
                now,
                self.lock_ttl_seconds,
            )
            lease = None if acquired else self.lock_provider.current_lease(self.LOCK_NAME)
        except Exception as e:
            logger.error(f"Scheduler lock unavailable for window {window}: {e}")
            self._record_contention(window)
            return SchedulerRunResult(lock_acquired=False)

        if acquired:
            self.consecutive_skips = 0
            return self.scheduler.evaluate(now)

        if self._is_standby(lease, window, now):
            self.consecutive_skips = 0
            logger.debug(
                f"Standing by: {lease.holder} holds the scheduler lock "
                f"until {lease.expires_at.isoformat()}"
            )
        else:
            self._record_contention(window)
        return SchedulerRunResult(lock_acquired=False)

    def release(self) -> None:
        """Give up the lock so another instance can take over immediately."""
        self.lock_provider.release(self.LOCK_NAME, self.instance_id)
        logger.info(f"Released scheduler lock held by {self.instance_id}")

    def _is_standby(self, lease: Optional[LockLease], window: str, now: datetime) -> bool:
        if lease is None or lease.holder == self.instance_id:
            return False
        # The window was already evaluated, or its owner is still alive
        return lease.is_live(now) or lease.window == window

    def _record_contention(self, window: str) -> None:
        self.consecutive_skips += 1
        logger.warning(
            f"Scheduler lock could not be acquired for window {window} "
            f"({self.consecutive_skips} consecutive)"
        )
        if self.consecutive_skips % self.contention_alert_threshold == 0:
            self.alerter.lock_contention(self.LOCK_NAME, self.consecutive_skips)
