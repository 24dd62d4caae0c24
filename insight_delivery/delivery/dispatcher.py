"""
Worker pool that drains due pending jobs through the router.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import Optional

from insight_delivery.database.repository import DeliveryJobRepository
from insight_delivery.scheduling.clock import Clock, SystemClock
from .router import DeliveryReport, DeliveryRouter

logger = logging.getLogger(__name__)


class DeliveryDispatcher:
    """Bounded pool of delivery workers."""

    def __init__(
        self,
        job_repo: DeliveryJobRepository,
        router: DeliveryRouter,
        instance_id: str,
        max_workers: int = 8,
        batch_size: int = 200,
        clock: Optional[Clock] = None,
    ):
        self.job_repo = job_repo
        self.router = router
        self.instance_id = instance_id
        self.max_workers = max_workers
        self.batch_size = batch_size
        self.clock = clock or SystemClock()

    def dispatch_due(self, now: Optional[datetime] = None) -> list[DeliveryReport]:
        """
        Process every pending job whose due time has passed, then return.

        Returns:
            Reports for the jobs this instance claimed
        """
        now = now or self.clock.now()
        self.router.fail_stale_claims(now)
        jobs = self.job_repo.list_due_pending(now, limit=self.batch_size)
        if not jobs:
            return []

        logger.info(f"Dispatching {len(jobs)} due job(s) on {self.max_workers} worker(s)")
        with ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="delivery"
        ) as pool:
            futures = [pool.submit(self._work, job.id) for job in jobs]

        reports = []
        for job, future in zip(jobs, futures):
            try:
                report = future.result()
            except Exception as e:
                logger.error(f"Error delivering job {job.id}: {e}")
                continue
            if report is not None:
                reports.append(report)
        return reports

    def run(self, stop_event: threading.Event, poll_interval_seconds: float = 1.0) -> None:
        """
        Keep the worker pool fed with due jobs until stop_event is set.

        Runs beside the scheduler loop, so retry backoff in one job never
        delays a scheduler pass. Jobs already being delivered finish before
        this returns.

        Args:
            stop_event: Set to stop polling
            poll_interval_seconds: Pause between polls for due jobs
        """
        in_progress: dict[int, Future] = {}
        logger.info(f"Delivery loop started with {self.max_workers} worker(s)")

        with ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="delivery"
        ) as pool:
            while not stop_event.is_set():
                try:
                    self._reap(in_progress)
                    self._fill(pool, in_progress)
                except Exception as e:
                    logger.error(f"Delivery poll failed: {e}")
                stop_event.wait(poll_interval_seconds)

        self._reap(in_progress)
        logger.info("Delivery loop stopped")

    def _fill(self, pool: ThreadPoolExecutor, in_progress: dict[int, Future]) -> None:
        now = self.clock.now()
        self.router.fail_stale_claims(now)
        if len(in_progress) >= self.max_workers:
            return
        for job in self.job_repo.list_due_pending(now, limit=self.batch_size):
            if len(in_progress) >= self.max_workers:
                break
            if job.id not in in_progress:
                in_progress[job.id] = pool.submit(self._work, job.id)

    def _reap(self, in_progress: dict[int, Future]) -> None:
        for job_id, future in list(in_progress.items()):
            if not future.done():
                continue
            del in_progress[job_id]
            try:
                future.result()
            except Exception as e:
                logger.error(f"Error delivering job {job_id}: {e}")

    def _work(self, job_id: int) -> Optional[DeliveryReport]:
        worker_id = f"{self.instance_id}/{threading.current_thread().name}"
        return self.router.process(job_id, worker_id)
