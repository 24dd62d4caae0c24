"""
Delivery router.

Claims a pending job and fans it out to every channel the user enabled. Each
channel runs its own sequential retry loop so a job never has two concurrent
sends on the same channel. The first successful channel marks the job
delivered; if every channel gives up the job fails and operators are alerted.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from tenacity import Retrying, retry_if_result, stop_after_attempt, wait_exponential

from insight_delivery.database.models import (
    AttemptOutcome,
    Channel,
    ChannelAttempt,
    DeliveryJob,
    JobStatus,
)
from insight_delivery.database.repository import (
    ChannelAttemptRepository,
    DeliveryJobRepository,
    PreferenceRepository,
    TrackingRepository,
)
from insight_delivery.notifiers.base import ChannelSender, SendResult
from insight_delivery.scheduling.clock import Clock, SystemClock
from .alerting import Alerter

logger = logging.getLogger(__name__)


@dataclass
class DeliveryReport:
    """What happened to one claimed job."""

    job_id: int
    status: JobStatus
    attempts: dict[Channel, list[AttemptOutcome]] = field(default_factory=dict)


class DeliveryRouter:
    """Delivers claimed jobs over the user's enabled channels."""

    def __init__(
        self,
        job_repo: DeliveryJobRepository,
        attempt_repo: ChannelAttemptRepository,
        tracking_repo: TrackingRepository,
        preference_repo: PreferenceRepository,
        senders: dict[Channel, ChannelSender],
        alerter: Alerter,
        clock: Optional[Clock] = None,
        max_attempts: int = 3,
        backoff_base_seconds: float = 1.0,
        backoff_max_seconds: float = 30.0,
        send_timeout_seconds: float = 5.0,
        late_result_wait_seconds: float = 30.0,
        claim_timeout_seconds: float = 600.0,
        channel_concurrency: Optional[dict[Channel, int]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the router.

        Args:
            job_repo: Delivery job storage
            attempt_repo: Channel attempt audit log
            tracking_repo: Used to re-check the tracked product at claim time
            preference_repo: Source of the user's enabled channels
            senders: One sender per channel
            alerter: Receives failed jobs
            clock: Time source
            max_attempts: Attempts per channel before it is abandoned
            backoff_base_seconds: First retry delay; doubles each retry
            backoff_max_seconds: Upper bound on a single retry delay
            send_timeout_seconds: Attempts running longer count as transient failures
            late_result_wait_seconds: Extra time a timed-out call gets before the
                channel stops retrying
            claim_timeout_seconds: In-flight jobs claimed longer ago are failed
            channel_concurrency: Max concurrent provider calls per channel
            sleep: Backoff sleep function
        """
        self.job_repo = job_repo
        self.attempt_repo = attempt_repo
        self.tracking_repo = tracking_repo
        self.preference_repo = preference_repo
        self.senders = senders
        self.alerter = alerter
        self.clock = clock or SystemClock()
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.send_timeout_seconds = send_timeout_seconds
        self.late_result_wait_seconds = late_result_wait_seconds
        self.claim_timeout_seconds = claim_timeout_seconds
        self.sleep = sleep

        limits = channel_concurrency or {}
        self._channel_limits = {
            channel: threading.BoundedSemaphore(limits.get(channel, 10))
            for channel in Channel
        }
        self._send_pool = ThreadPoolExecutor(
            max_workers=sum(limits.get(channel, 10) for channel in Channel),
            thread_name_prefix="send",
        )

    def process(self, job_id: int, worker_id: str) -> Optional[DeliveryReport]:
        """
        Claim and deliver one job.

        Once claimed, the job always ends delivered, cancelled or failed; an
        unexpected error after the claim fails the job and alerts.

        Args:
            job_id: Job to deliver
            worker_id: Identifier recorded as the claimant

        Returns:
            DeliveryReport, or None if another worker already claimed the job
        """
        now = self.clock.now()
        job = self.job_repo.claim(job_id, worker_id, now)
        if job is None:
            logger.debug(f"Job {job_id} already claimed, skipping")
            return None

        try:
            return self._deliver(job, now)
        except Exception:
            logger.exception(f"Job {job.id}: delivery aborted after claim")
            self._fail(job)
            return DeliveryReport(job_id=job.id, status=JobStatus.FAILED)

    def _deliver(self, job: DeliveryJob, now: datetime) -> DeliveryReport:
        tracked = self.tracking_repo.get_by_id(job.tracked_product_id)
        if tracked is None or not tracked.is_active:
            self.job_repo.mark_cancelled(job.id, now)
            logger.info(
                f"Cancelled job {job.id}: tracked product {job.tracked_product_id} "
                "is no longer active"
            )
            return DeliveryReport(job_id=job.id, status=JobStatus.CANCELLED)

        preference = self.preference_repo.get_for_user(job.user_id)
        channels = list(dict.fromkeys(preference.channels)) if preference else []
        if not channels:
            logger.warning(f"Job {job.id}: user {job.user_id} has no enabled channels")
            self._fail(job)
            return DeliveryReport(job_id=job.id, status=JobStatus.FAILED)

        delivered = threading.Event()
        report = DeliveryReport(job_id=job.id, status=JobStatus.IN_FLIGHT)

        with ThreadPoolExecutor(
            max_workers=len(channels), thread_name_prefix=f"job-{job.id}"
        ) as pool:
            futures = {
                pool.submit(self._deliver_channel, job, channel, delivered): channel
                for channel in channels
            }
            for future in as_completed(futures):
                channel = futures[future]
                try:
                    attempts = future.result()
                except Exception as e:
                    logger.error(f"Job {job.id}: {channel.value} delivery loop crashed: {e}")
                    attempts = []
                report.attempts[channel] = [a.outcome for a in attempts]

        if delivered.is_set():
            report.status = JobStatus.DELIVERED
        else:
            self._fail(job)
            report.status = JobStatus.FAILED
        return report

    def _deliver_channel(
        self,
        job: DeliveryJob,
        channel: Channel,
        delivered: threading.Event,
    ) -> list[ChannelAttempt]:
        """Try one channel until success, permanent failure or the attempt cap."""
        attempts: list[ChannelAttempt] = []
        stuck = False

        def attempt_once() -> AttemptOutcome:
            nonlocal stuck
            record, settled = self._attempt(job, channel, len(attempts) + 1, delivered)
            attempts.append(record)
            stuck = not settled
            return record.outcome

        def should_retry(outcome: AttemptOutcome) -> bool:
            # Another channel already informed the user; no more retries needed
            if delivered.is_set() or stuck:
                return False
            return outcome == AttemptOutcome.TRANSIENT_FAILURE

        retryer = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self.backoff_base_seconds, max=self.backoff_max_seconds
            ),
            retry=retry_if_result(should_retry),
            retry_error_callback=lambda retry_state: retry_state.outcome.result(),
            sleep=self.sleep,
        )
        final = retryer(attempt_once)

        if final != AttemptOutcome.SUCCESS and not delivered.is_set():
            logger.warning(
                f"Job {job.id}: abandoned {channel.value} after {len(attempts)} attempt(s)"
            )
        return attempts

    def _attempt(
        self,
        job: DeliveryJob,
        channel: Channel,
        attempt_number: int,
        delivered: threading.Event,
    ) -> tuple[ChannelAttempt, bool]:
        """
        Make one send, record it, and mark the job delivered on success.

        Returns:
            The recorded attempt, and False if the provider call is still running
        """
        attempted_at = self.clock.now()
        started = time.monotonic()
        result, settled = self._send(job, channel)
        latency_ms = (time.monotonic() - started) * 1000

        record = self.attempt_repo.append(
            ChannelAttempt(
                job_id=job.id,
                channel=channel,
                attempt_number=attempt_number,
                attempted_at=attempted_at,
                outcome=result.outcome,
                latency_ms=round(latency_ms, 3),
                error=result.error,
            )
        )
        self.job_repo.increment_attempts(job.id)

        if result.success:
            if self.job_repo.mark_delivered(job.id, self.clock.now()):
                logger.info(f"Job {job.id} delivered via {channel.value}")
            delivered.set()
        elif result.outcome == AttemptOutcome.TRANSIENT_FAILURE:
            logger.warning(
                f"Job {job.id}: {channel.value} attempt {attempt_number} "
                f"failed transiently: {result.error}"
            )
        else:
            logger.warning(
                f"Job {job.id}: {channel.value} failed permanently: {result.error}"
            )
        return record, settled

    def _send(self, job: DeliveryJob, channel: Channel) -> tuple[SendResult, bool]:
        """
        Call the channel sender under its concurrency limit and a timeout.

        A call that times out is given late_result_wait_seconds more to finish,
        so the next retry never overlaps it.

        Returns:
            The send result, and False if the provider call is still running
        """
        sender = self.senders.get(channel)
        if sender is None:
            return SendResult.permanent(channel, f"No sender configured for {channel.value}"), True

        # The permit is held until the provider call really returns, even after a timeout
        semaphore = self._channel_limits[channel]
        semaphore.acquire()
        try:
            future = self._send_pool.submit(sender.send, job.user_id, job.payload_ref)
        except Exception:
            semaphore.release()
            raise
        future.add_done_callback(lambda _: semaphore.release())

        try:
            return future.result(timeout=self.send_timeout_seconds), True
        except FutureTimeoutError:
            return self._await_late_result(job, channel, future)
        except Exception as e:
            logger.exception(f"Job {job.id}: {channel.value} sender raised")
            return SendResult.transient(channel, f"Unexpected sender error: {e}"), True

    def _await_late_result(
        self, job: DeliveryJob, channel: Channel, future: Future
    ) -> tuple[SendResult, bool]:
        timed_out = SendResult.transient(
            channel, f"Timed out after {self.send_timeout_seconds}s"
        )
        try:
            late = future.result(timeout=self.late_result_wait_seconds)
        except FutureTimeoutError:
            logger.error(
                f"Job {job.id}: {channel.value} send still running "
                f"{self.late_result_wait_seconds}s after timing out; "
                "no further attempts on this channel"
            )
            return timed_out, False
        except Exception as e:
            logger.warning(f"Job {job.id}: {channel.value} send raised after timing out: {e}")
            return timed_out, True

        if late.success:
            logger.warning(f"Job {job.id}: {channel.value} send succeeded after timing out")
            return late, True
        return timed_out, True

    def fail_stale_claims(self, now: Optional[datetime] = None) -> list[int]:
        """
        Fail jobs left in flight longer than the claim timeout.

        Covers workers that died mid-delivery. Failed jobs are alerted and can
        be requeued by an operator.

        Returns:
            IDs of the jobs that were failed
        """
        now = now or self.clock.now()
        cutoff = now - timedelta(seconds=self.claim_timeout_seconds)
        failed = []
        for job in self.job_repo.list_stale_claims(cutoff):
            logger.error(
                f"Job {job.id}: claimed by {job.claimed_by} at {job.claimed_at} "
                "and never finished; marking failed"
            )
            if self._fail(job):
                failed.append(job.id)
        return failed

    def _fail(self, job: DeliveryJob) -> bool:
        """Mark the job failed and surface it to operators."""
        if not self.job_repo.mark_failed(job.id, self.clock.now()):
            return False
        attempts = self.attempt_repo.list_for_job(job.id)
        failed_job = self.job_repo.get_by_id(job.id) or job
        try:
            self.alerter.job_failed(failed_job, attempts)
        except Exception:
            logger.exception(f"Alerting failed for job {job.id}")
        return True

    def close(self) -> None:
        """Release the send thread pool."""
        self._send_pool.shutdown(wait=False)
