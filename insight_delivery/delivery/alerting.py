"""
Operator alerting for failed deliveries and scheduler contention.
"""

import logging
from abc import ABC, abstractmethod

from insight_delivery.database.models import ChannelAttempt, DeliveryJob

logger = logging.getLogger(__name__)


class Alerter(ABC):
    """Receives conditions an operator has to look at."""

    @abstractmethod
    def job_failed(self, job: DeliveryJob, attempts: list[ChannelAttempt]) -> None:
        """Every enabled channel gave up on a job."""
        pass

    @abstractmethod
    def lock_contention(self, lock_name: str, consecutive_skips: int) -> None:
        """The scheduler could not get its lock for several cycles in a row."""
        pass


class LogAlerter(Alerter):
    """Alerts into the application log only."""

    def job_failed(self, job: DeliveryJob, attempts: list[ChannelAttempt]) -> None:
        logger.error(
            f"Delivery job {job.id} failed for user {job.user_id}: "
            f"{summarize_attempts(attempts)}"
        )

    def lock_contention(self, lock_name: str, consecutive_skips: int) -> None:
        logger.warning(
            f"Scheduler lock {lock_name} unavailable for {consecutive_skips} consecutive cycles"
        )


def summarize_attempts(attempts: list[ChannelAttempt]) -> str:
    """One line per channel: last outcome and number of tries."""
    by_channel: dict[str, list[ChannelAttempt]] = {}
    for attempt in attempts:
        by_channel.setdefault(attempt.channel.value, []).append(attempt)
    if not by_channel:
        return "no channel attempts"
    parts = []
    for channel, channel_attempts in sorted(by_channel.items()):
        last = channel_attempts[-1]
        detail = f" ({last.error})" if last.error else ""
        parts.append(f"{channel}: {last.outcome.value} after {len(channel_attempts)}{detail}")
    return "; ".join(parts)
