"""
Service wiring: scheduler, lock, router and worker pool around one database.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional

from insight_delivery.config import AppConfig
from insight_delivery.database.connection import Database
from insight_delivery.database.models import Channel
from insight_delivery.database.repository import (
    AnalysisRepository,
    ChannelAttemptRepository,
    DeliveryJobRepository,
    PreferenceRepository,
    TrackingRepository,
    UserRepository,
)
from insight_delivery.delivery.alerting import Alerter, LogAlerter
from insight_delivery.delivery.dispatcher import DeliveryDispatcher
from insight_delivery.delivery.router import DeliveryReport, DeliveryRouter
from insight_delivery.notifiers.base import ChannelSender, SenderFactory
from insight_delivery.notifiers.discord import DiscordAlerter
from insight_delivery.notifiers.formatting import InsightFormatter
from insight_delivery.scheduling.clock import Clock, SystemClock
from insight_delivery.scheduling.lock import LockProvider, SqliteLockProvider
from insight_delivery.scheduling.runner import SchedulerRunner
from insight_delivery.scheduling.scheduler import NotificationScheduler, SchedulerRunResult

logger = logging.getLogger(__name__)


@dataclass
class CycleResult:
    """Outcome of one scheduler + dispatch tick."""

    scheduled: SchedulerRunResult
    reports: list[DeliveryReport] = field(default_factory=list)


def build_senders(
    config: AppConfig, users: UserRepository
) -> dict[Channel, ChannelSender]:
    """Create one sender per channel from configuration."""
    formatter = InsightFormatter(config.content.insights_base_url)
    return {
        channel: SenderFactory.create(
            channel,
            vars(config.channels.for_channel(channel)),
            users=users,
            formatter=formatter,
            timeout=config.delivery.send_timeout_seconds,
        )
        for channel in Channel
    }


def build_alerter(config: AppConfig) -> Alerter:
    """Discord alerts when a webhook is configured, log-only otherwise."""
    if config.alerting.discord_webhook_url:
        return DiscordAlerter(
            webhook_url=config.alerting.discord_webhook_url,
            mention_on_failure=config.alerting.mention_on_failure,
        )
    return LogAlerter()


class InsightDeliveryApp:
    """Main insight delivery application."""

    def __init__(
        self,
        db: Database,
        config: Optional[AppConfig] = None,
        clock: Optional[Clock] = None,
        senders: Optional[dict[Channel, ChannelSender]] = None,
        alerter: Optional[Alerter] = None,
        lock_provider: Optional[LockProvider] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        """
        Initialize the app.

        Args:
            db: Database instance (already initialized)
            config: Application config, defaults when omitted
            clock: Time source, system clock when omitted
            senders: Channel senders, built from config when omitted
            alerter: Operator alerter, built from config when omitted
            lock_provider: Scheduler lock, SQLite-backed when omitted
            sleep: Backoff sleep override for the router
        """
        self.db = db
        self.config = config or AppConfig()
        self.clock = clock or SystemClock()

        # Initialize repositories
        self.user_repo = UserRepository(db)
        self.tracking_repo = TrackingRepository(db)
        self.preference_repo = PreferenceRepository(db)
        self.analysis_repo = AnalysisRepository(db)
        self.job_repo = DeliveryJobRepository(db)
        self.attempt_repo = ChannelAttemptRepository(db)

        # Initialize services
        self.alerter = alerter or build_alerter(self.config)
        self.scheduler = NotificationScheduler(
            tracking_store=self.tracking_repo,
            analysis_store=self.analysis_repo,
            job_repo=self.job_repo,
            clock=self.clock,
        )
        self.runner = SchedulerRunner(
            scheduler=self.scheduler,
            lock_provider=lock_provider or SqliteLockProvider(db),
            alerter=self.alerter,
            instance_id=self.config.scheduler.instance_id,
            lock_ttl_seconds=self.config.scheduler.lock_ttl_seconds,
            contention_alert_threshold=self.config.scheduler.contention_alert_threshold,
            clock=self.clock,
        )

        delivery = self.config.delivery
        router_kwargs = {} if sleep is None else {"sleep": sleep}
        self.router = DeliveryRouter(
            job_repo=self.job_repo,
            attempt_repo=self.attempt_repo,
            tracking_repo=self.tracking_repo,
            preference_repo=self.preference_repo,
            senders=senders if senders is not None else build_senders(self.config, self.user_repo),
            alerter=self.alerter,
            clock=self.clock,
            max_attempts=delivery.max_attempts,
            backoff_base_seconds=delivery.backoff_base_seconds,
            backoff_max_seconds=delivery.backoff_max_seconds,
            send_timeout_seconds=delivery.send_timeout_seconds,
            late_result_wait_seconds=delivery.late_result_wait_seconds,
            claim_timeout_seconds=delivery.claim_timeout_seconds,
            channel_concurrency=self.config.channels.concurrency(),
            **router_kwargs,
        )
        self.dispatcher = DeliveryDispatcher(
            job_repo=self.job_repo,
            router=self.router,
            instance_id=self.config.scheduler.instance_id,
            max_workers=delivery.max_workers,
            batch_size=delivery.batch_size,
            clock=self.clock,
        )

    def run_cycle(self, dry_run: bool = False) -> CycleResult:
        """Run one scheduler pass, then deliver whatever is due before returning."""
        scheduled = self.runner.run_once()
        if dry_run:
            return CycleResult(scheduled=scheduled)
        return CycleResult(scheduled=scheduled, reports=self.dispatcher.dispatch_due())

    def run_forever(self, stop_event: threading.Event) -> None:
        """
        Run the scheduler and the delivery loop until stop_event is set.

        Delivery runs on its own thread so retries and backoff never hold up
        a scheduler pass.
        """
        interval = self.config.scheduler.interval_seconds
        logger.info(
            f"Insight delivery running as {self.config.scheduler.instance_id}, "
            f"interval {interval}s"
        )
        delivery_loop = threading.Thread(
            target=self.dispatcher.run,
            args=(stop_event, self.config.delivery.poll_interval_seconds),
            name="delivery-loop",
        )
        delivery_loop.start()
        try:
            while not stop_event.is_set():
                try:
                    self.runner.run_once()
                except Exception as e:
                    logger.error(f"Scheduler pass failed: {e}")
                stop_event.wait(interval)
        finally:
            stop_event.set()
            delivery_loop.join()
        logger.info("Insight delivery stopped")

    def close(self) -> None:
        """Hand the scheduler lock to the next instance and stop sending."""
        try:
            self.runner.release()
        except Exception as e:
            logger.error(f"Could not release scheduler lock: {e}")
        self.router.close()
