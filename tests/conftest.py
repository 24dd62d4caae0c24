"""
Pytest configuration and shared fixtures.
"""

import threading
from datetime import datetime, time, timedelta, timezone
from time import monotonic
from typing import Optional

import pytest

from insight_delivery.database.connection import Database
from insight_delivery.database.models import (
    AttemptOutcome,
    Channel,
    ChannelAttempt,
    DeliveryJob,
    Frequency,
    NotificationPreference,
    TrackedProduct,
    User,
)
from insight_delivery.database.repository import (
    AnalysisRepository,
    PreferenceRepository,
    TrackingRepository,
    UserRepository,
)
from insight_delivery.delivery.alerting import Alerter
from insight_delivery.notifiers.base import ChannelSender, SendResult


class FakeClock:
    """Manually driven clock."""

    def __init__(self, start: datetime):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


class ScriptedSender(ChannelSender):
    """Returns a scripted outcome per call; repeats the last one when exhausted."""

    def __init__(self, channel: Channel, outcomes: list[AttemptOutcome], delay: float = 0.0):
        self.channel = channel
        self.outcomes = list(outcomes)
        self.delay = delay
        self.calls: list[tuple[int, str]] = []
        self._lock = threading.Lock()

    def send(self, user_id: int, payload_ref: str) -> SendResult:
        with self._lock:
            self.calls.append((user_id, payload_ref))
            index = min(len(self.calls), len(self.outcomes)) - 1
            outcome = self.outcomes[index]
        if self.delay:
            threading.Event().wait(self.delay)
        error = None if outcome == AttemptOutcome.SUCCESS else f"scripted {outcome.value}"
        return SendResult(outcome=outcome, channel=self.channel, error=error)


def wait_until(condition, timeout: float = 5.0) -> bool:
    """Poll condition until it holds or the timeout passes."""
    deadline = monotonic() + timeout
    while monotonic() < deadline:
        if condition():
            return True
        threading.Event().wait(0.01)
    return condition()


class RecordingAlerter(Alerter):
    """Keeps every alert for assertions."""

    def __init__(self):
        self.failed_jobs: list[tuple[DeliveryJob, list[ChannelAttempt]]] = []
        self.contention: list[tuple[str, int]] = []

    def job_failed(self, job: DeliveryJob, attempts: list[ChannelAttempt]) -> None:
        self.failed_jobs.append((job, attempts))

    def lock_contention(self, lock_name: str, consecutive_skips: int) -> None:
        self.contention.append((lock_name, consecutive_skips))


@pytest.fixture
def now():
    """A Tuesday afternoon in UTC."""
    return datetime(2026, 3, 10, 14, 30, tzinfo=timezone.utc)


@pytest.fixture
def clock(now):
    return FakeClock(now)


@pytest.fixture
def db():
    """Create in-memory database with schema."""
    db = Database(":memory:")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def alerter():
    return RecordingAlerter()


@pytest.fixture
def seed(db):
    """Factory creating a user with preference, tracked product and analysis."""

    def _seed(
        product_id: str = "sku-1",
        channels: Optional[list[Channel]] = None,
        timezone_name: str = "UTC",
        delivery_time: time = time(9, 0),
        frequency: Frequency = Frequency.DAILY,
        weekly_day: int = 0,
        payload_ref: Optional[str] = "analysis-1",
        user: Optional[User] = None,
    ) -> tuple[User, TrackedProduct]:
        if user is None:
            user = UserRepository(db).create(
                User(email="shopper@example.com", phone="+15551234567", push_token="tok-1")
            )
            PreferenceRepository(db).upsert(
                NotificationPreference(
                    user_id=user.id,
                    channels=channels or [Channel.PUSH],
                    delivery_time=delivery_time,
                    timezone=timezone_name,
                    frequency=frequency,
                    weekly_day=weekly_day,
                )
            )
        tracked = TrackingRepository(db).create(
            TrackedProduct(user_id=user.id, product_id=product_id)
        )
        if payload_ref is not None:
            AnalysisRepository(db).record(product_id, payload_ref)
        return user, tracked

    return _seed


@pytest.fixture
def make_clock(now):
    """Factory for independent fake clocks starting at `now`."""
    return lambda: FakeClock(now)
