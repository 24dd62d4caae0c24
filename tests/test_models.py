"""
Data model tests.
Tests for dataclass models and timestamp serialization.
"""

import dataclasses
from datetime import date, datetime, time, timedelta, timezone

import pytest

from insight_delivery.database.models import (
    AttemptOutcome,
    Channel,
    ChannelAttempt,
    DeliveryJob,
    JobStatus,
    NotificationPreference,
    TrackedProduct,
    TrackingStatus,
)
from insight_delivery.database.repository import from_db_time, to_db_time


class TestTrackedProductModel:
    """Test TrackedProduct model."""

    def test_new_product_is_active(self):
        """Should default to active tracking."""
        tracked = TrackedProduct(user_id=1, product_id="sku-1")
        assert tracked.status == TrackingStatus.ACTIVE
        assert tracked.is_active is True
        assert tracked.id is None

    @pytest.mark.parametrize("status", [TrackingStatus.PAUSED, TrackingStatus.ARCHIVED])
    def test_inactive_statuses(self, status):
        """Should report paused and archived products as inactive."""
        assert TrackedProduct(user_id=1, product_id="sku-1", status=status).is_active is False


class TestNotificationPreferenceModel:
    """Test NotificationPreference defaults."""

    def test_defaults(self):
        """Should default to daily push at 09:00 UTC."""
        preference = NotificationPreference(user_id=1)
        assert preference.channels == [Channel.PUSH]
        assert preference.delivery_time == time(9, 0)
        assert preference.timezone == "UTC"

    def test_channel_lists_not_shared(self):
        """Should give every preference its own channel list."""
        first = NotificationPreference(user_id=1)
        second = NotificationPreference(user_id=2)
        first.channels.append(Channel.EMAIL)
        assert second.channels == [Channel.PUSH]


class TestDeliveryJobModel:
    """Test DeliveryJob model."""

    def test_new_job_is_pending(self):
        """Should start pending with no attempts."""
        job = DeliveryJob(
            tracked_product_id=1,
            user_id=1,
            due_date=date(2026, 3, 10),
            due_at=datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc),
            payload_ref="analysis-1",
        )
        assert job.status == JobStatus.PENDING
        assert job.attempt_count == 0
        assert job.claimed_by is None

    def test_status_values_round_trip(self):
        """Should rebuild statuses from their stored values."""
        assert JobStatus("in_flight") == JobStatus.IN_FLIGHT
        assert AttemptOutcome("transient_failure") == AttemptOutcome.TRANSIENT_FAILURE


class TestChannelAttemptModel:
    """Test ChannelAttempt model."""

    def test_attempt_is_immutable(self):
        """Should not allow audit records to be edited."""
        attempt = ChannelAttempt(
            job_id=1,
            channel=Channel.EMAIL,
            attempt_number=1,
            attempted_at=datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc),
            outcome=AttemptOutcome.SUCCESS,
            latency_ms=120.0,
        )
        with pytest.raises(dataclasses.FrozenInstanceError):
            attempt.outcome = AttemptOutcome.PERMANENT_FAILURE


class TestTimestamps:
    """Test stored timestamp format."""

    def test_stored_as_utc(self):
        """Should normalize offsets to UTC."""
        berlin = timezone(timedelta(hours=1))
        stored = to_db_time(datetime(2026, 3, 10, 10, 0, tzinfo=berlin))

        assert stored == "2026-03-10T09:00:00.000000+00:00"
        assert from_db_time(stored) == datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)

    def test_stored_strings_sort_chronologically(self):
        """Should compare correctly as plain strings."""
        earlier = to_db_time(datetime(2026, 3, 10, 9, 0, 0, 500, tzinfo=timezone.utc))
        later = to_db_time(datetime(2026, 3, 10, 9, 0, 1, tzinfo=timezone.utc))
        assert earlier < later

    def test_naive_values_treated_as_utc(self):
        """Should read SQLite default timestamps as UTC."""
        assert from_db_time("2026-03-10 09:00:00").tzinfo == timezone.utc
        assert from_db_time(None) is None
