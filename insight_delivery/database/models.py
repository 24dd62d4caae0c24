"""
Data models for the insight delivery service.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time
from enum import Enum
from typing import Optional


class TrackingStatus(str, Enum):
    """Lifecycle of a tracked product."""

    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class Channel(str, Enum):
    """Notification channels a user can enable."""

    PUSH = "push"
    WHATSAPP = "whatsapp"
    EMAIL = "email"


class Frequency(str, Enum):
    """How often a user receives insights."""

    DAILY = "daily"
    WEEKLY = "weekly"


class JobStatus(str, Enum):
    """DeliveryJob states."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    DELIVERED = "delivered"
    FAILED = "failed"
    ABANDONED = "abandoned"
    CANCELLED = "cancelled"


class AttemptOutcome(str, Enum):
    """Result of a single channel attempt."""

    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"


@dataclass
class User:
    """User with channel addresses."""

    id: Optional[int] = None
    email: Optional[str] = None
    phone: Optional[str] = None  # E.164, used for WhatsApp
    push_token: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class TrackedProduct:
    """A product a user asked us to monitor."""

    user_id: int
    product_id: str
    status: TrackingStatus = TrackingStatus.ACTIVE
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == TrackingStatus.ACTIVE


@dataclass
class NotificationPreference:
    """Per-user delivery configuration."""

    user_id: int
    channels: list[Channel] = field(default_factory=lambda: [Channel.PUSH])
    delivery_time: time = time(9, 0)
    timezone: str = "UTC"
    frequency: Frequency = Frequency.DAILY
    weekly_day: int = 0  # Monday; only used for weekly frequency
    updated_at: Optional[datetime] = None


@dataclass
class AnalysisResult:
    """Pointer to the latest analysis payload for a product."""

    product_id: str
    payload_ref: str
    id: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass
class DeliveryJob:
    """One scheduled insight delivery."""

    tracked_product_id: int
    user_id: int
    due_date: date
    due_at: datetime
    payload_ref: str
    status: JobStatus = JobStatus.PENDING
    attempt_count: int = 0
    id: Optional[int] = None
    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class ChannelAttempt:
    """Append-only audit record of one send over one channel."""

    job_id: int
    channel: Channel
    attempt_number: int
    attempted_at: datetime
    outcome: AttemptOutcome
    latency_ms: float
    error: Optional[str] = None
    id: Optional[int] = None
