"""
Base channel sender classes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from insight_delivery.database.models import AttemptOutcome, Channel, User
from .formatting import InsightFormatter


@dataclass
class SendResult:
    """Result of one send over one channel."""

    outcome: AttemptOutcome
    channel: Channel
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.outcome == AttemptOutcome.SUCCESS

    @classmethod
    def ok(cls, channel: Channel) -> "SendResult":
        return cls(outcome=AttemptOutcome.SUCCESS, channel=channel)

    @classmethod
    def transient(cls, channel: Channel, error: str) -> "SendResult":
        return cls(outcome=AttemptOutcome.TRANSIENT_FAILURE, channel=channel, error=error)

    @classmethod
    def permanent(cls, channel: Channel, error: str) -> "SendResult":
        return cls(outcome=AttemptOutcome.PERMANENT_FAILURE, channel=channel, error=error)


class UserDirectory(Protocol):
    """Lookup of channel addresses for a user."""

    def get_by_id(self, user_id: int) -> Optional[User]: ...


def classify_http_status(status_code: int) -> AttemptOutcome:
    """Map a provider HTTP status to an attempt outcome."""
    if 200 <= status_code < 300:
        return AttemptOutcome.SUCCESS
    # Rate limits, timeouts and server errors may clear on retry
    if status_code in (408, 425, 429) or status_code >= 500:
        return AttemptOutcome.TRANSIENT_FAILURE
    return AttemptOutcome.PERMANENT_FAILURE


class ChannelSender(ABC):
    """Uniform send capability shared by every notification channel."""

    channel: Channel

    def __init__(
        self,
        users: UserDirectory,
        formatter: Optional[InsightFormatter] = None,
        timeout: float = 5.0,
    ):
        """
        Args:
            users: Where to look up the recipient's address
            formatter: Renders the message content for this channel
            timeout: Per-request timeout in seconds
        """
        self.users = users
        self.formatter = formatter or InsightFormatter()
        self.timeout = timeout

    @abstractmethod
    def send(self, user_id: int, payload_ref: str) -> SendResult:
        """
        Deliver an insight to a user over this channel.

        Provider errors are reported through the result, never raised.

        Args:
            user_id: Recipient user
            payload_ref: Opaque handle to the analysis payload

        Returns:
            SendResult with success, transient or permanent outcome
        """
        pass


class SenderFactory:
    """Factory for creating channel senders."""

    @staticmethod
    def create(
        channel: Channel,
        config: dict[str, Any],
        users: UserDirectory,
        formatter: Optional[InsightFormatter] = None,
        timeout: float = 5.0,
    ) -> ChannelSender:
        """
        Create a sender from configuration.

        Args:
            channel: Channel to build a sender for
            config: Channel configuration dict
            users: User address lookup
            formatter: Content formatter
            timeout: Per-request timeout in seconds

        Returns:
            Appropriate ChannelSender instance

        Raises:
            ValueError: If channel is unknown
        """
        if channel == Channel.PUSH:
            from .push import PushSender

            return PushSender(
                endpoint=config.get("endpoint", ""),
                api_key=config.get("api_key", ""),
                users=users,
                formatter=formatter,
                timeout=timeout,
            )

        elif channel == Channel.WHATSAPP:
            from .whatsapp import WhatsAppSender

            return WhatsAppSender(
                api_url=config.get("api_url", WhatsAppSender.DEFAULT_API_URL),
                phone_number_id=config.get("phone_number_id", ""),
                access_token=config.get("access_token", ""),
                users=users,
                formatter=formatter,
                timeout=timeout,
            )

        elif channel == Channel.EMAIL:
            from .email import EmailSender

            return EmailSender(
                smtp_host=config.get("smtp_host", ""),
                smtp_port=config.get("smtp_port", 587),
                smtp_user=config.get("smtp_user", ""),
                smtp_password=config.get("smtp_password", ""),
                from_address=config.get("from_address", ""),
                users=users,
                formatter=formatter,
                timeout=timeout,
            )

        else:
            raise ValueError(f"Unknown channel: {channel}")
