"""
WhatsApp Cloud API sender.
"""

from typing import Any, Optional

import requests

from insight_delivery.database.models import AttemptOutcome, Channel
from .base import ChannelSender, SendResult, UserDirectory, classify_http_status
from .formatting import InsightFormatter


class WhatsAppSender(ChannelSender):
    """Sends insights as WhatsApp text messages."""

    channel = Channel.WHATSAPP
    DEFAULT_API_URL = "https://graph.facebook.com/v19.0"

    def __init__(
        self,
        api_url: str,
        phone_number_id: str,
        access_token: str,
        users: UserDirectory,
        formatter: Optional[InsightFormatter] = None,
        timeout: float = 5.0,
    ):
        """
        Initialize WhatsApp sender.

        Args:
            api_url: Graph API base URL
            phone_number_id: Sending business phone number ID
            access_token: Bearer token for the Cloud API
            users: User address lookup
            formatter: Content formatter
            timeout: Request timeout in seconds
        """
        super().__init__(users, formatter, timeout)
        self.api_url = api_url.rstrip("/")
        self.phone_number_id = phone_number_id
        self.access_token = access_token

    @property
    def messages_url(self) -> str:
        return f"{self.api_url}/{self.phone_number_id}/messages"

    def send(self, user_id: int, payload_ref: str) -> SendResult:
        """Send insight over WhatsApp."""
        user = self.users.get_by_id(user_id)
        if user is None or not user.phone:
            return SendResult.permanent(self.channel, f"No phone number for user {user_id}")

        try:
            response = requests.post(
                self.messages_url,
                json=self._create_payload(user.phone, payload_ref),
                headers={"Authorization": f"Bearer {self.access_token}"},
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            return SendResult.transient(self.channel, f"Timeout: {e}")
        except requests.exceptions.ConnectionError as e:
            return SendResult.transient(self.channel, f"Connection error: {e}")
        except requests.exceptions.RequestException as e:
            return SendResult.transient(self.channel, str(e))

        outcome = classify_http_status(response.status_code)
        if outcome == AttemptOutcome.SUCCESS:
            return SendResult.ok(self.channel)
        return SendResult(
            outcome=outcome,
            channel=self.channel,
            error=f"HTTP {response.status_code}: {response.text}",
        )

    def _create_payload(self, phone: str, payload_ref: str) -> dict[str, Any]:
        """Create Cloud API message body."""
        message = self.formatter.render(payload_ref)
        return {
            "messaging_product": "whatsapp",
            "to": phone.lstrip("+"),
            "type": "text",
            "text": {
                "preview_url": True,
                "body": f"{message.title}\n\n{message.text}",
            },
        }
