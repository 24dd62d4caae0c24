"""
Mobile push sender over an HTTP push gateway.
"""

import logging
from typing import Any, Optional

import requests

from insight_delivery.database.models import AttemptOutcome, Channel
from .base import ChannelSender, SendResult, UserDirectory, classify_http_status
from .formatting import InsightFormatter

logger = logging.getLogger(__name__)


class PushSender(ChannelSender):
    """Sends insights as push notifications to the user's device token."""

    channel = Channel.PUSH

    def __init__(
        self,
        endpoint: str,
        api_key: str,
        users: UserDirectory,
        formatter: Optional[InsightFormatter] = None,
        timeout: float = 5.0,
    ):
        """
        Initialize push sender.

        Args:
            endpoint: Push gateway URL
            api_key: Gateway API key
            users: User address lookup
            formatter: Content formatter
            timeout: Request timeout in seconds
        """
        super().__init__(users, formatter, timeout)
        self.endpoint = endpoint
        self.api_key = api_key

    def send(self, user_id: int, payload_ref: str) -> SendResult:
        """Send insight push notification."""
        user = self.users.get_by_id(user_id)
        if user is None or not user.push_token:
            return SendResult.permanent(self.channel, f"No push token for user {user_id}")

        payload = self._create_payload(user.push_token, payload_ref)
        try:
            response = requests.post(
                self.endpoint,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
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

        error = f"HTTP {response.status_code}: {response.text}"
        if response.status_code in (404, 410):
            logger.warning(f"Push token for user {user_id} rejected by gateway")
        return SendResult(outcome=outcome, channel=self.channel, error=error)

    def _create_payload(self, push_token: str, payload_ref: str) -> dict[str, Any]:
        """Create gateway request body."""
        message = self.formatter.render(payload_ref)
        return {
            "to": push_token,
            "notification": {
                "title": message.title,
                "body": message.text,
            },
            "data": {
                "payload_ref": payload_ref,
                "url": message.url,
            },
        }
