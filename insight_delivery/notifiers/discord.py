"""
Discord webhook alerter for operators.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any

import requests

from insight_delivery.database.models import ChannelAttempt, DeliveryJob
from insight_delivery.delivery.alerting import LogAlerter, summarize_attempts

logger = logging.getLogger(__name__)


class DiscordAlerter(LogAlerter):
    """Posts operator alerts to a Discord webhook, in addition to logging them."""

    COLOR_WARNING = 0xFFA500  # Orange
    COLOR_CRITICAL = 0xFF0000  # Red

    def __init__(self, webhook_url: str, mention_on_failure: bool = False):
        """
        Initialize Discord alerter.

        Args:
            webhook_url: Discord webhook URL
            mention_on_failure: Whether to @here on failed jobs
        """
        self.webhook_url = webhook_url
        self.mention_on_failure = mention_on_failure

    def job_failed(self, job: DeliveryJob, attempts: list[ChannelAttempt]) -> None:
        super().job_failed(job, attempts)
        embed = {
            "title": f"Delivery job {job.id} failed",
            "description": summarize_attempts(attempts),
            "color": self.COLOR_CRITICAL,
            "fields": [
                {"name": "User", "value": str(job.user_id), "inline": True},
                {"name": "Due", "value": job.due_date.isoformat(), "inline": True},
                {"name": "Attempts", "value": str(len(attempts)), "inline": True},
            ],
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        payload: dict[str, Any] = {"embeds": [embed]}
        if self.mention_on_failure:
            payload["content"] = "@here"
        self._post(payload)

    def lock_contention(self, lock_name: str, consecutive_skips: int) -> None:
        super().lock_contention(lock_name, consecutive_skips)
        self._post({
            "embeds": [{
                "title": "Scheduler lock contention",
                "description": (
                    f"`{lock_name}` was unavailable for {consecutive_skips} "
                    "consecutive cycles."
                ),
                "color": self.COLOR_WARNING,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }]
        })

    def _post(self, payload: dict[str, Any]) -> None:
        """Send webhook; alert delivery problems are logged, not raised."""
        try:
            response = self._send_webhook(payload)
            if not response.ok:
                logger.error(
                    f"Discord alert rejected: HTTP {response.status_code}: {response.text}"
                )
        except requests.exceptions.RequestException as e:
            logger.error(f"Discord alert failed: {e}")

    def _send_webhook(self, payload: dict[str, Any]) -> requests.Response:
        """Send webhook with rate limit handling."""
        response = requests.post(self.webhook_url, json=payload, timeout=10)

        # Handle rate limiting
        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After", "1")
            time.sleep(float(retry_after))
            response = requests.post(self.webhook_url, json=payload, timeout=10)

        return response
