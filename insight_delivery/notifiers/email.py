"""
Email SMTP sender.
"""

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from insight_delivery.database.models import Channel
from .base import ChannelSender, SendResult, UserDirectory
from .formatting import InsightFormatter, InsightMessage


class EmailSender(ChannelSender):
    """Sends insights via email SMTP."""

    channel = Channel.EMAIL

    def __init__(
        self,
        smtp_host: str,
        smtp_port: int,
        smtp_user: str,
        smtp_password: str,
        from_address: str,
        users: UserDirectory,
        formatter: Optional[InsightFormatter] = None,
        timeout: float = 5.0,
    ):
        """
        Initialize email sender.

        Args:
            smtp_host: SMTP server hostname
            smtp_port: SMTP server port
            smtp_user: SMTP username
            smtp_password: SMTP password
            from_address: Sender email address
            users: User address lookup
            formatter: Content formatter
            timeout: Socket timeout in seconds
        """
        super().__init__(users, formatter, timeout)
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.from_address = from_address

    def send(self, user_id: int, payload_ref: str) -> SendResult:
        """Send insight via email."""
        user = self.users.get_by_id(user_id)
        if user is None or not user.email:
            return SendResult.permanent(self.channel, f"No email address for user {user_id}")

        message = self._create_message(user.email, self.formatter.render(payload_ref))
        try:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                server.starttls()
                server.login(self.smtp_user, self.smtp_password)
                server.send_message(message)

            return SendResult.ok(self.channel)

        except smtplib.SMTPAuthenticationError as e:
            return SendResult.permanent(self.channel, f"Authentication failed: {e}")
        except smtplib.SMTPRecipientsRefused as e:
            return SendResult.permanent(self.channel, f"Recipient refused: {e}")
        except smtplib.SMTPResponseException as e:
            # 4xx replies are temporary by SMTP convention
            if 400 <= e.smtp_code < 500:
                return SendResult.transient(self.channel, f"SMTP {e.smtp_code}: {e.smtp_error!r}")
            return SendResult.permanent(self.channel, f"SMTP {e.smtp_code}: {e.smtp_error!r}")
        except (smtplib.SMTPException, OSError) as e:
            return SendResult.transient(self.channel, f"SMTP error: {e}")

    def _create_message(self, to_address: str, insight: InsightMessage) -> MIMEMultipart:
        """Create email message."""
        message = MIMEMultipart("alternative")
        message["Subject"] = insight.title
        message["From"] = self.from_address
        message["To"] = to_address

        message.attach(MIMEText(insight.text, "plain"))
        message.attach(MIMEText(self.formatter.render_email_html(insight), "html"))

        return message
