"""
Notifier tests.
Tests for push, WhatsApp and email senders and the Discord operator alerter.
"""

import smtplib
from datetime import date, datetime, timezone
from unittest.mock import Mock, patch

import pytest
import requests

from insight_delivery.database.models import (
    AttemptOutcome,
    Channel,
    ChannelAttempt,
    DeliveryJob,
    JobStatus,
    User,
)
from insight_delivery.delivery.alerting import summarize_attempts
from insight_delivery.notifiers.base import (
    SendResult,
    SenderFactory,
    classify_http_status,
)
from insight_delivery.notifiers.discord import DiscordAlerter
from insight_delivery.notifiers.email import EmailSender
from insight_delivery.notifiers.formatting import InsightFormatter
from insight_delivery.notifiers.push import PushSender
from insight_delivery.notifiers.whatsapp import WhatsAppSender


@pytest.fixture
def users():
    """User directory returning one fully reachable user."""
    directory = Mock()
    directory.get_by_id.return_value = User(
        id=7, email="shopper@example.com", phone="+15551234567", push_token="tok-7"
    )
    return directory


@pytest.fixture
def formatter():
    return InsightFormatter("https://shop.example.com/insights/")


class TestSendResult:
    """Test SendResult model."""

    def test_ok_result(self):
        """Should create success result."""
        result = SendResult.ok(Channel.PUSH)
        assert result.success is True
        assert result.error is None

    def test_transient_result(self):
        """Should create transient failure with error."""
        result = SendResult.transient(Channel.EMAIL, "SMTP connection failed")
        assert result.success is False
        assert result.outcome == AttemptOutcome.TRANSIENT_FAILURE
        assert result.error == "SMTP connection failed"

    @pytest.mark.parametrize(
        "status_code,expected",
        [
            (200, AttemptOutcome.SUCCESS),
            (204, AttemptOutcome.SUCCESS),
            (400, AttemptOutcome.PERMANENT_FAILURE),
            (404, AttemptOutcome.PERMANENT_FAILURE),
            (429, AttemptOutcome.TRANSIENT_FAILURE),
            (503, AttemptOutcome.TRANSIENT_FAILURE),
        ],
    )
    def test_classify_http_status(self, status_code, expected):
        """Should map provider statuses to outcomes."""
        assert classify_http_status(status_code) == expected


class TestInsightFormatter:
    """Test message rendering."""

    def test_render_links_payload(self, formatter: InsightFormatter):
        """Should link to the payload without a doubled slash."""
        message = formatter.render("analysis-42")

        assert message.url == "https://shop.example.com/insights/analysis-42"
        assert message.url in message.text
        assert message.title

    def test_email_html_contains_link(self, formatter: InsightFormatter):
        """Should include the link in the HTML body."""
        html = formatter.render_email_html(formatter.render("analysis-42"))

        assert 'href="https://shop.example.com/insights/analysis-42"' in html


class TestPushSender:
    """Test push gateway delivery."""

    @pytest.fixture
    def sender(self, users, formatter):
        return PushSender(
            endpoint="https://push.example.com/send",
            api_key="key-1",
            users=users,
            formatter=formatter,
            timeout=3.0,
        )

    def test_send_success(self, sender: PushSender):
        """Should post to the gateway with the device token."""
        with patch("requests.post") as mock_post:
            mock_post.return_value.status_code = 200

            result = sender.send(7, "analysis-42")

        assert result.success is True
        mock_post.assert_called_once()
        kwargs = mock_post.call_args.kwargs
        assert kwargs["json"]["to"] == "tok-7"
        assert kwargs["json"]["data"]["payload_ref"] == "analysis-42"
        assert kwargs["headers"]["Authorization"] == "Bearer key-1"
        assert kwargs["timeout"] == 3.0

    def test_rejected_token_is_permanent(self, sender: PushSender):
        """Should not retry a token the gateway does not know."""
        with patch("requests.post") as mock_post:
            mock_post.return_value.status_code = 404
            mock_post.return_value.text = "Unknown token"

            result = sender.send(7, "analysis-42")

        assert result.outcome == AttemptOutcome.PERMANENT_FAILURE
        assert "404" in result.error

    def test_server_error_is_transient(self, sender: PushSender):
        """Should retry provider outages."""
        with patch("requests.post") as mock_post:
            mock_post.return_value.status_code = 503
            mock_post.return_value.text = "Unavailable"

            result = sender.send(7, "analysis-42")

        assert result.outcome == AttemptOutcome.TRANSIENT_FAILURE

    def test_timeout_is_transient(self, sender: PushSender):
        """Should report request timeouts as transient."""
        with patch("requests.post", side_effect=requests.exceptions.Timeout("slow")):
            result = sender.send(7, "analysis-42")

        assert result.outcome == AttemptOutcome.TRANSIENT_FAILURE
        assert "Timeout" in result.error

    def test_missing_token_is_permanent(self, sender: PushSender, users):
        """Should fail without calling the gateway when no token is registered."""
        users.get_by_id.return_value = User(id=7, email="shopper@example.com")

        with patch("requests.post") as mock_post:
            result = sender.send(7, "analysis-42")

        assert result.outcome == AttemptOutcome.PERMANENT_FAILURE
        mock_post.assert_not_called()


class TestWhatsAppSender:
    """Test WhatsApp Cloud API delivery."""

    @pytest.fixture
    def sender(self, users, formatter):
        return WhatsAppSender(
            api_url="https://graph.example.com/v19.0/",
            phone_number_id="12345",
            access_token="wa-token",
            users=users,
            formatter=formatter,
        )

    def test_send_success(self, sender: WhatsAppSender):
        """Should post a text message to the phone number endpoint."""
        with patch("requests.post") as mock_post:
            mock_post.return_value.status_code = 200

            result = sender.send(7, "analysis-42")

        assert result.success is True
        args, kwargs = mock_post.call_args
        assert args[0] == "https://graph.example.com/v19.0/12345/messages"
        assert kwargs["json"]["to"] == "15551234567"
        assert kwargs["json"]["messaging_product"] == "whatsapp"
        assert "analysis-42" in kwargs["json"]["text"]["body"]

    def test_rate_limited_is_transient(self, sender: WhatsAppSender):
        """Should retry when the Cloud API throttles."""
        with patch("requests.post") as mock_post:
            mock_post.return_value.status_code = 429
            mock_post.return_value.text = "Too many requests"

            result = sender.send(7, "analysis-42")

        assert result.outcome == AttemptOutcome.TRANSIENT_FAILURE

    def test_connection_error_is_transient(self, sender: WhatsAppSender):
        """Should treat network failures as transient."""
        with patch("requests.post", side_effect=requests.exceptions.ConnectionError("reset")):
            result = sender.send(7, "analysis-42")

        assert result.outcome == AttemptOutcome.TRANSIENT_FAILURE

    def test_missing_phone_is_permanent(self, sender: WhatsAppSender, users):
        """Should fail when the user has no phone number."""
        users.get_by_id.return_value = User(id=7, push_token="tok-7")

        result = sender.send(7, "analysis-42")

        assert result.outcome == AttemptOutcome.PERMANENT_FAILURE


class TestEmailSender:
    """Test email notifications."""

    @pytest.fixture
    def sender(self, users, formatter):
        return EmailSender(
            smtp_host="smtp.example.com",
            smtp_port=587,
            smtp_user="insights@example.com",
            smtp_password="password",
            from_address="insights@example.com",
            users=users,
            formatter=formatter,
        )

    def test_send_email_success(self, sender: EmailSender):
        """Should send email successfully."""
        with patch("smtplib.SMTP") as mock_smtp:
            mock_server = mock_smtp.return_value.__enter__.return_value

            result = sender.send(7, "analysis-42")

        assert result.success is True
        mock_smtp.assert_called_once_with("smtp.example.com", 587, timeout=5.0)
        mock_server.starttls.assert_called_once()
        mock_server.login.assert_called_once_with("insights@example.com", "password")
        mock_server.send_message.assert_called_once()

    def test_auth_failure_is_permanent(self, sender: EmailSender):
        """Should not retry bad credentials."""
        with patch("smtplib.SMTP") as mock_smtp:
            mock_server = mock_smtp.return_value.__enter__.return_value
            mock_server.login.side_effect = smtplib.SMTPAuthenticationError(535, b"Bad credentials")

            result = sender.send(7, "analysis-42")

        assert result.outcome == AttemptOutcome.PERMANENT_FAILURE
        assert "Authentication" in result.error

    def test_recipient_refused_is_permanent(self, sender: EmailSender):
        """Should not retry a rejected address."""
        with patch("smtplib.SMTP") as mock_smtp:
            mock_server = mock_smtp.return_value.__enter__.return_value
            mock_server.send_message.side_effect = smtplib.SMTPRecipientsRefused(
                {"shopper@example.com": (550, b"No such user")}
            )

            result = sender.send(7, "analysis-42")

        assert result.outcome == AttemptOutcome.PERMANENT_FAILURE

    def test_temporary_reply_is_transient(self, sender: EmailSender):
        """Should retry 4xx SMTP replies."""
        with patch("smtplib.SMTP") as mock_smtp:
            mock_server = mock_smtp.return_value.__enter__.return_value
            mock_server.send_message.side_effect = smtplib.SMTPResponseException(
                421, b"Service not available"
            )

            result = sender.send(7, "analysis-42")

        assert result.outcome == AttemptOutcome.TRANSIENT_FAILURE
        assert "421" in result.error

    def test_disconnect_is_transient(self, sender: EmailSender):
        """Should retry when the server cannot be reached."""
        with patch("smtplib.SMTP", side_effect=smtplib.SMTPServerDisconnected("gone")):
            result = sender.send(7, "analysis-42")

        assert result.outcome == AttemptOutcome.TRANSIENT_FAILURE

    def test_create_message_headers(self, sender: EmailSender, formatter):
        """Should address the message and attach text and HTML parts."""
        message = sender._create_message("shopper@example.com", formatter.render("analysis-42"))

        assert message["To"] == "shopper@example.com"
        assert message["From"] == "insights@example.com"
        assert message["Subject"] == "Your product insight is ready"
        assert len(message.get_payload()) == 2


class TestSenderFactory:
    """Test sender construction from config."""

    @pytest.mark.parametrize(
        "channel,config,expected",
        [
            (Channel.PUSH, {"endpoint": "https://push.example.com", "api_key": "k"}, PushSender),
            (Channel.WHATSAPP, {"phone_number_id": "1", "access_token": "t"}, WhatsAppSender),
            (Channel.EMAIL, {"smtp_host": "smtp.example.com"}, EmailSender),
        ],
    )
    def test_create_sender(self, users, channel, config, expected):
        """Should build the sender class for each channel."""
        sender = SenderFactory.create(channel, config, users=users, timeout=2.0)

        assert isinstance(sender, expected)
        assert sender.channel == channel
        assert sender.timeout == 2.0

    def test_whatsapp_default_api_url(self, users):
        """Should fall back to the public Graph API URL."""
        sender = SenderFactory.create(Channel.WHATSAPP, {"phone_number_id": "1"}, users=users)

        assert sender.messages_url == f"{WhatsAppSender.DEFAULT_API_URL}/1/messages"

    def test_unknown_channel(self, users):
        """Should reject channels it cannot build."""
        with pytest.raises(ValueError, match="Unknown channel"):
            SenderFactory.create("pigeon", {}, users=users)


class TestDiscordAlerter:
    """Test Discord operator alerts."""

    @pytest.fixture
    def alerter(self):
        return DiscordAlerter(
            webhook_url="https://discord.com/api/webhooks/123/abc",
            mention_on_failure=True,
        )

    @pytest.fixture
    def failed_job(self):
        return DeliveryJob(
            id=11,
            tracked_product_id=3,
            user_id=7,
            due_date=date(2026, 3, 10),
            due_at=datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc),
            payload_ref="analysis-42",
            status=JobStatus.FAILED,
            attempt_count=3,
        )

    @pytest.fixture
    def attempts(self):
        at = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)
        return [
            ChannelAttempt(11, Channel.PUSH, 1, at, AttemptOutcome.PERMANENT_FAILURE, 12.0, "HTTP 404"),
            ChannelAttempt(11, Channel.EMAIL, 1, at, AttemptOutcome.TRANSIENT_FAILURE, 30.0, "SMTP 421"),
            ChannelAttempt(11, Channel.EMAIL, 2, at, AttemptOutcome.TRANSIENT_FAILURE, 31.0, "SMTP 421"),
        ]

    def test_job_failed_posts_embed(self, alerter: DiscordAlerter, failed_job, attempts):
        """Should post a red embed mentioning @here."""
        with patch("requests.post") as mock_post:
            mock_post.return_value.status_code = 204
            mock_post.return_value.ok = True

            alerter.job_failed(failed_job, attempts)

        mock_post.assert_called_once()
        payload = mock_post.call_args.kwargs["json"]
        assert payload["content"] == "@here"
        embed = payload["embeds"][0]
        assert "11" in embed["title"]
        assert embed["color"] == 0xFF0000
        assert "email: transient_failure after 2" in embed["description"]

    def test_lock_contention_posts_warning(self, alerter: DiscordAlerter):
        """Should post an orange embed for lock contention."""
        with patch("requests.post") as mock_post:
            mock_post.return_value.ok = True

            alerter.lock_contention("notification-scheduler", 5)

        embed = mock_post.call_args.kwargs["json"]["embeds"][0]
        assert embed["color"] == 0xFFA500
        assert "5 consecutive" in embed["description"]

    def test_rate_limit_retries_once(self, alerter: DiscordAlerter):
        """Should honour Retry-After and retry once."""
        limited = Mock(status_code=429, headers={"Retry-After": "2"})
        accepted = Mock(status_code=204, ok=True)

        with patch("requests.post", side_effect=[limited, accepted]) as mock_post:
            with patch("time.sleep") as mock_sleep:
                alerter.lock_contention("notification-scheduler", 5)

        assert mock_post.call_count == 2
        mock_sleep.assert_called_once_with(2.0)

    def test_webhook_errors_are_logged(self, alerter: DiscordAlerter, failed_job, caplog):
        """Should log, not raise, when Discord is unreachable."""
        with patch("requests.post", side_effect=requests.exceptions.ConnectionError("down")):
            alerter.job_failed(failed_job, [])

        assert "Discord alert failed" in caplog.text


class TestSummarizeAttempts:
    """Test attempt summaries used in alerts."""

    def test_empty(self):
        assert summarize_attempts([]) == "no channel attempts"
