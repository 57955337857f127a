"""Unit tests for notification services."""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from apr_cap_monitor.config import EmailConfig, TelegramConfig
from apr_cap_monitor.notifications.email import EmailNotifier
from apr_cap_monitor.notifications.telegram import MAX_MESSAGE_LENGTH, TelegramNotifier


def _mock_session(status: int = 200) -> AsyncMock:
    mock_response = AsyncMock()
    mock_response.status = status
    mock_response.__aenter__ = AsyncMock(return_value=mock_response)
    mock_response.__aexit__ = AsyncMock(return_value=None)

    mock_session = AsyncMock()
    mock_session.post = MagicMock(return_value=mock_response)
    mock_session.__aenter__ = AsyncMock(return_value=mock_session)
    mock_session.__aexit__ = AsyncMock(return_value=None)
    return mock_session


# ---------------------------------------------------------------------------
# TelegramNotifier
# ---------------------------------------------------------------------------


@pytest.fixture()
def telegram_notifier() -> TelegramNotifier:
    return TelegramNotifier(
        TelegramConfig(
            enabled=True,
            alert_bot_token="alert-tok",
            log_bot_token="log-tok",
            chat_id="12345",
        )
    )


@pytest.fixture()
def telegram_notifier_unconfigured() -> TelegramNotifier:
    return TelegramNotifier(
        TelegramConfig(enabled=True, alert_bot_token="", log_bot_token="", chat_id="")
    )


class TestTelegramNotifier:
    @pytest.mark.asyncio
    async def test_send_alert_success(self, telegram_notifier: TelegramNotifier) -> None:
        mock_session = _mock_session(200)

        with patch("apr_cap_monitor.notifications.telegram.aiohttp.ClientSession", return_value=mock_session):
            with patch("apr_cap_monitor.notifications.telegram.aiohttp.TCPConnector"):
                result = await telegram_notifier.send_alert("rate 31%", subject="APR cap")

        assert result is True
        url = mock_session.post.call_args[0][0]
        payload = mock_session.post.call_args.kwargs["json"]
        assert "botalert-tok" in url
        assert payload["text"].startswith("APR cap\n\n")
        assert payload["disable_notification"] is False

    @pytest.mark.asyncio
    async def test_send_alert_failure(self, telegram_notifier: TelegramNotifier) -> None:
        mock_session = _mock_session(403)

        with patch("apr_cap_monitor.notifications.telegram.aiohttp.ClientSession", return_value=mock_session):
            with patch("apr_cap_monitor.notifications.telegram.aiohttp.TCPConnector"):
                result = await telegram_notifier.send_alert("test alert")

        assert result is False

    @pytest.mark.asyncio
    async def test_network_error_returns_false(self, telegram_notifier: TelegramNotifier) -> None:
        mock_session = _mock_session(200)
        mock_session.post = MagicMock(side_effect=aiohttp.ClientConnectionError("down"))

        with patch("apr_cap_monitor.notifications.telegram.aiohttp.ClientSession", return_value=mock_session):
            with patch("apr_cap_monitor.notifications.telegram.aiohttp.TCPConnector"):
                result = await telegram_notifier.send_log("test log")

        assert result is False

    @pytest.mark.asyncio
    async def test_send_log_uses_log_bot_silently(self, telegram_notifier: TelegramNotifier) -> None:
        mock_session = _mock_session(200)

        with patch("apr_cap_monitor.notifications.telegram.aiohttp.ClientSession", return_value=mock_session):
            with patch("apr_cap_monitor.notifications.telegram.aiohttp.TCPConnector"):
                result = await telegram_notifier.send_log("cycle <done>")

        assert result is True
        assert "botlog-tok" in mock_session.post.call_args[0][0]
        payload = mock_session.post.call_args.kwargs["json"]
        assert payload["disable_notification"] is True
        assert payload["text"] == "cycle &lt;done&gt;"

    @pytest.mark.asyncio
    async def test_long_message_truncated(self, telegram_notifier: TelegramNotifier) -> None:
        mock_session = _mock_session(200)

        with patch("apr_cap_monitor.notifications.telegram.aiohttp.ClientSession", return_value=mock_session):
            with patch("apr_cap_monitor.notifications.telegram.aiohttp.TCPConnector"):
                await telegram_notifier.send_log("x" * (MAX_MESSAGE_LENGTH + 500))

        text = mock_session.post.call_args.kwargs["json"]["text"]
        assert len(text) == MAX_MESSAGE_LENGTH
        assert text.endswith("…")

    @pytest.mark.asyncio
    async def test_unconfigured_returns_false(
        self, telegram_notifier_unconfigured: TelegramNotifier
    ) -> None:
        assert await telegram_notifier_unconfigured.send_alert("test") is False
        assert await telegram_notifier_unconfigured.send_log("test") is False


# ---------------------------------------------------------------------------
# EmailNotifier
# ---------------------------------------------------------------------------


@pytest.fixture()
def email_notifier() -> EmailNotifier:
    return EmailNotifier(
        EmailConfig(
            enabled=True,
            alert_email="ops@example.com",
            smtp_server="smtp.example.com",
            smtp_port=587,
            sender_email="sender@example.com",
            sender_password="password123",
        )
    )


def _mock_smtp() -> MagicMock:
    mock_smtp = MagicMock()
    mock_smtp.__enter__.return_value = mock_smtp
    return mock_smtp


class TestEmailNotifier:
    @pytest.mark.asyncio
    async def test_send_alert_success(self, email_notifier: EmailNotifier) -> None:
        mock_smtp = _mock_smtp()
        with patch("apr_cap_monitor.notifications.email.smtplib.SMTP", return_value=mock_smtp):
            result = await email_notifier.send_alert("rates high", subject="Rate alert")
        assert result is True
        mock_smtp.starttls.assert_called_once()
        mock_smtp.login.assert_called_once_with("sender@example.com", "password123")
        sent = mock_smtp.send_message.call_args[0][0]
        assert sent["To"] == "ops@example.com"
        assert sent["Subject"] == "[APR cap monitor] Rate alert"

    @pytest.mark.asyncio
    async def test_send_alert_smtp_error(self, email_notifier: EmailNotifier) -> None:
        with patch(
            "apr_cap_monitor.notifications.email.smtplib.SMTP",
            side_effect=ConnectionError("SMTP down"),
        ):
            result = await email_notifier.send_alert("test body", subject="Test")
        assert result is False

    @pytest.mark.asyncio
    async def test_no_alert_email_returns_false(self) -> None:
        result = await EmailNotifier(EmailConfig(enabled=True)).send_alert("test")
        assert result is False

    @pytest.mark.asyncio
    async def test_no_credentials_returns_false(self) -> None:
        notifier = EmailNotifier(EmailConfig(enabled=True, alert_email="ops@example.com"))
        assert await notifier.send_alert("test") is False

    @pytest.mark.asyncio
    async def test_silent_log_is_not_mailed(self, email_notifier: EmailNotifier) -> None:
        with patch("apr_cap_monitor.notifications.email.smtplib.SMTP") as smtp:
            result = await email_notifier.send_log("routine")
        assert result is False
        smtp.assert_not_called()

    @pytest.mark.asyncio
    async def test_unmuted_log_is_mailed(self, email_notifier: EmailNotifier) -> None:
        mock_smtp = _mock_smtp()
        with patch("apr_cap_monitor.notifications.email.smtplib.SMTP", return_value=mock_smtp):
            result = await email_notifier.send_log("payout failures", silent=False)
        assert result is True
        assert mock_smtp.send_message.call_args[0][0]["Subject"] == "[APR cap monitor] Report"
