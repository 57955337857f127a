"""E-mail notifications for rate alerts and, optionally, cycle reports."""
import asyncio
import logging
import smtplib
from email.message import EmailMessage

from ..config import EmailConfig

logger = logging.getLogger(__name__)

SUBJECT_PREFIX = "[APR cap monitor]"


class EmailNotifier:
    """Send rate alerts by SMTP.

    Cycle reports are mailed only when sent unmuted (``silent=False``);
    routine silent reports stay on the chat channels.
    """

    def __init__(self, config: EmailConfig) -> None:
        self.alert_email = config.alert_email
        self.smtp_server = config.smtp_server
        self.smtp_port = config.smtp_port
        self.sender_email = config.sender_email
        self.sender_password = config.sender_password

    def _build_message(self, body: str, subject: str) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.sender_email
        msg["To"] = self.alert_email
        msg["Subject"] = f"{SUBJECT_PREFIX} {subject}".strip()
        msg.set_content(body)
        return msg

    def _deliver(self, msg: EmailMessage) -> None:
        with smtplib.SMTP(self.smtp_server, self.smtp_port, timeout=30) as server:
            server.starttls()
            server.login(self.sender_email, self.sender_password)
            server.send_message(msg)

    async def _send(self, body: str, subject: str) -> bool:
        if not self.alert_email:
            logger.debug("No alert email configured, skipping email")
            return False

        if not self.sender_email or not self.sender_password:
            logger.warning("Email credentials not configured")
            return False

        try:
            await asyncio.to_thread(self._deliver, self._build_message(body, subject))
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Failed to send email: %s", e)
            return False
        logger.info("Email sent to %s", self.alert_email)
        return True

    async def send_alert(self, message: str, subject: str = "") -> bool:
        return await self._send(message, subject or "Rate alert")

    async def send_log(self, message: str, silent: bool = True) -> bool:
        if silent:
            return False
        return await self._send(message, "Report")
