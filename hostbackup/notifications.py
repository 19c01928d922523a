"""
Run notifications.

The executor builds subject and body; a Notifier sends them. SMTP is used
when a host is configured, otherwise messages only go to the log.
"""

import logging
import smtplib
from email.message import EmailMessage

from hostbackup.context import NotificationSettings


logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """Raised when a notification cannot be delivered."""
    pass


class Notifier:
    """Base notifier interface."""

    def send(self, subject: str, body: str):
        raise NotImplementedError


class LogNotifier(Notifier):
    """Writes notifications to the application log."""

    def send(self, subject: str, body: str):
        logger.info(f"Notification: {subject}\n{body}")


class SMTPNotifier(Notifier):
    """
    Sends plain-text email through an SMTP relay.
    """

    def __init__(self, host: str, port: int, sender: str, recipient: str, timeout: int = 30):
        """
        Initialize SMTP notifier.

        Args:
            host: SMTP relay hostname
            port: SMTP relay port
            sender: From address
            recipient: To address
            timeout: Connection timeout in seconds
        """
        self.host = host
        self.port = port
        self.sender = sender
        self.recipient = recipient
        self.timeout = timeout

    def send(self, subject: str, body: str):
        """
        Send one message.

        Raises:
            NotificationError: If the relay rejects or cannot be reached
        """
        message = EmailMessage()
        message['Subject'] = subject
        message['From'] = self.sender
        message['To'] = self.recipient
        message.set_content(body)

        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationError(f"Failed to send notification to {self.recipient}: {e}")

        logger.info(f"Notification sent to {self.recipient}: {subject}")


def create_notifier(settings: NotificationSettings) -> Notifier:
    """
    Factory function to create the notifier for the configured channel.

    Args:
        settings: Notification settings

    Returns:
        SMTPNotifier when an SMTP host and recipient are set, else LogNotifier
    """
    if settings.smtp_host and settings.recipient:
        return SMTPNotifier(settings.smtp_host, settings.smtp_port, settings.sender, settings.recipient)
    return LogNotifier()
