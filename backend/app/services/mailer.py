from __future__ import annotations

import logging
import smtplib
from email.mime.text import MIMEText

from app.config import Settings

logger = logging.getLogger(__name__)


class Mailer:
    """Outbound email for verification and password-reset links.

    Delivery is best effort: failures are logged and reported as False,
    never raised into the request that triggered the email.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def send_verification_link(self, to: str, link: str, expiry_hours: int) -> bool:
        subject = "Verify your ClassMate account"
        body = (
            "Welcome to ClassMate.\n\n"
            "Please confirm your email address by opening the link below:\n\n"
            f"{link}\n\n"
            f"This link expires in {expiry_hours} hours. If you did not create "
            "an account, you can ignore this message."
        )
        return self._send_email(to, subject, body)

    def send_password_reset_link(self, to: str, link: str, expiry_minutes: int) -> bool:
        subject = "Reset your ClassMate password"
        body = (
            "We received a request to reset your ClassMate password.\n\n"
            f"{link}\n\n"
            f"This link expires in {expiry_minutes} minutes. If you did not "
            "request a reset, you can ignore this message."
        )
        return self._send_email(to, subject, body)

    def _send_email(self, to: str, subject: str, body: str) -> bool:
        """Send an email via SMTP. Returns True on success."""
        if not self._settings.smtp_host:
            logger.warning("SMTP not configured, cannot send %r", subject)
            return False

        try:
            msg = MIMEText(body)
            msg["Subject"] = subject
            msg["From"] = self._settings.mail_from or self._settings.smtp_user
            msg["To"] = to

            with smtplib.SMTP(
                self._settings.smtp_host, self._settings.smtp_port
            ) as server:
                server.starttls()
                if self._settings.smtp_user:
                    server.login(
                        self._settings.smtp_user, self._settings.smtp_password
                    )
                server.send_message(msg)

            logger.info("Sent %r", subject)
            return True
        except Exception:
            logger.exception("Failed to send %r", subject)
            return False
