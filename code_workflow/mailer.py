import logging
import os
import re
import smtplib
from email.message import EmailMessage
from typing import Any

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^@\s\r\n]+@[^@\s\r\n]+\.[^@\s\r\n]+$")


class SmtpMailer:
    def __init__(self):
        self.host = os.environ.get("SMTP_HOST", "")
        self.port = int(os.environ.get("SMTP_PORT", "25"))
        self.sender = os.environ.get("SMTP_SENDER", "noreply@codeworkflow.local")
        self.username = os.environ.get("SMTP_USERNAME", "")
        self.password = os.environ.get("SMTP_PASSWORD", "")
        self.starttls = os.environ.get("SMTP_STARTTLS", "false").lower() == "true"

    @property
    def enabled(self) -> bool:
        return bool(self.host)

    def send_notification(self, recipient: str, title: str, message: str, payload: dict[str, Any] | None = None) -> bool:
        if not self.enabled:
            return False
        if not EMAIL_RE.match(recipient):
            logger.warning("Invalid email recipient skipped: %s", recipient)
            return False
        email = EmailMessage()
        email["From"] = self.sender
        email["To"] = recipient
        email["Subject"] = f"[Code Request] {title}"
        body = message
        if payload:
            body += "\n\n" + "\n".join(f"{k}: {v}" for k, v in payload.items())
        email.set_content(body)

        with smtplib.SMTP(self.host, self.port, timeout=10) as smtp:
            if self.starttls:
                smtp.starttls()
            if self.username:
                smtp.login(self.username, self.password)
            smtp.send_message(email)
        logger.info("Notification email sent to %s: %s", recipient, title)
        return True
