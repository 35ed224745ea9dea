# mailer.py - Outbound email over SMTP
import asyncio
import logging
import os
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage

from errors import DeliveryError

logger = logging.getLogger("taskboard.mailer")

SMTP_HOST = os.getenv("SMTP_HOST", "")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USERNAME = os.getenv("SMTP_USERNAME", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
SMTP_STARTTLS = os.getenv("SMTP_STARTTLS", "true").lower() == "true"
EMAIL_FROM = os.getenv("EMAIL_FROM", "Taskboard <no-reply@taskboard.local>")
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")


@dataclass
class OutgoingEmail:
    to: str
    subject: str
    body: str


def invitation_email(to: str, board_name: str, inviter_name: str) -> OutgoingEmail:
    return OutgoingEmail(
        to=to,
        subject=f'{inviter_name} invited you to "{board_name}"',
        body=(
            f'{inviter_name} invited you to collaborate on the board "{board_name}".\n\n'
            f"Sign in with this email address to accept or decline the invitation:\n"
            f"{FRONTEND_URL}/invitations\n"
        ),
    )


def verification_code_email(to: str, code: str, expiry_minutes: int) -> OutgoingEmail:
    return OutgoingEmail(
        to=to,
        subject="Your Taskboard sign-in code",
        body=(
            f"Your verification code is {code}.\n\n"
            f"It expires in {expiry_minutes} minutes. If you did not request it, ignore this email.\n"
        ),
    )


class Mailer:
    """Sends mail with smtplib on a worker thread.

    With no SMTP_HOST configured the message is logged instead of sent.
    """

    def __init__(
        self,
        host: str = SMTP_HOST,
        port: int = SMTP_PORT,
        username: str = SMTP_USERNAME,
        password: str = SMTP_PASSWORD,
        starttls: bool = SMTP_STARTTLS,
        from_addr: str = EMAIL_FROM,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.starttls = starttls
        self.from_addr = from_addr

    async def send(self, email: OutgoingEmail) -> None:
        if not self.host:
            logger.info(f"SMTP not configured, email to {email.to} not sent: {email.subject}\n{email.body}")
            return

        def _send_sync() -> None:
            m = EmailMessage()
            m["Subject"] = email.subject
            m["From"] = self.from_addr
            m["To"] = email.to
            m.set_content(email.body)
            with smtplib.SMTP(host=self.host, port=self.port, timeout=15) as s:
                s.ehlo()
                if self.starttls:
                    s.starttls()
                    s.ehlo()
                if self.username and self.password:
                    s.login(self.username, self.password)
                s.send_message(m)

        try:
            await asyncio.to_thread(_send_sync)
        except (smtplib.SMTPException, OSError) as e:
            logger.warning(f"Email delivery to {email.to} failed: {e}")
            raise DeliveryError("Email delivery failed", {"to": email.to}) from e
        logger.info(f"Email sent to {email.to}: {email.subject}")
