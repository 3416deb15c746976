import logging
import os
import smtplib
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from email.message import EmailMessage
from email.utils import formataddr
from typing import Optional

from .config import EMAIL_MAX_WORKERS, HOA_NAME

logger = logging.getLogger(__name__)

SMTP_HOST = os.getenv("EMAIL_HOST", "smtp.gmail.com")
SMTP_PORT = int(os.getenv("EMAIL_PORT", "587"))
SMTP_USER = os.getenv("EMAIL_USER")
SMTP_PASSWORD = os.getenv("EMAIL_PASSWORD")
DEFAULT_SENDER = os.getenv("EMAIL_SENDER", SMTP_USER or "noreply@hoa.local")
DEFAULT_SENDER_NAME = os.getenv("EMAIL_SENDER_NAME", HOA_NAME)


@dataclass
class OutgoingEmail:
    to: str
    subject: str
    html_body: str
    text_body: str = ""
    meta: dict = field(default_factory=dict)


@dataclass
class DeliveryResult:
    message: OutgoingEmail
    ok: bool
    error: Optional[str] = None


def send_email(
    to: str,
    subject: str,
    body: str,
    html_body: str | None = None,
    sender_name: str | None = None,
    reply_to: str | None = None,
):
    display_name = (sender_name or DEFAULT_SENDER_NAME or "").strip()
    from_value = formataddr((display_name, DEFAULT_SENDER)) if display_name else DEFAULT_SENDER
    if SMTP_USER and SMTP_PASSWORD:
        msg = EmailMessage()
        msg["From"] = from_value
        if reply_to:
            msg["Reply-To"] = reply_to
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(body or "")
        if html_body:
            msg.add_alternative(html_body, subtype="html")
        with smtplib.SMTP(SMTP_HOST, SMTP_PORT) as smtp:
            if SMTP_PORT != 465:
                smtp.starttls()
            smtp.login(SMTP_USER, SMTP_PASSWORD)
            smtp.send_message(msg)
        logger.info("email sent to %s: %s", to, subject)
    else:
        logger.info(
            "EMAIL (stub) from=%s to=%s subject=%s\n%s",
            from_value,
            to,
            subject,
            body or html_body or "",
        )


def deliver(message: OutgoingEmail):
    # resolved at call time; the transport is swappable
    send_email(message.to, message.subject, message.text_body, html_body=message.html_body)


def send_bulk(messages: list[OutgoingEmail], max_workers: int | None = None) -> list[DeliveryResult]:
    """Send every message concurrently and report one result per recipient.

    A failure for one recipient never affects the others; nothing is
    retried.
    """
    if not messages:
        return []

    def _attempt(message: OutgoingEmail) -> DeliveryResult:
        try:
            deliver(message)
        except Exception as exc:
            logger.warning("email to %s failed: %s", message.to, exc)
            return DeliveryResult(message=message, ok=False, error=str(exc))
        return DeliveryResult(message=message, ok=True)

    workers = max(1, min(max_workers or EMAIL_MAX_WORKERS, len(messages)))
    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(_attempt, messages))
