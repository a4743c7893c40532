import logging
import os
import smtplib
from email.message import EmailMessage
from email.utils import formataddr, make_msgid

logger = logging.getLogger(__name__)

SMTP_HOST = os.getenv("EMAIL_HOST", "smtp.gmail.com")
SMTP_PORT = int(os.getenv("EMAIL_PORT", "587"))
SMTP_USER = os.getenv("EMAIL_USER")
SMTP_PASSWORD = os.getenv("EMAIL_PASSWORD")
SMTP_TIMEOUT = float(os.getenv("EMAIL_TIMEOUT", "15"))
DEFAULT_SENDER = os.getenv("EMAIL_SENDER", SMTP_USER or "noreply@example.com")
DEFAULT_SENDER_NAME = os.getenv("EMAIL_SENDER_NAME", "E-Sign")


def format_sender_name(requester_name: str | None = None) -> str:
    label = (DEFAULT_SENDER_NAME or "").strip() or "E-Sign"
    requester = (requester_name or "").strip()
    return f"{requester} via {label}" if requester else label


def build_email(to: str, subject: str, body: str, html_body: str | None = None, sender_name: str | None = None) -> EmailMessage:
    display_name = (sender_name or DEFAULT_SENDER_NAME or "").strip()
    msg = EmailMessage()
    msg["From"] = formataddr((display_name, DEFAULT_SENDER)) if display_name else DEFAULT_SENDER
    msg["To"] = to
    msg["Subject"] = subject
    msg["Message-ID"] = make_msgid(domain=DEFAULT_SENDER.rsplit("@", 1)[-1])
    msg.set_content(body or "")
    if html_body:
        msg.add_alternative(html_body, subtype="html")
    return msg


def send_email(to: str, subject: str, body: str, html_body: str | None = None, sender_name: str | None = None):
    """Send one message over SMTP; logs instead when no credentials are configured.

    SMTP errors propagate so the worker task can retry the delivery.
    """
    msg = build_email(to, subject, body, html_body=html_body, sender_name=sender_name)
    if not (SMTP_USER and SMTP_PASSWORD):
        logger.info("email (stub) from=%s to=%s subject=%r", msg["From"], to, subject)
        return
    with smtplib.SMTP(SMTP_HOST, SMTP_PORT, timeout=SMTP_TIMEOUT) as smtp:
        smtp.starttls()
        smtp.login(SMTP_USER, SMTP_PASSWORD)
        smtp.send_message(msg)
    logger.info("email sent to %s subject=%r", to, subject)
