"""Message composition and channel delivery.

The API never calls these directly for workflow events; it enqueues them and
the worker runs ``deliver_notification``. OTP codes are the exception: the
signer is waiting on the code, so ``deliver_otp`` runs inline and reports
whether any channel succeeded.
"""
import logging
from html import escape
from typing import Callable, Dict, List, Optional

import requests

from .config import SMS_GATEWAY_URL
from .email import send_email, format_sender_name
from .errors import DependencyFailed

logger = logging.getLogger(__name__)

SUBJECTS = {
    "signing_requested": "Signature Requested: {title}",
    "recipient_activated": "Your turn to sign: {title}",
    "document_completed": "Completed: {title}",
    "document_rejected": "Declined: {title}",
    "document_cancelled": "Cancelled: {title}",
    "document_expired": "Expired: {title}",
    "signing_delegated": "Signature Requested: {title}",
    "signing_reminder": "Reminder: {title} expires in {hours_remaining} hours",
}

INTROS = {
    "signing_requested": "You have been asked to review and sign this document.",
    "recipient_activated": "The previous signer has finished. It is now your turn to sign.",
    "signing_delegated": "{delegated_by} has asked you to sign this document on their behalf.",
    "document_completed": "All parties have finished signing this document.",
    "document_rejected": "A signer has declined this document. No further signatures are needed.",
    "document_cancelled": "This document was cancelled by the sender.",
    "document_expired": "This document expired before all signatures were collected.",
    "signing_reminder": "This document is still waiting for your signature and expires in about {hours_remaining} hours.",
}


def build_message(event: str, context: dict):
    title = context.get("title") or f"Document {context.get('document_id', '')}".strip()
    hours_remaining = context.get("hours_remaining", "a few")
    subject = SUBJECTS.get(event, "{title}").format(title=title, hours_remaining=hours_remaining)
    intro = INTROS.get(event, "").format(
        delegated_by=context.get("delegated_by") or "A signer", hours_remaining=hours_remaining
    )
    link = context.get("signing_url")
    lines = [intro, f"Document: “{title}”"]
    if context.get("grace_warning"):
        lines.append(context["grace_warning"])
    if context.get("sha256_final"):
        lines.append(f"Final SHA256: {context['sha256_final']}")
    if link:
        lines.append(f"Open document: {link}")
    text_body = "\n\n".join(lines) + "\n"

    button = ""
    if link:
        link_html = escape(link)
        button = f"""
      <div style="margin: 24px 0;">
        <a href="{link_html}" style="display: inline-block; background: #2563eb; color: #fff; padding: 12px 24px; border-radius: 999px; text-decoration: none; font-weight: 600;">
          Review &amp; Sign
        </a>
      </div>
      <p style="font-size: 12px; color: #64748b;">If the button doesn&apos;t work, copy this link into your browser:<br /><a href="{link_html}">{link_html}</a></p>"""
    html_body = f"""
<html>
  <body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif; background: #f5f6f8; padding: 24px;">
    <div style="max-width: 520px; margin: 0 auto; background: #ffffff; border-radius: 12px; padding: 24px; box-shadow: 0 10px 25px rgba(15,23,42,0.08);">
      <h2 style="margin-top: 0; font-size: 20px; color: #0f172a;">{escape(subject)}</h2>
      <p style="font-size: 14px; color: #1e293b; line-height: 1.5;">{escape(intro)}</p>{button}
    </div>
  </body>
</html>
"""
    return subject, text_body, html_body


def send_sms(phone: str, body: str, timeout: float = 10.0):
    if not SMS_GATEWAY_URL:
        logger.info("sms (stub) to=%s chars=%d", phone, len(body))
        return
    resp = requests.post(SMS_GATEWAY_URL, json={"to": phone, "body": body}, timeout=timeout)
    resp.raise_for_status()


def deliver_notification(recipient: dict, event: str, context: dict):
    if not recipient.get("email"):
        logger.warning("notification %s skipped: recipient has no email", event)
        return
    subject, text_body, html_body = build_message(event, context)
    send_email(
        recipient["email"],
        subject,
        text_body,
        html_body=html_body,
        sender_name=format_sender_name(context.get("requester_name")),
    )


def _otp_senders() -> Dict[str, Callable]:
    return {
        "email": lambda contact, text: send_email(contact["email"], "Your verification code", text),
        "sms": lambda contact, text: send_sms(contact["phone"], text),
    }


def deliver_otp(channel: str, contact: dict, code: str, expiry_minutes: int, senders: Optional[Dict[str, Callable]] = None) -> List[str]:
    """Send ``code`` over ``channel`` (email|sms|both).

    With ``both`` every channel is attempted even if an earlier one fails; the
    call only fails when no channel delivered. Returns the channels used.
    """
    senders = senders or _otp_senders()
    wanted = ["email", "sms"] if channel == "both" else [channel]
    text = f"Your verification code is {code}. It expires in {expiry_minutes} minutes."
    delivered, failures = [], []
    for name in wanted:
        address = contact.get("phone") if name == "sms" else contact.get("email")
        if not address or name not in senders:
            failures.append(f"{name}: no address")
            continue
        try:
            senders[name](contact, text)
            delivered.append(name)
        except Exception as exc:
            logger.warning("otp delivery over %s failed: %s", name, exc)
            failures.append(f"{name}: {exc}")
    if not delivered:
        raise DependencyFailed("Verification code could not be delivered", code="OTP_DELIVERY_FAILED")
    return delivered
