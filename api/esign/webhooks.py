"""Completion callbacks to API clients.

The body is canonical JSON carrying its own ``timestamp``; the HMAC-SHA256 of
the exact body bytes goes in ``X-Signature``. Receivers should recompute the
signature and refuse bodies whose timestamp is older than their tolerance
(``verify_webhook`` does both).
"""
import hmac
import json
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

import requests
from sqlmodel import Session, select

from .config import Settings
from .models import ApiClient, Document, Recipient
from .utils import canonical_json, hmac_sha256, utcnow

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Signature"
EVENT_HEADER = "X-Webhook-Event"


def sign_payload(body: str, secret: str) -> str:
    return hmac_sha256(secret, body)


def encode_payload(payload: dict, *, now: Optional[datetime] = None) -> str:
    stamped = dict(payload)
    stamped["timestamp"] = int((now or utcnow()).replace(tzinfo=timezone.utc).timestamp())
    return canonical_json(stamped)


def verify_webhook(body: str, signature: str, secret: str, tolerance_seconds: int, *, now: Optional[float] = None) -> bool:
    if not signature or not hmac.compare_digest(sign_payload(body, secret), signature):
        return False
    try:
        sent_at = int(json.loads(body)["timestamp"])
    except (ValueError, KeyError, TypeError):
        return False
    now = time.time() if now is None else now
    return abs(now - sent_at) <= tolerance_seconds


def build_completion_payload(session: Session, document: Document, download_url: Optional[str] = None) -> dict:
    recipients = session.exec(
        select(Recipient).where(Recipient.document_id == document.id).order_by(Recipient.signing_order)
    ).all()
    signers = [
        {
            "order": r.signing_order,
            "email": r.group_member_email or r.email,
            "status": r.status,
            "signed_at": r.signed_at.isoformat() if r.signed_at else None,
        }
        for r in recipients
    ]
    return {
        "event": f"document.{document.status}",
        "document_id": document.id,
        "data": {
            "status": document.status,
            "template_id": document.template_id,
            "batch_id": document.batch_id,
            "sha256": document.pdf_hash,
            "download_url": download_url,
            "completed_at": document.completed_at.isoformat() if document.completed_at else None,
            "signers": signers,
        },
    }


def webhook_secret_for(session: Session, document: Document, settings: Settings) -> str:
    if document.client_id:
        client = session.get(ApiClient, document.client_id)
        if client and client.webhook_secret:
            return client.webhook_secret
    return settings.secret_key


def post_webhook(
    url: str,
    payload: dict,
    secret: str,
    *,
    backoff: Iterable[float] = (2, 4, 8),
    http: Optional[requests.Session] = None,
    sleep: Callable[[float], None] = time.sleep,
    timeout: float = 30,
) -> bool:
    """POST ``payload`` with one initial try plus one retry per backoff step.

    Each attempt is re-stamped and re-signed so a late retry is not refused as
    stale by the receiver.
    """
    http = http or requests.Session()
    delays = list(backoff)
    for attempt in range(1, len(delays) + 2):
        body = encode_payload(payload)
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: sign_payload(body, secret),
            EVENT_HEADER: payload.get("event", "unknown"),
        }
        try:
            resp = http.post(url, data=body.encode(), headers=headers, timeout=timeout)
            if 200 <= resp.status_code < 300:
                logger.info("webhook to %s delivered on attempt %d", url, attempt)
                return True
            logger.warning("webhook to %s failed with HTTP %s (attempt %d)", url, resp.status_code, attempt)
        except requests.RequestException as exc:
            logger.warning("webhook to %s failed: %s (attempt %d)", url, exc, attempt)
        if attempt <= len(delays):
            sleep(delays[attempt - 1])
    return False


def send_completion_webhook(
    session: Session,
    document_id: int,
    storage,
    settings: Settings,
    *,
    http: Optional[requests.Session] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Optional[bool]:
    document = session.get(Document, document_id)
    if not document or not document.callback_url:
        return None
    download_url = None
    if document.pdf_key:
        download_url = storage.presign(document.pdf_key, settings.presign_ttl_seconds)
    payload = build_completion_payload(session, document, download_url)
    secret = webhook_secret_for(session, document, settings)
    delivered = post_webhook(
        document.callback_url, payload, secret,
        backoff=settings.webhook_backoff_seconds, http=http, sleep=sleep,
    )
    document.callback_status = "success" if delivered else "failed"
    session.add(document)
    session.commit()
    return delivered
