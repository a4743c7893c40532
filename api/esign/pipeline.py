"""Final PDF production for fully signed documents.

``finalize_document`` runs under the document lock and is safe to call from
any number of API instances or workers at once: whoever wins the lock renders,
everyone else either gives up after the bounded retries or finds the document
already completed. The lock is always released, and it expires on its own if
the holder dies.
"""
import logging
from datetime import timedelta
from html import escape
from typing import List

from pypdf.errors import PyPdfError
from sqlalchemy import update
from sqlmodel import Session, select

from . import db
from .config import Settings
from .errors import RenderError, StorageError
from .locks import LockUnavailable, document_lock_key
from .models import Document, Recipient
from .stamping import append_certificate
from .utils import merge_placeholders, sha256_bytes, utcnow
from .workflow import (
    Outbox, list_recipients, merged_values, notification_context, schedule_finalize, wants_notification,
)

logger = logging.getLogger(__name__)

FINALIZABLE_STATUSES = ("signed", "error")
DEFAULT_SIGNATURE_BOX = {"page": 1, "x": 72, "w": 180, "h": 60}


class PipelineFailure(Exception):
    pass


def _signature_images(document: Document, recipients: List[Recipient]) -> List[str]:
    fields = (document.template_snapshot or {}).get("fields") or []
    tags = []
    stacked = 0
    for r in recipients:
        if r.status != "signed" or not r.signature_image:
            continue
        boxes = [f for f in fields if f.get("type") == "signature" and f.get("assigned_to") == r.signing_order]
        if not boxes:
            boxes = [dict(DEFAULT_SIGNATURE_BOX, y=72 + stacked * 70)]
            stacked += 1
        for box in boxes:
            tags.append(
                f'<img data-page="{int(box.get("page", 1))}" data-x="{box.get("x", 0)}" data-y="{box.get("y", 0)}" '
                f'data-w="{box.get("w", 180)}" data-h="{box.get("h", 60)}" src="{escape(r.signature_image)}" />'
            )
    return tags


def _audit_footer(document: Document, recipients: List[Recipient]) -> str:
    lines = [f"Document {document.id} | template {document.template_id}"]
    for r in recipients:
        if r.status == "signed":
            who = r.group_member_email or r.email
            lines.append(f"Signed by {escape(who or '')} (order {r.signing_order}) at {r.signed_at:%Y-%m-%d %H:%M:%S} UTC")
    return "<footer>" + "".join(f"<p>{line}</p>" for line in lines) + "</footer>"


def build_final_html(document: Document, recipients: List[Recipient]) -> str:
    values = {k: escape(str(v)) for k, v in merged_values(document, recipients).items() if v is not None}
    body = merge_placeholders((document.template_snapshot or {}).get("html_content"), values)
    return body + "".join(_signature_images(document, recipients)) + _audit_footer(document, recipients)


def certificate_info(document: Document, recipients: List[Recipient], sha_original: str) -> dict:
    signers = []
    for r in recipients:
        if r.status == "signed":
            entry = f"{r.group_member_email or r.email} (order {r.signing_order}) signed {r.signed_at:%Y-%m-%d %H:%M:%S} UTC"
            if r.delegation_chain:
                entry += " on behalf of " + ", ".join(link.get("email") or "?" for link in r.delegation_chain)
            signers.append(entry)
    return {
        "document_id": document.id,
        "template": (document.template_snapshot or {}).get("name"),
        "sha256_original": sha_original,
        "sealed_at": utcnow().isoformat() + "Z",
        "signers": signers,
    }


def render_with_retries(renderer, html: str, settings: Settings) -> bytes:
    attempts = max(1, settings.render_max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            return renderer.render(html, settings.render_timeout_seconds)
        except RenderError as exc:
            if not exc.retryable:
                raise PipelineFailure(f"render rejected: {exc}") from exc
            logger.warning("render attempt %d/%d failed: %s", attempt, attempts, exc)
    raise PipelineFailure(f"render failed after {attempts} attempts")


def upload_with_backoff(storage, data: bytes, path: str, settings: Settings, sleep) -> str:
    delays = list(settings.upload_backoff_seconds)
    attempts = len(delays) + 1
    for attempt in range(1, attempts + 1):
        try:
            return storage.upload(data, path, "application/pdf")
        except StorageError as exc:
            logger.warning("upload of %s failed (attempt %d/%d): %s", path, attempt, attempts, exc)
            if attempt < attempts:
                sleep(delays[attempt - 1])
    raise PipelineFailure(f"upload failed after {attempts} attempts")


def _mark_error(document_id: int, reason: str):
    with db.new_session() as session:
        session.exec(
            update(Document)
            .where(Document.id == document_id, Document.status.in_(FINALIZABLE_STATUSES))
            .values(status="error", error_reason=reason[:500], updated_at=utcnow())
        )
        session.commit()


def _finalize_locked(session: Session, document_id: int, collab, settings: Settings, outbox: Outbox) -> str:
    document = session.get(Document, document_id)
    if not document or document.status not in FINALIZABLE_STATUSES:
        logger.info("document %s is %s; nothing to finalize", document_id, document.status if document else "missing")
        return "skipped"
    recipients = list_recipients(session, document_id)
    html = build_final_html(document, recipients)

    rendered = render_with_retries(collab.renderer, html, settings)
    session.refresh(document)
    if document.status not in FINALIZABLE_STATUSES:
        logger.info("document %s became %s during render; discarding output", document_id, document.status)
        outbox.audit("pdf_discarded", "system", f"document:{document_id}", status=document.status)
        return "discarded"

    try:
        final_pdf = append_certificate(rendered, certificate_info(document, recipients, sha256_bytes(rendered)))
    except (PyPdfError, ValueError) as exc:
        # a gateway error page or truncated body; rendering again will not fix it
        raise PipelineFailure(f"renderer returned an unreadable PDF: {type(exc).__name__}: {exc}") from exc
    digest = sha256_bytes(final_pdf)
    path = f"documents/{document_id}/final.pdf"
    upload_with_backoff(collab.storage, final_pdf, path, settings, collab.sleep)

    completed = session.exec(
        update(Document)
        .where(Document.id == document_id, Document.status.in_(FINALIZABLE_STATUSES))
        .values(status="completed", pdf_hash=digest, pdf_key=path, error_reason=None,
                completed_at=utcnow(), updated_at=utcnow())
    ).rowcount == 1
    session.commit()
    if not completed:
        outbox.audit("pdf_discarded", "system", f"document:{document_id}")
        return "discarded"

    document = session.get(Document, document_id)
    logger.info("document %s completed sha256=%s", document_id, digest)
    outbox.audit("document_completed", "system", f"document:{document_id}", sha256=digest, key=path)
    if wants_notification(document, "send_on_complete"):
        context = notification_context(document, settings, sha256_final=digest)
        for r in recipients:
            outbox.notify({"email": r.group_member_email or r.email, "name": r.name}, "document_completed", context)
        for cc in (document.template_snapshot.get("notification_config") or {}).get("cc_emails") or []:
            outbox.notify({"email": cc}, "document_completed", context)
    if document.callback_url:
        document.callback_status = "pending"
        session.add(document)
        session.commit()
        outbox.webhooks.append(document_id)
    return "completed"


def _finalize_guarded(document_id: int, collab, settings: Settings, outbox: Outbox) -> str:
    try:
        with db.new_session() as session:
            return _finalize_locked(session, document_id, collab, settings, outbox)
    except PipelineFailure as exc:
        logger.error("finalization of document %s failed: %s", document_id, exc)
        reason = str(exc)
    except Exception as exc:
        # leave the document in error so retry() can pick it up
        logger.exception("finalization of document %s crashed", document_id)
        reason = f"unexpected {type(exc).__name__}: {exc}"
    _mark_error(document_id, reason)
    outbox.audit("pdf_failed", "system", f"document:{document_id}", reason=reason)
    return "error"


def finalize_document(document_id: int, collab, settings: Settings) -> str:
    """Render, seal and store the final PDF exactly once.

    Returns ``completed``, ``skipped`` (not eligible or already done),
    ``discarded`` (cancelled mid-render), ``busy`` (lock not obtained) or
    ``error``. The lock lease is renewed for as long as the pipeline runs.
    """
    outbox = Outbox()
    try:
        with collab.locks.hold(document_lock_key(document_id)):
            outcome = _finalize_guarded(document_id, collab, settings, outbox)
    except LockUnavailable:
        logger.info("document %s is being finalized elsewhere", document_id)
        return "busy"
    outbox.flush(collab, settings)
    return outcome


def resume_stalled(collab, settings: Settings, now=None, limit: int = 20) -> List[int]:
    """Reschedule documents left in ``signed`` without a PDF.

    Covers a lost queue message, a ``busy`` outcome whose lock holder then died,
    and a worker crash mid-render. Only documents idle for
    ``stalled_finalize_after_seconds`` are picked up; the document lock keeps a
    rescheduled run from overlapping one still in flight.
    """
    cutoff = (now or utcnow()) - timedelta(seconds=settings.stalled_finalize_after_seconds)
    with db.new_session() as session:
        stalled = session.exec(
            select(Document.id)
            .where(Document.status == "signed", Document.pdf_key.is_(None), Document.updated_at < cutoff)
            .order_by(Document.updated_at)
            .limit(limit)
        ).all()
    for document_id in stalled:
        logger.warning("document %s is signed but has no PDF; rescheduling finalization", document_id)
        schedule_finalize(document_id, collab, settings)
    return list(stalled)
