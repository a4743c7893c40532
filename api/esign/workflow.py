"""Document and recipient state machine.

Functions here take the request session, mutate state, commit, and hand back
an ``Outbox`` of side effects (notifications, audit entries, webhooks and PDF
finalization) for the caller to flush once the commit has landed. Creation is
the exception: ``initiate`` only flushes, so the idempotency layer can commit
the documents and the stored response together.
"""
import copy
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import date, timedelta
from html import escape
from typing import Iterable, List, Optional

from sqlalchemy import delete, update
from sqlmodel import Session, select

from . import otp, routing, tokens
from .config import Settings
from .errors import Conflict, InvariantViolation, NotFound, ValidationFailed, signer_error
from .models import (
    Document, OtpRecord, Recipient, SigningGroup, Template,
    OPEN_RECIPIENT_STATUSES, DONE_RECIPIENT_STATUSES,
)
from .notifications import deliver_otp
from .utils import b64png_to_bytes, expiry_from, merge_placeholders, utcnow

logger = logging.getLogger(__name__)

TOPOLOGIES = ("single", "parallel", "sequential", "broadcast")
OPEN_DOCUMENT_STATUSES = ("distributed", "opened", "partially_signed")
CANCELLABLE_STATUSES = ("new", "draft_preview", "distributed", "opened", "partially_signed", "signed", "error")
SWEEPABLE_STATUSES = ("new", "draft_preview", "distributed", "opened", "partially_signed")
DEFAULT_LINK_EXPIRY = {"value": 7, "unit": "days"}

_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_PHONE = re.compile(r"^\+?[0-9 ()\-]{7,20}$")


@dataclass
class Outbox:
    notices: list = field(default_factory=list)
    audits: list = field(default_factory=list)
    webhooks: list = field(default_factory=list)
    finalize: list = field(default_factory=list)

    def notify(self, contact: dict, event: str, context: dict):
        if contact.get("email"):
            self.notices.append((dict(contact), event, dict(context)))

    def audit(self, event_type: str, actor: str, resource: str, **metadata):
        self.audits.append((event_type, actor, resource, metadata))

    def flush(self, collab, settings: Settings):
        audits, notices, webhooks, finalize = self.audits, self.notices, self.webhooks, self.finalize
        self.audits, self.notices, self.webhooks, self.finalize = [], [], [], []
        for event_type, actor, resource, metadata in audits:
            collab.audit.record(event_type, actor, resource, metadata)
        for contact, event, context in notices:
            try:
                collab.notifier.notify(contact, event, context)
            except Exception:
                logger.exception("could not enqueue %s notification", event)
        for document_id in webhooks:
            try:
                collab.webhooks.enqueue(document_id)
            except Exception:
                logger.exception("could not enqueue webhook for document %s", document_id)
        for document_id in finalize:
            schedule_finalize(document_id, collab, settings)


def schedule_finalize(document_id: int, collab, settings: Settings):
    if collab.finalizer is not None:
        try:
            collab.finalizer.schedule(document_id)
        except Exception:
            logger.exception("could not enqueue finalization of document %s", document_id)
        return
    from .pipeline import finalize_document
    finalize_document(document_id, collab, settings)


# ---------- helpers ----------
def signing_url(settings: Settings, token: str) -> str:
    return f"{settings.public_base_url.rstrip('/')}/sign/{token}"


def notification_context(document: Document, settings: Settings, token: Optional[str] = None, **extra) -> dict:
    ctx = {
        "document_id": document.id,
        "title": (document.template_snapshot or {}).get("name"),
        "requester_name": (document.created_by or {}).get("requester_name"),
    }
    if token:
        ctx["signing_url"] = signing_url(settings, token)
    ctx.update(extra)
    return ctx


def _notification_config(document: Document) -> dict:
    return (document.template_snapshot or {}).get("notification_config") or {}


def wants_notification(document: Document, flag: str) -> bool:
    return _notification_config(document).get(flag, True)


def _cas_document(session: Session, document_id: int, from_statuses: Iterable[str], **values) -> bool:
    values.setdefault("updated_at", utcnow())
    result = session.exec(
        update(Document)
        .where(Document.id == document_id, Document.status.in_(tuple(from_statuses)))
        .values(**values)
    )
    return result.rowcount == 1


def list_recipients(session: Session, document_id: int) -> List[Recipient]:
    return session.exec(
        select(Recipient).where(Recipient.document_id == document_id).order_by(Recipient.signing_order, Recipient.id)
    ).all()


def merged_values(document: Document, recipients: List[Recipient]) -> dict:
    values = dict(document.payload or {})
    for r in recipients:
        if r.status == "signed":
            values.update(r.field_values or {})
    return values


def recipient_view(r: Recipient, links: Optional[list] = None) -> dict:
    view = {
        "recipient_id": r.id,
        "order": r.signing_order,
        "kind": r.kind,
        "email": r.email,
        "name": r.name,
        "status": r.status,
        "signed_at": r.signed_at.isoformat() if r.signed_at else None,
    }
    if r.kind == "group":
        view["group_id"] = r.group_id
        view["signed_by"] = r.group_member_email
    if r.delegation_chain:
        view["delegated_from"] = [link.get("email") for link in r.delegation_chain]
    if links is not None:
        view["links"] = links
    return view


def document_view(session: Session, document: Document) -> dict:
    return {
        "ok": True,
        "document_id": document.id,
        "template_id": document.template_id,
        "topology": (document.template_snapshot or {}).get("topology"),
        "status": document.status,
        "expires_at": document.expires_at.isoformat(),
        "grace_period_hours": document.grace_period_hours,
        "batch_id": document.batch_id,
        "sha256": document.pdf_hash,
        "error_reason": document.error_reason,
        "completed_at": document.completed_at.isoformat() if document.completed_at else None,
        "recipients": [recipient_view(r) for r in list_recipients(session, document.id)],
    }


def get_document_for(session: Session, document_id: int, caller) -> Document:
    document = session.get(Document, document_id)
    if not document or (caller.role == "client" and document.client_id != caller.client_id):
        raise NotFound("Document not found", code="DOCUMENT_NOT_FOUND")
    return document


def snapshot_template(template: Template) -> dict:
    return copy.deepcopy({
        "template_id": template.id,
        "version": template.version,
        "name": template.name,
        "html_content": template.html_content,
        "topology": template.topology,
        "fields": template.form_fields or [],
        "recipients": template.recipients or [],
        "mfa_config": template.mfa_config or {},
        "link_expiry": template.link_expiry or {},
        "preview_mode": template.preview_mode,
        "routing_rules": template.routing_rules or [],
        "notification_config": template.notification_config or {},
        "callback_url": template.callback_url,
    })


# ---------- validation ----------
def _type_problem(kind: str, value) -> Optional[str]:
    text = str(value).strip()
    if kind == "email" and not _EMAIL.match(text):
        return "must be an email address"
    if kind == "phone" and not _PHONE.match(text):
        return "must be a phone number"
    if kind == "number":
        try:
            float(text)
        except ValueError:
            return "must be a number"
    if kind == "date":
        try:
            date.fromisoformat(text[:10])
        except ValueError:
            return "must be an ISO date"
    return None


def validate_payload(fields: List[dict], values: dict, *, assigned_to: Iterable = (None,)) -> None:
    """Check required/typed values for the fields assigned to ``assigned_to``.

    Runs before any state change; raises ``ValidationFailed`` with a per-field map.
    """
    scope = set(assigned_to)
    problems = {}
    for definition in fields or []:
        if definition.get("type") == "signature" or definition.get("assigned_to") not in scope:
            continue
        key = definition.get("key")
        value = values.get(key)
        if value is None or (isinstance(value, str) and not value.strip()):
            if definition.get("required"):
                problems[key] = "is required"
            continue
        problem = _type_problem(definition.get("type", "text"), value)
        if problem:
            problems[key] = problem
    if problems:
        raise ValidationFailed("Payload failed validation", details={"fields": problems})


def _check_signature_image(image: str):
    if not image or not image.strip():
        raise ValidationFailed("A signature image is required", code="SIGNATURE_REQUIRED")
    try:
        decoded = b64png_to_bytes(image)
    except (ValueError, TypeError):
        raise ValidationFailed("Signature image is not valid base64", code="SIGNATURE_INVALID")
    if not decoded:
        raise ValidationFailed("A signature image is required", code="SIGNATURE_REQUIRED")


def resolve_recipients(session: Session, snapshot: dict, requested: List[dict]) -> List[dict]:
    source = requested or snapshot.get("recipients") or []
    if not source:
        raise ValidationFailed("At least one recipient is required", code="RECIPIENTS_REQUIRED")
    people = []
    for idx, raw in enumerate(source):
        kind = raw.get("kind") or "individual"
        person = {
            "order": raw.get("order") or idx + 1,
            "kind": kind,
            "group_id": raw.get("group_id"),
            "email": (raw.get("email") or "").strip() or None,
            "name": raw.get("name"),
            "phone": raw.get("phone"),
        }
        if person["order"] < 1:
            raise ValidationFailed(f"Recipient {idx + 1} has an invalid signing order")
        if kind == "group":
            group = session.get(SigningGroup, person["group_id"]) if person["group_id"] else None
            if not group or not group.is_active or not any(m.get("is_active", True) for m in group.members or []):
                raise ValidationFailed(f"Recipient {idx + 1} references an unknown or empty signing group")
            person["email"] = None
        elif kind == "individual":
            if not person["email"] or not _EMAIL.match(person["email"]):
                raise ValidationFailed(f"Recipient {idx + 1} needs a valid email")
        else:
            raise ValidationFailed(f"Recipient {idx + 1} has an unknown kind {kind!r}")
        people.append(person)
    if snapshot.get("topology") == "single" and len(people) != 1:
        raise ValidationFailed("A single-signer template takes exactly one recipient")
    return people


# ---------- token fan-out ----------
def _issue_links(session, document, recipient, settings, outbox, event: Optional[str], **context) -> list:
    tokens.revoke_recipient_tokens(session, recipient.id)
    links = []
    for contact, token in tokens.issue_recipient_tokens(session, document, recipient, settings):
        links.append({"email": contact["email"], "signing_url": signing_url(settings, token)})
        if event:
            outbox.notify(contact, event, notification_context(document, settings, token, **context))
    return links


def _activate(session, document, recipient, settings, outbox, event: Optional[str] = "recipient_activated") -> list:
    recipient.status = "active"
    session.add(recipient)
    return _issue_links(session, document, recipient, settings, outbox, event)


# ---------- creation ----------
def _create_document(session, snapshot, payload, people, *, caller, request, settings, outbox, expires_at, idempotency_key, batch_id=None) -> dict:
    link_expiry = snapshot.get("link_expiry") or {}
    document = Document(
        template_id=snapshot["template_id"],
        template_snapshot=snapshot,
        payload=dict(payload),
        expires_at=expires_at,
        grace_period_hours=link_expiry.get("grace_period_hours"),
        idempotency_key=idempotency_key,
        batch_id=batch_id,
        callback_url=request.get("callback_url") or snapshot.get("callback_url"),
        client_id=caller.client_id,
        created_by={"role": caller.role, "client_id": caller.client_id, "requester_name": request.get("requester_name")},
    )
    session.add(document)
    session.flush()

    first_order = min(p["order"] for p in people)
    sequential = snapshot.get("topology") == "sequential"
    recipients = []
    for person in people:
        recipient = Recipient(
            document_id=document.id,
            signing_order=person["order"],
            kind=person["kind"],
            group_id=person["group_id"],
            email=person["email"],
            name=person["name"],
            phone=person["phone"],
            status="pending" if sequential and person["order"] != first_order else "active",
        )
        session.add(recipient)
        recipients.append(recipient)
    session.flush()

    preview = bool(snapshot.get("preview_mode"))
    document.status = "draft_preview" if preview else "distributed"
    session.add(document)
    event = "signing_requested" if wants_notification(document, "send_on_create") else None
    views = []
    for recipient in recipients:
        links = []
        if not preview:
            # pending signers hold a link too; it validates once their turn comes
            links = _issue_links(session, document, recipient, settings, outbox, event if recipient.status == "active" else None)
        views.append(recipient_view(recipient, links))
    session.flush()
    outbox.audit(
        "document_created", caller.actor, f"document:{document.id}",
        template_id=document.template_id, topology=snapshot.get("topology"), preview=preview,
    )
    return {
        "document_id": document.id,
        "status": document.status,
        "expires_at": document.expires_at.isoformat(),
        "recipients": views,
    }


def initiate(session: Session, request: dict, caller, settings: Settings):
    """Create the document(s) for an initiate request. Flushes but does not commit."""
    template = session.get(Template, request["template_id"])
    if not template or template.is_deleted:
        raise NotFound("Template not found", code="TEMPLATE_NOT_FOUND")
    if template.status != "active":
        raise ValidationFailed("Template is not active", code="TEMPLATE_INACTIVE")
    if template.topology not in TOPOLOGIES:
        raise ValidationFailed(f"Template has an unknown topology {template.topology!r}")

    snapshot = snapshot_template(template)
    payload = dict(request.get("payload") or {})
    validate_payload(snapshot["fields"], payload)
    people = resolve_recipients(session, snapshot, request.get("recipients") or [])

    now = utcnow()
    if request.get("expires_in_hours"):
        expires_at = now + timedelta(hours=float(request["expires_in_hours"]))
    else:
        link_expiry = {**DEFAULT_LINK_EXPIRY, **(snapshot.get("link_expiry") or {})}
        try:
            expires_at = expiry_from(float(link_expiry["value"]), link_expiry["unit"], now)
        except ValueError as exc:
            raise ValidationFailed(str(exc))
    if expires_at <= now:
        raise ValidationFailed("Expiry must be in the future")

    key = request.get("idempotency_key")
    base_key = f"{caller.scope}:{key}" if key else None
    outbox = Outbox()
    common = dict(caller=caller, request=request, settings=settings, outbox=outbox, expires_at=expires_at)

    if snapshot["topology"] == "broadcast":
        batch_id = uuid.uuid4().hex
        instances = []
        for idx, person in enumerate(people):
            instances.append(_create_document(
                session, snapshot, payload, [dict(person, order=1)],
                idempotency_key=f"{base_key}#{idx}" if base_key else None, batch_id=batch_id, **common,
            ))
        body = dict(instances[0], ok=True, topology="broadcast", batch_id=batch_id, documents=instances)
    else:
        body = dict(_create_document(session, snapshot, payload, people, idempotency_key=base_key, **common),
                    ok=True, topology=snapshot["topology"])
    logger.info("initiated %s document(s) from template %s", len(body.get("documents") or [body]), template.id)
    return body, outbox


# ---------- signer journey ----------
def _grace_warning(document: Document) -> str:
    grace_end = document.expires_at + timedelta(hours=document.grace_period_hours or 0)
    return (
        f"This link expired on {document.expires_at:%Y-%m-%d %H:%M} UTC. "
        f"You can still sign until {grace_end:%Y-%m-%d %H:%M} UTC."
    )


def _fields_for(document: Document, order: int) -> List[dict]:
    return [f for f in (document.template_snapshot or {}).get("fields") or [] if f.get("assigned_to") == order]


def _mfa_pending(document: Document, claims) -> bool:
    """True while this link's signer still owes an OTP check."""
    if not ((document.template_snapshot or {}).get("mfa_config") or {}).get("enabled"):
        return False
    recipient = claims.recipient
    if claims.member_email is not None:
        return claims.member_email not in (recipient.mfa_verified_members or [])
    return not recipient.mfa_verified


def open_document(session: Session, token: str, settings: Settings):
    claims = tokens.validate_token(session, token, settings)
    document, recipient = claims.document, claims.recipient
    if recipient.status == "active":
        session.exec(
            update(Recipient).where(Recipient.id == recipient.id, Recipient.status == "active").values(status="opened")
        )
    _cas_document(session, document.id, ("distributed",), status="opened")
    session.commit()

    recipients = list_recipients(session, document.id)
    values = {k: escape(str(v)) for k, v in merged_values(document, recipients).items() if v is not None}
    outbox = Outbox()
    outbox.audit("document_opened", f"signer:{claims.signer_email}", f"document:{document.id}", recipient_id=recipient.id)
    view = {
        "ok": True,
        "document_id": document.id,
        "recipient_id": recipient.id,
        "status": document.status,
        "recipient_status": recipient.status,
        "signer_email": claims.signer_email,
        "order": recipient.signing_order,
        "html": merge_placeholders(document.template_snapshot.get("html_content"), values),
        "fields": _fields_for(document, recipient.signing_order),
        "mfa_required": _mfa_pending(document, claims),
        "expires_at": document.expires_at.isoformat(),
        "grace_warning": _grace_warning(document) if claims.in_grace else None,
    }
    return view, outbox


def send_otp(session: Session, token: str, settings: Settings, senders=None):
    claims = tokens.validate_token(session, token, settings)
    document, recipient = claims.document, claims.recipient
    mfa = (document.template_snapshot or {}).get("mfa_config") or {}
    if not mfa.get("enabled"):
        raise ValidationFailed("Verification is not enabled for this document", code="MFA_NOT_ENABLED")
    expiry_minutes = int(mfa.get("otp_expiry_min") or settings.otp_default_expiry_minutes)
    code, expires_at = otp.issue_otp(session, document.id, recipient.id, settings, expiry_minutes=expiry_minutes)
    phone = recipient.phone
    if claims.member_email:
        phone = next((m.get("phone") for m in tokens.group_members(session, recipient) if m["email"] == claims.member_email), None)
    channels = deliver_otp(
        mfa.get("channel") or "email",
        {"email": claims.signer_email, "phone": phone},
        code,
        expiry_minutes,
        senders=senders,
    )
    outbox = Outbox()
    outbox.audit("otp_sent", "system", f"document:{document.id}", recipient_id=recipient.id, channels=channels)
    return {"ok": True, "channels": channels, "expires_at": expires_at.isoformat()}, outbox


def verify_otp(session: Session, token: str, code: str, settings: Settings):
    claims = tokens.validate_token(session, token, settings)
    document_id, recipient_id = claims.document.id, claims.recipient.id
    actor = f"signer:{claims.signer_email}"
    otp.verify_otp(session, document_id, recipient_id, code, settings)
    recipient = session.get(Recipient, recipient_id)
    if claims.member_email is not None:
        verified = set(recipient.mfa_verified_members or [])
        verified.add(claims.member_email)
        recipient.mfa_verified_members = sorted(verified)
    else:
        recipient.mfa_verified = True
    session.add(recipient)
    new_token = tokens.rotate_claims(session, claims, settings)
    session.commit()
    outbox = Outbox()
    outbox.audit(
        "otp_verified", actor, f"document:{document_id}", recipient_id=recipient_id, member=claims.member_email,
    )
    return {"ok": True, "token": new_token, "signing_url": signing_url(settings, new_token)}, outbox


def submit(session: Session, token: str, signature_image: str, field_values: dict, settings: Settings):
    claims = tokens.validate_token(session, token, settings)
    document, recipient = claims.document, claims.recipient
    snapshot = document.template_snapshot or {}
    if _mfa_pending(document, claims):
        raise signer_error("MFA_REQUIRED", status_code=403)
    _check_signature_image(signature_image)

    field_values = dict(field_values or {})
    order = recipient.signing_order
    assigned = {f.get("key") for f in _fields_for(document, order) if f.get("type") != "signature"}
    unknown = sorted(set(field_values) - assigned)
    if unknown:
        raise ValidationFailed("Fields are not assigned to this signer", code="FIELDS_NOT_ASSIGNED", details={"fields": unknown})
    values = merged_values(document, list_recipients(session, document.id))
    values.update(field_values)
    validate_payload(snapshot.get("fields"), values, assigned_to=(order,))

    document_id, recipient_id = document.id, recipient.id
    # claim the slot: only one of several concurrent submissions can move it out of active/opened
    claimed = session.exec(
        update(Recipient)
        .where(Recipient.id == recipient_id, Recipient.status.in_(tuple(OPEN_RECIPIENT_STATUSES)))
        .values(
            status="signed",
            signed_at=utcnow(),
            signature_image=signature_image,
            field_values=field_values,
            group_member_email=claims.member_email,
        )
    ).rowcount == 1
    if claimed and not _cas_document(session, document_id, OPEN_DOCUMENT_STATUSES):
        claimed = False
    if not claimed:
        session.rollback()
        current = session.get(Recipient, recipient_id)
        if current.status == "signed":
            raise signer_error("ALREADY_SIGNED", status_code=409)
        raise signer_error("DOCUMENT_CLOSED", status_code=409)
    tokens.revoke_recipient_tokens(session, recipient_id)
    session.commit()
    logger.info("recipient %s signed document %s", recipient_id, document_id)

    outbox = Outbox()
    outbox.audit(
        "recipient_signed", f"signer:{claims.signer_email}", f"document:{document_id}",
        recipient_id=recipient_id, order=order, grace=claims.in_grace,
    )
    status = progress(session, document_id, order, settings, outbox)
    return {"ok": True, "document_id": document_id, "status": status}, outbox


def _apply_action(session, document, recipients, action: dict, settings, outbox):
    kind = action.get("type")
    target = action.get("target_order")
    if kind == "activate_signer":
        for r in recipients:
            if r.signing_order == target and r.status in ("pending", "skipped"):
                _activate(session, document, r, settings, outbox)
    elif kind == "skip_signer":
        for r in recipients:
            if r.signing_order == target and r.status in ("pending", "active", "opened"):
                r.status = "skipped"
                session.add(r)
                tokens.revoke_recipient_tokens(session, r.id)
    elif kind == "add_signer":
        email = (action.get("email") or "").strip()
        if any(r.email == email and r.status not in ("skipped", "rejected") for r in recipients):
            return
        added = Recipient(
            document_id=document.id,
            signing_order=max(r.signing_order for r in recipients) + 1,
            email=email,
            name=action.get("name"),
        )
        session.add(added)
        session.flush()
        _activate(session, document, added, settings, outbox, event="signing_requested")
    elif kind == "complete":
        for r in recipients:
            if r.status in ("pending", "active", "opened"):
                r.status = "skipped"
                session.add(r)
                tokens.revoke_recipient_tokens(session, r.id)
    else:
        logger.warning("document %s: ignoring unknown routing action %r", document.id, kind)
        return
    outbox.audit("routing_action", "system", f"document:{document.id}", action=kind, target_order=target)


def progress(session: Session, document_id: int, signer_order: int, settings: Settings, outbox: Outbox) -> str:
    """Apply routing, sequential advancement and completion after a signature."""
    document = session.get(Document, document_id)
    if document.status not in OPEN_DOCUMENT_STATUSES:
        return document.status
    snapshot = document.template_snapshot or {}
    recipients = list_recipients(session, document_id)
    if not recipients:
        session.rollback()
        raise InvariantViolation(f"document {document_id} has no recipients")

    for action in routing.matching_actions(snapshot.get("routing_rules"), signer_order, merged_values(document, recipients)):
        _apply_action(session, document, recipients, action, settings, outbox)
        session.flush()
        recipients = list_recipients(session, document_id)

    if snapshot.get("topology") == "sequential" and not any(r.status in OPEN_RECIPIENT_STATUSES for r in recipients):
        pending = [r for r in recipients if r.status == "pending"]
        if pending:
            next_order = min(r.signing_order for r in pending)
            for r in pending:
                if r.signing_order == next_order:
                    _activate(session, document, r, settings, outbox)
            logger.info("document %s advanced to order %s", document_id, next_order)

    statuses = [r.status for r in recipients]
    if all(s in DONE_RECIPIENT_STATUSES for s in statuses) and "signed" in statuses:
        if _cas_document(session, document_id, OPEN_DOCUMENT_STATUSES, status="signed"):
            outbox.audit("document_signed", "system", f"document:{document_id}")
            outbox.finalize.append(document_id)
    elif "signed" in statuses:
        _cas_document(session, document_id, ("distributed", "opened"), status="partially_signed")
    session.commit()
    return session.get(Document, document_id).status


def decline(session: Session, token: str, reason: Optional[str], settings: Settings):
    claims = tokens.validate_token(session, token, settings)
    document, recipient = claims.document, claims.recipient
    if not _cas_document(session, document.id, OPEN_DOCUMENT_STATUSES, status="rejected"):
        session.rollback()
        raise signer_error("DOCUMENT_CLOSED", status_code=409)
    recipient.status = "rejected"
    recipient.decline_reason = reason
    recipient.group_member_email = claims.member_email
    session.add(recipient)
    tokens.revoke_document_tokens(session, document.id)
    session.commit()
    logger.info("document %s rejected by recipient %s", document.id, recipient.id)

    outbox = Outbox()
    if wants_notification(document, "send_on_reject"):
        for r in list_recipients(session, document.id):
            if r.id != recipient.id:
                outbox.notify({"email": r.email, "name": r.name}, "document_rejected", notification_context(document, settings))
    outbox.audit("document_rejected", f"signer:{claims.signer_email}", f"document:{document.id}", recipient_id=recipient.id, reason=reason)
    return {"ok": True, "document_id": document.id, "status": "rejected"}, outbox


def delegate(session: Session, token: str, email: str, name: Optional[str], reason: Optional[str], settings: Settings):
    claims = tokens.validate_token(session, token, settings)
    document, recipient = claims.document, claims.recipient
    if recipient.kind == "group":
        raise ValidationFailed("Signing-group slots cannot be delegated", code="DELEGATION_NOT_ALLOWED")
    email = (email or "").strip()
    if not _EMAIL.match(email):
        raise ValidationFailed("Delegate needs a valid email")
    if email.lower() == (recipient.email or "").lower():
        raise ValidationFailed("Cannot delegate to the current signer")

    previous = recipient.email
    recipient.delegation_chain = list(recipient.delegation_chain or []) + [{
        "email": previous,
        "name": recipient.name,
        "reason": reason,
        "delegated_at": utcnow().isoformat(),
    }]
    recipient.email = email
    recipient.name = name
    recipient.phone = None
    recipient.mfa_verified = False
    recipient.status = "active"
    session.add(recipient)
    session.exec(delete(OtpRecord).where(OtpRecord.document_id == document.id, OtpRecord.recipient_id == recipient.id))
    new_token = tokens.rotate_token(session, document, recipient, settings)
    session.commit()

    outbox = Outbox()
    outbox.notify({"email": email, "name": name}, "signing_delegated", notification_context(document, settings, new_token, delegated_by=previous))
    outbox.audit("recipient_delegated", f"signer:{previous}", f"document:{document.id}", recipient_id=recipient.id, delegate=email)
    return {"ok": True, "document_id": document.id, "recipient_id": recipient.id, "delegate_email": email}, outbox


# ---------- sender / admin actions ----------
def resend(session: Session, document_id: int, recipient_id: int, caller, settings: Settings):
    document = get_document_for(session, document_id, caller)
    if document.status not in OPEN_DOCUMENT_STATUSES:
        raise Conflict("Document is not awaiting signatures", code="DOCUMENT_NOT_OPEN")
    recipient = session.get(Recipient, recipient_id)
    if not recipient or recipient.document_id != document.id:
        raise NotFound("Recipient not found", code="RECIPIENT_NOT_FOUND")
    if recipient.status not in OPEN_RECIPIENT_STATUSES:
        raise Conflict("Recipient is not awaiting a signature", code="RECIPIENT_NOT_ACTIVE")
    outbox = Outbox()
    links = _issue_links(session, document, recipient, settings, outbox, "signing_requested")
    session.commit()
    outbox.audit("recipient_resent", caller.actor, f"document:{document.id}", recipient_id=recipient.id)
    return {"ok": True, "recipient": recipient_view(recipient, links)}, outbox


def approve_preview(session: Session, document_id: int, caller, settings: Settings):
    document = get_document_for(session, document_id, caller)
    if not _cas_document(session, document.id, ("draft_preview",), status="distributed"):
        raise Conflict("Document is not awaiting preview approval", code="NOT_IN_PREVIEW")
    outbox = Outbox()
    event = "signing_requested" if wants_notification(document, "send_on_create") else None
    views = []
    for r in list_recipients(session, document.id):
        links = _issue_links(session, document, r, settings, outbox, event if r.status == "active" else None)
        views.append(recipient_view(r, links))
    session.commit()
    outbox.audit("preview_approved", caller.actor, f"document:{document.id}")
    return {"ok": True, "document_id": document.id, "status": "distributed", "recipients": views}, outbox


def reject_preview(session: Session, document_id: int, caller, settings: Settings):
    document = get_document_for(session, document_id, caller)
    if not _cas_document(session, document.id, ("draft_preview",), status="cancelled"):
        raise Conflict("Document is not awaiting preview approval", code="NOT_IN_PREVIEW")
    tokens.revoke_document_tokens(session, document.id)
    session.commit()
    outbox = Outbox()
    outbox.audit("preview_rejected", caller.actor, f"document:{document.id}")
    return {"ok": True, "document_id": document.id, "status": "cancelled"}, outbox


def cancel(session: Session, document_id: int, caller, settings: Settings, reason: Optional[str] = None):
    document = get_document_for(session, document_id, caller)
    if not _cas_document(session, document.id, CANCELLABLE_STATUSES, status="cancelled"):
        raise Conflict("Document can no longer be cancelled", code="DOCUMENT_CLOSED")
    tokens.revoke_document_tokens(session, document.id)
    session.commit()
    logger.info("document %s cancelled by %s", document.id, caller.actor)
    outbox = Outbox()
    for r in list_recipients(session, document.id):
        if r.status in OPEN_RECIPIENT_STATUSES:
            outbox.notify({"email": r.email, "name": r.name}, "document_cancelled", notification_context(document, settings))
    outbox.audit("document_cancelled", caller.actor, f"document:{document.id}", reason=reason)
    return {"ok": True, "document_id": document.id, "status": "cancelled"}, outbox


def retry(session: Session, document_id: int, caller, settings: Settings):
    document = get_document_for(session, document_id, caller)
    if document.status != "error":
        raise Conflict("Only documents in error can be retried", code="NOT_IN_ERROR")
    outbox = Outbox()
    outbox.audit("pdf_retry_requested", caller.actor, f"document:{document.id}", previous_error=document.error_reason)
    outbox.finalize.append(document.id)
    return {"ok": True, "document_id": document.id}, outbox


def sweep_expired(session: Session, settings: Settings, now=None):
    """Expire open documents past ``expires_at`` plus their grace period."""
    now = now or utcnow()
    outbox = Outbox()
    expired = in_grace = 0
    candidates = session.exec(
        select(Document).where(Document.status.in_(SWEEPABLE_STATUSES), Document.expires_at < now)
    ).all()
    for document in candidates:
        grace_end = document.expires_at + timedelta(hours=document.grace_period_hours or 0)
        if now <= grace_end:
            in_grace += 1
            continue
        if not _cas_document(session, document.id, SWEEPABLE_STATUSES, status="expired"):
            continue
        tokens.revoke_document_tokens(session, document.id)
        waiting = [r for r in list_recipients(session, document.id) if r.status in ("pending", "active", "opened")]
        for r in waiting:
            r.status = "expired"
            session.add(r)
            if wants_notification(document, "send_on_expire"):
                outbox.notify({"email": r.email, "name": r.name}, "document_expired", notification_context(document, settings))
        outbox.audit("document_expired", "system", f"document:{document.id}")
        expired += 1
    session.commit()
    if expired:
        logger.info("expired %d document(s); %d still in grace", expired, in_grace)
    return {"expired": expired, "in_grace": in_grace}, outbox


def send_reminders(session: Session, settings: Settings, now=None):
    """Nudge waiting signers as an open document approaches ``expires_at``.

    Every ``reminder_intervals`` entry fires once, on the first run after the
    document comes within that many hours of expiry. Intervals crossed together
    produce a single reminder. Each reminder carries a freshly rotated link.
    """
    now = now or utcnow()
    outbox = Outbox()
    reminded = 0
    candidates = session.exec(
        select(Document).where(Document.status.in_(OPEN_DOCUMENT_STATUSES), Document.expires_at > now)
    ).all()
    for document in candidates:
        intervals = [float(i["hours_before_expiry"]) for i in _notification_config(document).get("reminder_intervals") or []]
        hours_left = (document.expires_at - now).total_seconds() / 3600
        sent = set(document.reminders_sent or [])
        due = sorted(h for h in intervals if h not in sent and hours_left <= h)
        if not due:
            continue
        waiting = [r for r in list_recipients(session, document.id) if r.status in OPEN_RECIPIENT_STATUSES]
        for r in waiting:
            _issue_links(
                session, document, r, settings, outbox, "signing_reminder",
                hours_remaining=max(1, int(hours_left)), expires_at=document.expires_at.isoformat() + "Z",
            )
        document.reminders_sent = sorted(sent.union(due))
        session.add(document)
        session.commit()
        outbox.audit(
            "reminder_sent", "system", f"document:{document.id}",
            hours_before_expiry=due, recipients=[r.id for r in waiting],
        )
        reminded += len(waiting)
    if reminded:
        logger.info("sent expiry reminders to %d recipient(s)", reminded)
    return {"reminded": reminded}, outbox
