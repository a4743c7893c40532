import secrets
from typing import List

from fastapi import APIRouter, Depends
from sqlmodel import Session, select

from .. import pipeline, routing, workflow
from ..audit import verify_chain
from ..auth import CallerContext, require_admin_access
from ..config import Settings, get_settings
from ..db import get_session
from ..deps import Collaborators, get_collaborators
from ..errors import Conflict, NotFound, ValidationFailed
from ..models import ApiClient, Document, SigningGroup, Template, TERMINAL_DOCUMENT_STATUSES
from ..schemas import ApiClientCreate, SigningGroupCreate, TemplateCreate, TemplateUpdate
from ..utils import utcnow

router = APIRouter()

TIME_UNITS = ("hours", "days", "weeks")
MFA_CHANNELS = ("email", "sms", "both")


def _template_dict(t: Template) -> dict:
    return {
        "id": t.id,
        "name": t.name,
        "status": t.status,
        "topology": t.topology,
        "html_content": t.html_content,
        "fields": t.form_fields,
        "recipients": t.recipients,
        "mfa_config": t.mfa_config,
        "link_expiry": t.link_expiry,
        "preview_mode": t.preview_mode,
        "routing_rules": t.routing_rules,
        "notification_config": t.notification_config,
        "callback_url": t.callback_url,
        "version": t.version,
        "created_at": t.created_at.isoformat(),
        "updated_at": t.updated_at.isoformat(),
    }


def _check_template(t: Template):
    problems = []
    if t.topology not in workflow.TOPOLOGIES:
        problems.append(f"unknown topology {t.topology!r}")
    if t.topology == "single" and len(t.recipients or []) > 1:
        problems.append("a single-signer template takes one recipient slot")
    if (t.link_expiry or {}).get("unit", "days") not in TIME_UNITS:
        problems.append("link_expiry.unit must be hours, days or weeks")
    if (t.mfa_config or {}).get("channel", "email") not in MFA_CHANNELS:
        problems.append("mfa_config.channel must be email, sms or both")
    keys = [f.get("key") for f in t.form_fields or []]
    if len(keys) != len(set(keys)):
        problems.append("field keys must be unique")
    problems.extend(routing.validate_rules(t.routing_rules))
    if problems:
        raise ValidationFailed("Template is invalid", code="TEMPLATE_INVALID", details={"problems": problems})


def _get_template(session: Session, template_id: int) -> Template:
    template = session.get(Template, template_id)
    if not template or template.is_deleted:
        raise NotFound("Template not found", code="TEMPLATE_NOT_FOUND")
    return template


# ---------- templates ----------
@router.post("/templates", status_code=201)
def create_template(payload: TemplateCreate, session: Session = Depends(get_session), _: CallerContext = Depends(require_admin_access)):
    data = payload.model_dump()
    data["form_fields"] = data.pop("fields")
    template = Template(**data)
    _check_template(template)
    session.add(template)
    session.commit()
    session.refresh(template)
    return _template_dict(template)


@router.get("/templates")
def list_templates(session: Session = Depends(get_session), _: CallerContext = Depends(require_admin_access)) -> List[dict]:
    rows = session.exec(select(Template).where(Template.is_deleted == False).order_by(Template.id)).all()  # noqa: E712
    return [_template_dict(t) for t in rows]


@router.get("/templates/{template_id}")
def get_template(template_id: int, session: Session = Depends(get_session), _: CallerContext = Depends(require_admin_access)):
    return _template_dict(_get_template(session, template_id))


@router.patch("/templates/{template_id}")
def update_template(
    template_id: int,
    payload: TemplateUpdate,
    session: Session = Depends(get_session),
    _: CallerContext = Depends(require_admin_access),
):
    template = _get_template(session, template_id)
    changes = payload.model_dump(exclude_unset=True)
    if "fields" in changes:
        changes["form_fields"] = changes.pop("fields")
    for key, value in changes.items():
        setattr(template, key, value)
    _check_template(template)
    template.version += 1
    template.updated_at = utcnow()
    session.add(template)
    session.commit()
    session.refresh(template)
    return _template_dict(template)


@router.delete("/templates/{template_id}")
def delete_template(template_id: int, session: Session = Depends(get_session), _: CallerContext = Depends(require_admin_access)):
    template = _get_template(session, template_id)
    active = session.exec(
        select(Document.id).where(
            Document.template_id == template.id,
            Document.status.not_in(tuple(TERMINAL_DOCUMENT_STATUSES)),
        )
    ).all()
    if active:
        raise Conflict(
            "Template has documents that are still in progress",
            code="TEMPLATE_IN_USE",
            details={"document_ids": list(active)},
        )
    template.is_deleted = True
    template.updated_at = utcnow()
    session.add(template)
    session.commit()
    return {"ok": True}


# ---------- signing groups ----------
@router.post("/groups", status_code=201)
def create_group(payload: SigningGroupCreate, session: Session = Depends(get_session), _: CallerContext = Depends(require_admin_access)):
    if not payload.members:
        raise ValidationFailed("A signing group needs at least one member")
    group = SigningGroup(name=payload.name, members=[m.model_dump() for m in payload.members])
    session.add(group)
    session.commit()
    session.refresh(group)
    return {"id": group.id, "name": group.name, "members": group.members, "is_active": group.is_active}


@router.get("/groups")
def list_groups(session: Session = Depends(get_session), _: CallerContext = Depends(require_admin_access)):
    return [
        {"id": g.id, "name": g.name, "members": g.members, "is_active": g.is_active}
        for g in session.exec(select(SigningGroup).order_by(SigningGroup.id)).all()
    ]


@router.post("/groups/{group_id}/deactivate")
def deactivate_group(group_id: int, session: Session = Depends(get_session), _: CallerContext = Depends(require_admin_access)):
    group = session.get(SigningGroup, group_id)
    if not group:
        raise NotFound("Signing group not found")
    group.is_active = False
    session.add(group)
    session.commit()
    return {"ok": True}


# ---------- api clients ----------
@router.post("/clients", status_code=201)
def create_client(payload: ApiClientCreate, session: Session = Depends(get_session), _: CallerContext = Depends(require_admin_access)):
    client = ApiClient(
        name=payload.name,
        access_token=secrets.token_urlsafe(24),
        webhook_secret=secrets.token_hex(32),
    )
    session.add(client)
    session.commit()
    session.refresh(client)
    # the only time the credentials are returned
    return {"id": client.id, "name": client.name, "access_token": client.access_token, "webhook_secret": client.webhook_secret}


@router.post("/clients/{client_id}/deactivate")
def deactivate_client(client_id: int, session: Session = Depends(get_session), _: CallerContext = Depends(require_admin_access)):
    client = session.get(ApiClient, client_id)
    if not client:
        raise NotFound("API client not found")
    client.is_active = False
    session.add(client)
    session.commit()
    return {"ok": True}


# ---------- maintenance ----------
@router.post("/sweep")
def run_expiry_sweep(
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
    collab: Collaborators = Depends(get_collaborators),
    _: CallerContext = Depends(require_admin_access),
):
    counts, outbox = workflow.sweep_expired(session, settings)
    outbox.flush(collab, settings)
    return dict(counts, ok=True)


@router.post("/reminders")
def run_expiry_reminders(
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
    collab: Collaborators = Depends(get_collaborators),
    _: CallerContext = Depends(require_admin_access),
):
    counts, outbox = workflow.send_reminders(session, settings)
    outbox.flush(collab, settings)
    return dict(counts, ok=True)


@router.post("/finalizations/resume")
def resume_finalizations(
    settings: Settings = Depends(get_settings),
    collab: Collaborators = Depends(get_collaborators),
    _: CallerContext = Depends(require_admin_access),
):
    return {"ok": True, "rescheduled": pipeline.resume_stalled(collab, settings)}


@router.get("/audit/verify")
def verify_audit_chain(session: Session = Depends(get_session), _: CallerContext = Depends(require_admin_access)):
    return {"ok": verify_chain(session)}
