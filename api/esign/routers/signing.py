from fastapi import APIRouter, Depends
from sqlmodel import Session

from .. import workflow
from ..config import Settings, get_settings
from ..db import get_session
from ..deps import Collaborators, get_collaborators
from ..models import Document
from ..schemas import DeclineRequest, DelegateRequest, OtpVerify, SubmitSignature

router = APIRouter()


@router.get("/{token}")
def load_signing_session(
    token: str,
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
    collab: Collaborators = Depends(get_collaborators),
):
    view, outbox = workflow.open_document(session, token, settings)
    outbox.flush(collab, settings)
    return view


@router.post("/{token}/otp")
def send_code(
    token: str,
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
    collab: Collaborators = Depends(get_collaborators),
):
    body, outbox = workflow.send_otp(session, token, settings, senders=collab.otp_senders)
    outbox.flush(collab, settings)
    return body


@router.post("/{token}/otp/verify")
def verify_code(
    token: str,
    payload: OtpVerify,
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
    collab: Collaborators = Depends(get_collaborators),
):
    body, outbox = workflow.verify_otp(session, token, payload.code, settings)
    outbox.flush(collab, settings)
    return body


@router.post("/{token}/submit")
def submit_signature(
    token: str,
    payload: SubmitSignature,
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
    collab: Collaborators = Depends(get_collaborators),
):
    body, outbox = workflow.submit(session, token, payload.signature_image, payload.field_values, settings)
    outbox.flush(collab, settings)
    # inline finalization may have moved the document on since the commit
    session.expire_all()
    body["status"] = session.get(Document, body["document_id"]).status
    return body


@router.post("/{token}/decline")
def decline_document(
    token: str,
    payload: DeclineRequest,
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
    collab: Collaborators = Depends(get_collaborators),
):
    body, outbox = workflow.decline(session, token, payload.reason, settings)
    outbox.flush(collab, settings)
    return body


@router.post("/{token}/delegate")
def delegate_slot(
    token: str,
    payload: DelegateRequest,
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
    collab: Collaborators = Depends(get_collaborators),
):
    body, outbox = workflow.delegate(session, token, payload.email, payload.name, payload.reason, settings)
    outbox.flush(collab, settings)
    return body
