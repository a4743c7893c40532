import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Response
from sqlmodel import Session

from .. import idempotency, workflow
from ..auth import CallerContext, rate_limited_caller
from ..config import Settings, get_settings
from ..db import get_session
from ..deps import Collaborators, get_collaborators
from ..errors import Conflict, DependencyFailed, StorageError
from ..schemas import InitiateRequest, DeclineRequest

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("", status_code=201)
def initiate_document(
    payload: InitiateRequest,
    response: Response,
    idempotency_key: Optional[str] = Header(default=None, alias=idempotency.IDEMPOTENCY_HEADER),
    caller: CallerContext = Depends(rate_limited_caller),
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
    collab: Collaborators = Depends(get_collaborators),
):
    key = idempotency_key or payload.idempotency_key
    request = payload.model_dump()
    request["recipients"] = [r.model_dump(exclude_none=True) for r in payload.recipients]
    request["idempotency_key"] = key

    def produce(s: Session):
        body, outbox = workflow.initiate(s, request, caller, settings)
        return 201, body, outbox

    status_code, text, replayed, outbox = idempotency.run_once(session, caller.scope, key, settings, produce)
    if outbox is not None:
        outbox.flush(collab, settings)
    headers = {k: v for k, v in response.headers.items() if k.lower().startswith("x-ratelimit")}
    if replayed:
        headers["Idempotent-Replayed"] = "true"
    return Response(content=text, status_code=status_code, media_type="application/json", headers=headers)


@router.get("/{document_id}")
def get_status(
    document_id: int,
    caller: CallerContext = Depends(rate_limited_caller),
    session: Session = Depends(get_session),
):
    return workflow.document_view(session, workflow.get_document_for(session, document_id, caller))


@router.post("/{document_id}/cancel")
def cancel_document(
    document_id: int,
    payload: Optional[DeclineRequest] = None,
    caller: CallerContext = Depends(rate_limited_caller),
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
    collab: Collaborators = Depends(get_collaborators),
):
    body, outbox = workflow.cancel(session, document_id, caller, settings, reason=payload.reason if payload else None)
    outbox.flush(collab, settings)
    return body


@router.get("/{document_id}/download")
def download_document(
    document_id: int,
    caller: CallerContext = Depends(rate_limited_caller),
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
    collab: Collaborators = Depends(get_collaborators),
):
    document = workflow.get_document_for(session, document_id, caller)
    if document.status != "completed" or not document.pdf_key:
        raise Conflict("Document is not completed yet", code="NOT_COMPLETED", details={"status": document.status})
    try:
        url = collab.storage.presign(document.pdf_key, settings.presign_ttl_seconds)
    except StorageError as exc:
        logger.error("presign for document %s failed: %s", document_id, exc)
        raise DependencyFailed("Download link could not be created", code="STORAGE_UNAVAILABLE")
    collab.audit.record("document_downloaded", caller.actor, f"document:{document_id}", {})
    return {"ok": True, "url": url, "expires_in": settings.presign_ttl_seconds, "sha256": document.pdf_hash}


@router.post("/{document_id}/approve")
def approve_preview(
    document_id: int,
    caller: CallerContext = Depends(rate_limited_caller),
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
    collab: Collaborators = Depends(get_collaborators),
):
    body, outbox = workflow.approve_preview(session, document_id, caller, settings)
    outbox.flush(collab, settings)
    return body


@router.post("/{document_id}/reject-preview")
def reject_preview(
    document_id: int,
    caller: CallerContext = Depends(rate_limited_caller),
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
    collab: Collaborators = Depends(get_collaborators),
):
    body, outbox = workflow.reject_preview(session, document_id, caller, settings)
    outbox.flush(collab, settings)
    return body


@router.post("/{document_id}/recipients/{recipient_id}/resend")
def resend_link(
    document_id: int,
    recipient_id: int,
    caller: CallerContext = Depends(rate_limited_caller),
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
    collab: Collaborators = Depends(get_collaborators),
):
    body, outbox = workflow.resend(session, document_id, recipient_id, caller, settings)
    outbox.flush(collab, settings)
    return body


@router.post("/{document_id}/retry")
def retry_finalization(
    document_id: int,
    caller: CallerContext = Depends(rate_limited_caller),
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
    collab: Collaborators = Depends(get_collaborators),
):
    body, outbox = workflow.retry(session, document_id, caller, settings)
    outbox.flush(collab, settings)
    session.expire_all()
    document = workflow.get_document_for(session, document_id, caller)
    return dict(body, status=document.status, error_reason=document.error_reason)
