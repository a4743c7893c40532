import logging
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from . import db
from .models import AuditEvent
from .utils import canonical_json, sha256_bytes

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64
APPEND_ATTEMPTS = 5


def append_event(session: Session, event_type: str, actor: str, resource: str, meta: dict, document_id: Optional[int] = None) -> AuditEvent:
    # prev_hash is unique, so two writers racing for the same tail cannot both land
    for attempt in range(1, APPEND_ATTEMPTS + 1):
        last = session.exec(select(AuditEvent).order_by(AuditEvent.id.desc())).first()
        prev_hash = last.hash if last else GENESIS_HASH
        payload = {"actor": actor, "type": event_type, "resource": resource, "meta": meta}
        event = AuditEvent(
            document_id=document_id,
            event_type=event_type,
            actor=actor,
            resource=resource,
            meta_json=canonical_json(payload),
            prev_hash=prev_hash,
        )
        event.hash = sha256_bytes((prev_hash + event.meta_json).encode())
        session.add(event)
        try:
            session.commit()
            return event
        except IntegrityError:
            session.rollback()
            logger.info("audit chain moved under %s, retrying (%d/%d)", event_type, attempt, APPEND_ATTEMPTS)
    raise RuntimeError(f"could not append audit event {event_type}")


def verify_chain(session: Session) -> bool:
    prev_hash = GENESIS_HASH
    for event in session.exec(select(AuditEvent).order_by(AuditEvent.id)).all():
        if event.prev_hash != prev_hash:
            return False
        if event.hash != sha256_bytes((prev_hash + event.meta_json).encode()):
            return False
        prev_hash = event.hash
    return True


class DatabaseAuditLog:
    """Append-only audit sink; failures are logged, never raised into a signing flow."""

    def __init__(self, session_factory: Callable = None):
        self._session_factory = session_factory or db.new_session

    def record(self, event_type: str, actor: str, resource: str, metadata: Optional[dict] = None):
        document_id = None
        if resource.startswith("document:"):
            document_id = int(resource.split(":", 1)[1])
        try:
            with self._session_factory() as session:
                append_event(session, event_type, actor, resource, metadata or {}, document_id=document_id)
        except Exception:
            logger.exception("failed to record audit event %s for %s", event_type, resource)
