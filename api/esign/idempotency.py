"""Replay-safe document creation.

The stored body is the exact text that was sent the first time, so a repeat
within the window gets a byte-identical response. The unique (scope, key)
constraint decides concurrent races: the loser's transaction fails, rolls
back, and it answers with the winner's stored body.
"""
import json
import logging
from datetime import timedelta
from typing import Callable, Optional, Tuple

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .config import Settings
from .errors import Conflict
from .models import Document, IdempotencyRecord
from .utils import utcnow

logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "Idempotency-Key"


def _release_key(session: Session, scope: str, key: str):
    # documents keep their key for lookup; free it once the window has passed
    doc_key = f"{scope}:{key}"
    session.exec(
        update(Document)
        .where(or_(Document.idempotency_key == doc_key, Document.idempotency_key.like(f"{doc_key}#%")))
        .values(idempotency_key=None)
    )


def lookup(session: Session, scope: str, key: str, now=None) -> Optional[IdempotencyRecord]:
    now = now or utcnow()
    record = session.exec(
        select(IdempotencyRecord).where(IdempotencyRecord.scope == scope, IdempotencyRecord.key == key)
    ).first()
    if record and record.expires_at <= now:
        logger.info("idempotency key %s for %s expired; releasing", key, scope)
        session.delete(record)
        _release_key(session, scope, key)
        session.commit()
        return None
    return record


def run_once(
    session: Session,
    scope: str,
    key: Optional[str],
    settings: Settings,
    produce: Callable[[Session], Tuple[int, dict, object]],
) -> Tuple[int, str, bool, object]:
    """Run ``produce`` at most once per (scope, key) within the window.

    ``produce`` flushes its writes and returns ``(status_code, body, outbox)``.
    Returns ``(status_code, body_text, replayed, outbox)``; ``outbox`` is None
    for a replay.
    """
    if key:
        existing = lookup(session, scope, key)
        if existing:
            return existing.status_code, existing.response_body, True, None
    try:
        status_code, body, outbox = produce(session)
        text = json.dumps(body)
        if key:
            now = utcnow()
            session.add(IdempotencyRecord(
                scope=scope,
                key=key,
                status_code=status_code,
                response_body=text,
                created_at=now,
                expires_at=now + timedelta(hours=settings.idempotency_ttl_hours),
            ))
        session.commit()
    except IntegrityError:
        session.rollback()
        if not key:
            raise
        existing = lookup(session, scope, key)
        if not existing:
            raise Conflict("A request with this idempotency key is still in progress", code="IDEMPOTENCY_IN_PROGRESS")
        logger.info("idempotency key %s for %s lost a concurrent race; replaying", key, scope)
        return existing.status_code, existing.response_body, True, None
    except Exception:
        session.rollback()
        raise
    return status_code, text, False, outbox
