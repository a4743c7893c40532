import hmac
import logging
import secrets
import string
from datetime import datetime, timedelta
from typing import Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .config import Settings
from .errors import SIGNER_MESSAGES, Throttled, signer_error
from .models import OtpRecord
from .utils import hmac_sha256, utcnow

logger = logging.getLogger(__name__)

OTP_LENGTH = 6


def generate_code(length: int = OTP_LENGTH) -> str:
    return "".join(secrets.choice(string.digits) for _ in range(length))


def hash_code(code: str, document_id: int, recipient_id: int, secret_key: str) -> str:
    return hmac_sha256(secret_key, f"otp:{document_id}:{recipient_id}:{code}")


def get_record(session: Session, document_id: int, recipient_id: int) -> Optional[OtpRecord]:
    return session.exec(
        select(OtpRecord).where(OtpRecord.document_id == document_id, OtpRecord.recipient_id == recipient_id)
    ).first()


def _get_or_create(session: Session, document_id: int, recipient_id: int) -> OtpRecord:
    record = get_record(session, document_id, recipient_id)
    if record:
        return record
    session.add(OtpRecord(document_id=document_id, recipient_id=recipient_id))
    try:
        session.commit()
    except IntegrityError:
        # a concurrent request created it first
        session.rollback()
    return get_record(session, document_id, recipient_id)


def _raise_if_locked(session: Session, record: OtpRecord, now: datetime):
    if not record.locked_until:
        return
    if record.locked_until > now:
        remaining = int((record.locked_until - now).total_seconds()) + 1
        raise Throttled(SIGNER_MESSAGES["LOCKED_OUT"], code="LOCKED_OUT", retry_after=remaining)
    # lock elapsed: start counting again
    record.locked_until = None
    record.attempts = 0
    session.add(record)


def lockout_remaining(session: Session, document_id: int, recipient_id: int, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    record = get_record(session, document_id, recipient_id)
    if not record or not record.locked_until or record.locked_until <= now:
        return 0
    return int((record.locked_until - now).total_seconds()) + 1


def issue_otp(
    session: Session,
    document_id: int,
    recipient_id: int,
    settings: Settings,
    *,
    expiry_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Tuple[str, datetime]:
    """Store a fresh hashed code and return the plaintext for delivery.

    The attempt counter is carried over so requesting a new code does not
    reset progress toward a lockout.
    """
    now = now or utcnow()
    record = _get_or_create(session, document_id, recipient_id)
    _raise_if_locked(session, record, now)
    code = generate_code()
    expires_at = now + timedelta(minutes=expiry_minutes or settings.otp_default_expiry_minutes)
    record.code_hash = hash_code(code, document_id, recipient_id, settings.secret_key)
    record.expires_at = expires_at
    record.created_at = now
    session.add(record)
    session.commit()
    return code, expires_at


def verify_otp(
    session: Session,
    document_id: int,
    recipient_id: int,
    code: str,
    settings: Settings,
    *,
    now: Optional[datetime] = None,
) -> None:
    """Check ``code``; raises on failure and commits the attempt counter first."""
    now = now or utcnow()
    record = get_record(session, document_id, recipient_id)
    if record:
        _raise_if_locked(session, record, now)
    if not record or not record.code_hash or not record.expires_at or record.expires_at < now:
        session.commit()
        raise signer_error("OTP_EXPIRED", status_code=400)

    expected = hash_code(str(code).strip(), document_id, recipient_id, settings.secret_key)
    if hmac.compare_digest(expected, record.code_hash):
        record.attempts = 0
        record.code_hash = None
        record.locked_until = None
        session.add(record)
        session.commit()
        return

    session.exec(update(OtpRecord).where(OtpRecord.id == record.id).values(attempts=OtpRecord.attempts + 1))
    session.commit()
    session.refresh(record)
    if record.attempts >= settings.otp_max_attempts:
        record.locked_until = now + timedelta(minutes=settings.otp_lockout_minutes)
        record.attempts = settings.otp_max_attempts
        session.add(record)
        session.commit()
        logger.warning("recipient %s locked out of otp verification", recipient_id)
        raise Throttled(
            SIGNER_MESSAGES["LOCKED_OUT"],
            code="LOCKED_OUT",
            retry_after=settings.otp_lockout_minutes * 60,
        )
    raise signer_error(
        "OTP_INVALID",
        status_code=400,
        details={"attempts_remaining": settings.otp_max_attempts - record.attempts},
    )
