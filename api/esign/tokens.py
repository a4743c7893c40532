"""Signing-link capabilities.

A token is an itsdangerous-signed payload naming one recipient of one
document plus a revocation id (``jti``) and a nonce. The ``AccessToken`` table
is the source of truth for whether a jti is still live: issuing a replacement
revokes the old row in the same transaction, so once the caller commits only
the new token validates.
"""
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from itsdangerous import BadSignature
from sqlalchemy import update
from sqlmodel import Session

from .config import Settings
from .errors import signer_error
from .models import AccessToken, Document, Recipient, SigningGroup, TERMINAL_DOCUMENT_STATUSES
from .utils import make_token, read_token, utcnow

logger = logging.getLogger(__name__)


@dataclass
class TokenClaims:
    token: str
    jti: str
    document: Document
    recipient: Recipient
    member_email: Optional[str] = None
    in_grace: bool = False

    @property
    def signer_email(self) -> Optional[str]:
        return self.member_email or self.recipient.email


def issue_token(
    session: Session,
    document: Document,
    recipient: Recipient,
    settings: Settings,
    *,
    member_email: Optional[str] = None,
    expires_at: Optional[datetime] = None,
) -> str:
    jti = secrets.token_hex(16)
    exp = expires_at or document.expires_at
    session.add(AccessToken(
        jti=jti,
        document_id=document.id,
        recipient_id=recipient.id,
        member_email=member_email,
        expires_at=exp,
    ))
    if member_email is None:
        recipient.token_id = jti
    recipient.token_expires_at = exp
    session.add(recipient)
    return make_token(
        {
            "doc": document.id,
            "rcp": recipient.id,
            "exp": exp.isoformat(),
            "jti": jti,
            "nonce": secrets.token_urlsafe(8),
            "mem": member_email,
        },
        settings.secret_key,
    )


def revoke_recipient_tokens(session: Session, recipient_id: int, *, keep_jti: Optional[str] = None) -> int:
    stmt = (
        update(AccessToken)
        .where(AccessToken.recipient_id == recipient_id, AccessToken.revoked_at.is_(None))
        .values(revoked_at=utcnow())
    )
    if keep_jti:
        stmt = stmt.where(AccessToken.jti != keep_jti)
    return session.exec(stmt).rowcount


def revoke_document_tokens(session: Session, document_id: int) -> int:
    result = session.exec(
        update(AccessToken)
        .where(AccessToken.document_id == document_id, AccessToken.revoked_at.is_(None))
        .values(revoked_at=utcnow())
    )
    session.exec(
        update(Recipient).where(Recipient.document_id == document_id).values(token_id=None, token_expires_at=None)
    )
    return result.rowcount


def rotate_token(session: Session, document: Document, recipient: Recipient, settings: Settings) -> str:
    """Revoke every live token for the recipient and issue one replacement."""
    revoked = revoke_recipient_tokens(session, recipient.id)
    token = issue_token(session, document, recipient, settings)
    logger.info("rotated token for recipient %s (revoked %d)", recipient.id, revoked)
    return token


def rotate_claims(session: Session, claims: "TokenClaims", settings: Settings) -> str:
    """Replace the presented token only; a group member's siblings stay valid."""
    if claims.member_email is None:
        return rotate_token(session, claims.document, claims.recipient, settings)
    session.exec(
        update(AccessToken)
        .where(AccessToken.jti == claims.jti, AccessToken.revoked_at.is_(None))
        .values(revoked_at=utcnow())
    )
    return issue_token(session, claims.document, claims.recipient, settings, member_email=claims.member_email)


def group_members(session: Session, recipient: Recipient) -> List[dict]:
    if recipient.group_id is None:
        return []
    group = session.get(SigningGroup, recipient.group_id)
    if not group or not group.is_active:
        return []
    return [m for m in (group.members or []) if m.get("is_active", True) and m.get("email")]


def issue_recipient_tokens(
    session: Session, document: Document, recipient: Recipient, settings: Settings
) -> List[Tuple[dict, str]]:
    """Issue the initial token(s) for a slot: one per member for a group, else one.

    Returns ``(contact, token)`` pairs where contact has email/name/phone.
    """
    if recipient.kind == "group":
        issued = []
        for member in group_members(session, recipient):
            token = issue_token(session, document, recipient, settings, member_email=member["email"])
            issued.append(({"email": member["email"], "name": member.get("name"), "phone": member.get("phone")}, token))
        return issued
    token = issue_token(session, document, recipient, settings)
    return [({"email": recipient.email, "name": recipient.name, "phone": recipient.phone}, token)]


def validate_token(
    session: Session,
    token: str,
    settings: Settings,
    *,
    now: Optional[datetime] = None,
    require_turn: bool = True,
) -> TokenClaims:
    now = now or utcnow()
    try:
        data = read_token(token, settings.secret_key)
    except BadSignature:
        raise signer_error("TOKEN_INVALID", status_code=401)
    if not isinstance(data, dict) or not data.get("jti"):
        raise signer_error("TOKEN_INVALID", status_code=401)

    row = session.get(AccessToken, data["jti"])
    if not row or row.document_id != data.get("doc") or row.recipient_id != data.get("rcp"):
        raise signer_error("TOKEN_INVALID", status_code=401)
    document = session.get(Document, row.document_id)
    recipient = session.get(Recipient, row.recipient_id)
    if not document or not recipient or recipient.document_id != document.id:
        raise signer_error("TOKEN_INVALID", status_code=401)

    in_grace = False
    if now > row.expires_at:
        grace = document.grace_period_hours or 0
        if grace and now <= document.expires_at + timedelta(hours=grace):
            in_grace = True
        else:
            raise signer_error("TOKEN_EXPIRED", status_code=401)

    if row.revoked_at is not None:
        raise signer_error("TOKEN_REVOKED", status_code=401)

    if recipient.status == "signed":
        raise signer_error("ALREADY_SIGNED", status_code=409)
    if document.status in TERMINAL_DOCUMENT_STATUSES or document.status in ("draft_preview", "error", "signed"):
        raise signer_error("DOCUMENT_CLOSED", status_code=409)
    if recipient.status in ("rejected", "skipped", "expired"):
        raise signer_error("DOCUMENT_CLOSED", status_code=409)
    if require_turn and recipient.status == "pending":
        raise signer_error("NOT_YOUR_TURN", status_code=403)

    return TokenClaims(
        token=token,
        jti=row.jti,
        document=document,
        recipient=recipient,
        member_email=row.member_email,
        in_grace=in_grace,
    )
