from typing import List, Optional
from datetime import datetime
from sqlalchemy import Column, JSON, Text, UniqueConstraint
from sqlmodel import SQLModel, Field as ORMField

from .utils import utcnow

# document: new|draft_preview|distributed|opened|partially_signed|signed|completed|rejected|cancelled|expired|error
TERMINAL_DOCUMENT_STATUSES = frozenset({"completed", "rejected", "cancelled", "expired"})
# recipient: pending|active|opened|signed|rejected|skipped|expired
OPEN_RECIPIENT_STATUSES = frozenset({"active", "opened"})
DONE_RECIPIENT_STATUSES = frozenset({"signed", "skipped"})


class ApiClient(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    name: str
    access_token: str = ORMField(index=True, unique=True)
    webhook_secret: str
    is_active: bool = True
    created_at: datetime = ORMField(default_factory=utcnow)


class SigningGroup(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    name: str
    # [{"email": ..., "name": ..., "is_active": bool}]
    members: List[dict] = ORMField(default_factory=list, sa_column=Column(JSON))
    is_active: bool = True
    created_at: datetime = ORMField(default_factory=utcnow)


class Template(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    name: str
    status: str = "active"  # draft|active|inactive
    html_content: str = ORMField(sa_column=Column(Text))
    topology: str = "single"  # single|parallel|sequential|broadcast
    form_fields: List[dict] = ORMField(default_factory=list, sa_column=Column(JSON))
    recipients: List[dict] = ORMField(default_factory=list, sa_column=Column(JSON))
    mfa_config: dict = ORMField(default_factory=dict, sa_column=Column(JSON))
    link_expiry: dict = ORMField(default_factory=dict, sa_column=Column(JSON))
    preview_mode: bool = False
    routing_rules: List[dict] = ORMField(default_factory=list, sa_column=Column(JSON))
    notification_config: dict = ORMField(default_factory=dict, sa_column=Column(JSON))
    callback_url: Optional[str] = None
    is_deleted: bool = False
    version: int = 1
    created_at: datetime = ORMField(default_factory=utcnow)
    updated_at: datetime = ORMField(default_factory=utcnow)


class Document(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    template_id: int = ORMField(index=True)
    template_snapshot: dict = ORMField(default_factory=dict, sa_column=Column(JSON))
    payload: dict = ORMField(default_factory=dict, sa_column=Column(JSON))
    status: str = ORMField(default="new", index=True)
    expires_at: datetime
    grace_period_hours: Optional[float] = None
    pdf_hash: Optional[str] = None
    pdf_key: Optional[str] = None
    error_reason: Optional[str] = None
    idempotency_key: Optional[str] = ORMField(default=None, unique=True)
    batch_id: Optional[str] = ORMField(default=None, index=True)
    callback_url: Optional[str] = None
    callback_status: Optional[str] = None  # pending|success|failed
    client_id: Optional[int] = None
    created_by: dict = ORMField(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = ORMField(default_factory=utcnow)
    updated_at: datetime = ORMField(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    # hours_before_expiry values whose reminder has gone out
    reminders_sent: List[float] = ORMField(default_factory=list, sa_column=Column(JSON))


class Recipient(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    document_id: int = ORMField(index=True)
    signing_order: int = 1
    kind: str = "individual"  # individual|group
    group_id: Optional[int] = None
    email: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    status: str = "pending"
    token_id: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    signature_image: Optional[str] = ORMField(default=None, sa_column=Column(Text))
    field_values: dict = ORMField(default_factory=dict, sa_column=Column(JSON))
    signed_at: Optional[datetime] = None
    mfa_verified: bool = False
    # group slots verify per member; holds the member emails that passed OTP
    mfa_verified_members: List[str] = ORMField(default_factory=list, sa_column=Column(JSON))
    delegation_chain: List[dict] = ORMField(default_factory=list, sa_column=Column(JSON))
    group_member_email: Optional[str] = None
    decline_reason: Optional[str] = None


class AccessToken(SQLModel, table=True):
    jti: str = ORMField(primary_key=True)
    document_id: int = ORMField(index=True)
    recipient_id: int = ORMField(index=True)
    member_email: Optional[str] = None
    expires_at: datetime
    issued_at: datetime = ORMField(default_factory=utcnow)
    revoked_at: Optional[datetime] = None


class OtpRecord(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("document_id", "recipient_id", name="uq_otp_recipient"),)

    id: Optional[int] = ORMField(default=None, primary_key=True)
    document_id: int
    recipient_id: int
    code_hash: Optional[str] = None
    expires_at: Optional[datetime] = None
    attempts: int = 0
    locked_until: Optional[datetime] = None
    created_at: datetime = ORMField(default_factory=utcnow)


class LockRecord(SQLModel, table=True):
    key: str = ORMField(primary_key=True)
    holder: str
    acquired_at: datetime = ORMField(default_factory=utcnow)
    expires_at: datetime


class IdempotencyRecord(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("scope", "key", name="uq_idempotency_scope_key"),)

    id: Optional[int] = ORMField(default=None, primary_key=True)
    scope: str
    key: str
    status_code: int = 201
    response_body: str = ORMField(sa_column=Column(Text))
    created_at: datetime = ORMField(default_factory=utcnow)
    expires_at: datetime


class RateLimitCounter(SQLModel, table=True):
    key: str = ORMField(primary_key=True)
    count: int = 0
    expires_at: datetime


class AuditEvent(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    document_id: Optional[int] = ORMField(default=None, index=True)
    event_type: str
    actor: str  # system|signer:<email>|client:<id>|admin
    resource: str  # document:<id>|recipient:<id>|template:<id>
    meta_json: str = "{}"
    at: datetime = ORMField(default_factory=utcnow)
    prev_hash: Optional[str] = ORMField(default=None, unique=True)
    hash: Optional[str] = None
