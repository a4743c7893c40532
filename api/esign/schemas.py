from pydantic import BaseModel, Field
from typing import List, Optional

class RecipientIn(BaseModel):
    email: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    order: Optional[int] = None
    kind: str = "individual"  # individual|group
    group_id: Optional[int] = None

class InitiateRequest(BaseModel):
    template_id: int
    payload: dict = {}
    recipients: List[RecipientIn] = []
    idempotency_key: Optional[str] = None
    callback_url: Optional[str] = None
    expires_in_hours: Optional[float] = None
    requester_name: Optional[str] = None

class SubmitSignature(BaseModel):
    signature_image: str  # data:image/png;base64,...
    field_values: dict = {}

class OtpVerify(BaseModel):
    code: str

class DeclineRequest(BaseModel):
    reason: Optional[str] = None

class DelegateRequest(BaseModel):
    email: str
    name: Optional[str] = None
    reason: Optional[str] = None

class FieldDefinition(BaseModel):
    key: str
    type: str = "text"  # text|email|number|date|phone|signature|checkbox
    required: bool = False
    assigned_to: Optional[int] = None
    page: int = 1
    x: float = 0
    y: float = 0
    w: float = 180
    h: float = 80

class RecipientSlot(BaseModel):
    order: int = 1
    kind: str = "individual"
    group_id: Optional[int] = None
    label: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None

class MfaConfig(BaseModel):
    enabled: bool = False
    channel: str = "email"  # email|sms|both
    otp_expiry_min: int = 10

class LinkExpiry(BaseModel):
    value: float = 7
    unit: str = "days"  # hours|days|weeks
    grace_period_hours: Optional[float] = None

class RoutingCondition(BaseModel):
    delimiter_key: str
    operator: str
    value: Optional[str] = None

class RoutingAction(BaseModel):
    type: str  # activate_signer|skip_signer|add_signer|complete
    target_order: Optional[int] = None
    email: Optional[str] = None
    name: Optional[str] = None

class RoutingRule(BaseModel):
    triggered_by: int
    condition: RoutingCondition
    action: RoutingAction

class ReminderInterval(BaseModel):
    hours_before_expiry: float = Field(gt=0)

class NotificationConfig(BaseModel):
    send_on_create: bool = True
    send_on_complete: bool = True
    send_on_reject: bool = True
    send_on_expire: bool = True
    cc_emails: List[str] = []
    # hours before expires_at at which waiting signers get a reminder
    reminder_intervals: List[ReminderInterval] = []

class TemplateCreate(BaseModel):
    name: str
    status: str = "active"
    html_content: str
    topology: str = "single"
    fields: List[FieldDefinition] = []
    recipients: List[RecipientSlot] = []
    mfa_config: MfaConfig = MfaConfig()
    link_expiry: LinkExpiry = LinkExpiry()
    preview_mode: bool = False
    routing_rules: List[RoutingRule] = []
    notification_config: NotificationConfig = NotificationConfig()
    callback_url: Optional[str] = None

class TemplateUpdate(BaseModel):
    name: Optional[str] = None
    status: Optional[str] = None
    html_content: Optional[str] = None
    topology: Optional[str] = None
    fields: Optional[List[FieldDefinition]] = None
    recipients: Optional[List[RecipientSlot]] = None
    mfa_config: Optional[MfaConfig] = None
    link_expiry: Optional[LinkExpiry] = None
    preview_mode: Optional[bool] = None
    routing_rules: Optional[List[RoutingRule]] = None
    notification_config: Optional[NotificationConfig] = None
    callback_url: Optional[str] = None

class GroupMember(BaseModel):
    email: str
    name: Optional[str] = None
    phone: Optional[str] = None
    is_active: bool = True

class SigningGroupCreate(BaseModel):
    name: str
    members: List[GroupMember] = []

class ApiClientCreate(BaseModel):
    name: str
