from typing import Optional
from fastapi import Depends, Header, Query, Response
from pydantic import BaseModel
from sqlmodel import Session, select

from .config import Settings, get_settings
from .db import get_session
from .errors import AuthorizationFailed
from .models import ApiClient
from . import ratelimit


class CallerContext(BaseModel):
    role: str  # admin|client
    client_id: Optional[int] = None

    @property
    def scope(self) -> str:
        return f"client:{self.client_id}" if self.role == "client" else "admin"

    @property
    def actor(self) -> str:
        return self.scope


def resolve_caller(
    x_access_token: Optional[str] = Header(default=None, alias="X-Access-Token"),
    token: Optional[str] = Query(default=None),
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> CallerContext:
    candidate = x_access_token or token
    if not candidate:
        err = AuthorizationFailed("Missing access token", code="UNAUTHENTICATED")
        err.status_code = 401
        raise err
    if settings.admin_access_token and candidate == settings.admin_access_token:
        return CallerContext(role="admin")
    client = session.exec(select(ApiClient).where(ApiClient.access_token == candidate)).first()
    if client and client.is_active:
        return CallerContext(role="client", client_id=client.id)
    raise AuthorizationFailed("Invalid access token", code="INVALID_ACCESS_TOKEN")


def require_admin_access(context: CallerContext = Depends(resolve_caller)) -> CallerContext:
    if context.role != "admin":
        raise AuthorizationFailed("Admin access required", code="ADMIN_REQUIRED")
    return context


def rate_limited_caller(
    response: Response,
    context: CallerContext = Depends(resolve_caller),
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> CallerContext:
    state = ratelimit.hit(session, context.scope, settings.rate_limit_per_minute)
    response.headers.update(state.headers())
    return context
