import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from .errors import Throttled
from .models import RateLimitCounter
from .utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class RateLimitState:
    limit: int
    remaining: int
    reset_at: datetime

    def headers(self) -> dict:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": self.reset_at.strftime("%Y-%m-%dT%H:%M:%SZ"),
        }


def _increment(session: Session, key: str) -> int:
    return session.exec(
        update(RateLimitCounter).where(RateLimitCounter.key == key).values(count=RateLimitCounter.count + 1)
    ).rowcount


def hit(session: Session, caller_key: str, limit: int, now: Optional[datetime] = None) -> RateLimitState:
    """Count one request against the caller's current one-minute window."""
    now = now or utcnow()
    window = now.replace(second=0, microsecond=0)
    reset_at = window + timedelta(minutes=1)
    key = f"{caller_key}:{window:%Y%m%d%H%M}"

    if not _increment(session, key):
        session.exec(delete(RateLimitCounter).where(RateLimitCounter.expires_at < now))
        session.add(RateLimitCounter(key=key, count=1, expires_at=reset_at))
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            _increment(session, key)
    session.commit()

    count = session.get(RateLimitCounter, key).count
    state = RateLimitState(limit=limit, remaining=limit - count, reset_at=reset_at)
    if count > limit:
        retry_after = math.ceil((reset_at - now).total_seconds())
        logger.warning("rate limit exceeded for %s (%d/%d)", caller_key, count, limit)
        raise Throttled(
            "Rate limit exceeded",
            retry_after=retry_after,
            details={"limit": limit, "retry_after": retry_after},
        )
    return state
