"""Auto-expiring exclusive locks keyed by document.

Two backends share one contract: ``try_acquire`` either inserts the lock
atomically or returns ``None``; ``release`` only deletes a lock still owned by
the caller's holder id; ``extend`` pushes the expiry out for a holder that is
still working. Expired locks are reclaimed on the next acquire so a
crashed holder cannot starve a document.
"""
import logging
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

import redis
from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError

from . import db
from .config import Settings, REDIS_URL
from .models import LockRecord
from .utils import utcnow

logger = logging.getLogger(__name__)


class LockUnavailable(Exception):
    pass


@dataclass
class LockHandle:
    key: str
    holder: str
    expires_at: datetime


def document_lock_key(document_id: int) -> str:
    return f"document:{document_id}:finalize"


class DatabaseLockBackend:
    def __init__(self, session_factory: Callable = None):
        self._session_factory = session_factory or db.new_session

    def try_acquire(self, key: str, ttl_seconds: int) -> Optional[LockHandle]:
        holder = uuid.uuid4().hex
        now = utcnow()
        expires_at = now + timedelta(seconds=ttl_seconds)
        with self._session_factory() as session:
            session.exec(delete(LockRecord).where(LockRecord.key == key, LockRecord.expires_at < now))
            session.add(LockRecord(key=key, holder=holder, acquired_at=now, expires_at=expires_at))
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return None
        return LockHandle(key=key, holder=holder, expires_at=expires_at)

    def release(self, handle: LockHandle) -> bool:
        with self._session_factory() as session:
            result = session.exec(
                delete(LockRecord).where(LockRecord.key == handle.key, LockRecord.holder == handle.holder)
            )
            session.commit()
            return result.rowcount > 0

    def extend(self, handle: LockHandle, ttl_seconds: float) -> bool:
        now = utcnow()
        expires_at = now + timedelta(seconds=ttl_seconds)
        with self._session_factory() as session:
            result = session.exec(
                update(LockRecord)
                .where(LockRecord.key == handle.key, LockRecord.holder == handle.holder, LockRecord.expires_at > now)
                .values(expires_at=expires_at)
            )
            session.commit()
        if result.rowcount:
            handle.expires_at = expires_at
            return True
        return False

    def is_locked(self, key: str) -> bool:
        with self._session_factory() as session:
            record = session.get(LockRecord, key)
            return bool(record and record.expires_at > utcnow())


class RedisLockBackend:
    _RELEASE_SCRIPT = (
        "if redis.call('get', KEYS[1]) == ARGV[1] then "
        "return redis.call('del', KEYS[1]) else return 0 end"
    )
    _EXTEND_SCRIPT = (
        "if redis.call('get', KEYS[1]) == ARGV[1] then "
        "return redis.call('pexpire', KEYS[1], ARGV[2]) else return 0 end"
    )

    def __init__(self, client: redis.Redis, prefix: str = "esign:lock:"):
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str = REDIS_URL) -> "RedisLockBackend":
        return cls(redis.Redis.from_url(url, socket_timeout=5, socket_connect_timeout=5))

    def try_acquire(self, key: str, ttl_seconds: int) -> Optional[LockHandle]:
        holder = uuid.uuid4().hex
        if not self._client.set(self._prefix + key, holder, nx=True, px=int(ttl_seconds * 1000)):
            return None
        return LockHandle(key=key, holder=holder, expires_at=utcnow() + timedelta(seconds=ttl_seconds))

    def release(self, handle: LockHandle) -> bool:
        return bool(self._client.eval(self._RELEASE_SCRIPT, 1, self._prefix + handle.key, handle.holder))

    def extend(self, handle: LockHandle, ttl_seconds: float) -> bool:
        extended = self._client.eval(
            self._EXTEND_SCRIPT, 1, self._prefix + handle.key, handle.holder, int(ttl_seconds * 1000)
        )
        if extended:
            handle.expires_at = utcnow() + timedelta(seconds=ttl_seconds)
        return bool(extended)

    def is_locked(self, key: str) -> bool:
        return bool(self._client.exists(self._prefix + key))


class LockService:
    """Bounded acquisition on top of a backend.

    ``hold`` also renews the lease every ``heartbeat_seconds`` (a third of the
    TTL by default) until the block exits, so a slow holder keeps its lock while
    a dead one loses it within one TTL.
    """

    def __init__(
        self,
        backend,
        *,
        ttl_seconds: float = 60,
        max_attempts: int = 3,
        retry_delay_seconds: float = 1.0,
        heartbeat_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.backend = backend
        self.ttl_seconds = ttl_seconds
        self.max_attempts = max(1, max_attempts)
        self.retry_delay_seconds = retry_delay_seconds
        self.heartbeat_seconds = heartbeat_seconds or ttl_seconds / 3.0
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings) -> "LockService":
        if settings.lock_backend == "redis":
            backend = RedisLockBackend.from_url()
        elif settings.lock_backend == "database":
            backend = DatabaseLockBackend()
        else:
            raise ValueError(f"unknown lock backend: {settings.lock_backend}")
        return cls(
            backend,
            ttl_seconds=settings.lock_ttl_seconds,
            max_attempts=settings.lock_max_attempts,
            retry_delay_seconds=settings.lock_retry_delay_seconds,
        )

    def acquire(self, key: str) -> LockHandle:
        for attempt in range(1, self.max_attempts + 1):
            handle = self.backend.try_acquire(key, self.ttl_seconds)
            if handle:
                logger.info("lock %s acquired on attempt %d", key, attempt)
                return handle
            if attempt < self.max_attempts:
                logger.info("lock %s busy, retrying (%d/%d)", key, attempt, self.max_attempts)
                self._sleep(self.retry_delay_seconds)
        raise LockUnavailable(f"lock {key} is held by another process")

    def release(self, handle: LockHandle) -> bool:
        released = self.backend.release(handle)
        if not released:
            logger.warning("lock %s was no longer held by %s at release", handle.key, handle.holder)
        return released

    def _keep_alive(self, handle: LockHandle, stop: threading.Event):
        while not stop.wait(self.heartbeat_seconds):
            try:
                if not self.backend.extend(handle, self.ttl_seconds):
                    logger.warning("lock %s lost by %s before it could be renewed", handle.key, handle.holder)
                    return
            except Exception:
                logger.exception("renewing lock %s failed", handle.key)

    @contextmanager
    def hold(self, key: str):
        handle = self.acquire(key)
        stop = threading.Event()
        heartbeat = threading.Thread(target=self._keep_alive, args=(handle, stop), name=f"lock:{key}", daemon=True)
        heartbeat.start()
        try:
            yield handle
        finally:
            stop.set()
            heartbeat.join()
            self.release(handle)
