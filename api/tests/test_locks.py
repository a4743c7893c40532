import time
from datetime import timedelta

import pytest
from sqlalchemy import update

from esign.locks import DatabaseLockBackend, LockHandle, LockService, LockUnavailable, document_lock_key
from esign.models import LockRecord
from esign.utils import utcnow
from conftest import RecordingSleep


@pytest.fixture
def backend(setup_db):
    return DatabaseLockBackend()


def test_second_holder_gives_up_after_bounded_attempts(backend):
    sleep = RecordingSleep()
    service = LockService(backend, ttl_seconds=60, max_attempts=3, retry_delay_seconds=1.5, sleep=sleep)
    key = document_lock_key(7)
    handle = service.acquire(key)
    with pytest.raises(LockUnavailable):
        service.acquire(key)
    assert sleep.delays == [1.5, 1.5]
    assert service.release(handle) is True
    assert service.acquire(key).key == key


def test_expired_lock_is_reclaimed(backend, session):
    key = document_lock_key(8)
    session.add(LockRecord(key=key, holder="crashed", expires_at=utcnow() - timedelta(seconds=1)))
    session.commit()
    assert backend.is_locked(key) is False
    handle = backend.try_acquire(key, 30)
    assert handle is not None and handle.holder != "crashed"
    assert backend.is_locked(key) is True


def test_only_the_holder_can_release(backend):
    key = document_lock_key(9)
    handle = backend.try_acquire(key, 30)
    impostor = LockHandle(key=key, holder="someone-else", expires_at=handle.expires_at)
    assert backend.release(impostor) is False
    assert backend.is_locked(key) is True
    assert backend.release(handle) is True
    assert backend.is_locked(key) is False


def test_hold_releases_on_error(backend):
    service = LockService(backend, max_attempts=1, sleep=RecordingSleep())
    key = document_lock_key(10)
    with pytest.raises(RuntimeError):
        with service.hold(key):
            raise RuntimeError("boom")
    assert backend.is_locked(key) is False


def test_hold_renews_the_lease_while_the_block_runs(backend):
    service = LockService(backend, ttl_seconds=1, heartbeat_seconds=0.2, max_attempts=1, sleep=RecordingSleep())
    key = document_lock_key(11)
    with service.hold(key) as handle:
        first_expiry = handle.expires_at
        time.sleep(1.5)
        assert backend.try_acquire(key, 1) is None
        assert handle.expires_at > first_expiry
    assert backend.is_locked(key) is False


def test_a_lapsed_lease_cannot_be_extended(backend, session):
    key = document_lock_key(12)
    handle = backend.try_acquire(key, 30)
    session.exec(update(LockRecord).where(LockRecord.key == key).values(expires_at=utcnow() - timedelta(seconds=1)))
    session.commit()
    assert backend.extend(handle, 30) is False
    assert backend.try_acquire(key, 30) is not None
