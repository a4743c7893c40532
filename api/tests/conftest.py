import os
import re
import threading
from typing import Dict, List

import pytest
from fastapi.testclient import TestClient
from sqlmodel import SQLModel, Session, create_engine

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("ADMIN_ACCESS_TOKEN", "admin-test-token")

from esign.main import app  # noqa: E402
from esign import db as db_module  # noqa: E402
from esign.audit import DatabaseAuditLog  # noqa: E402
from esign.config import Settings, get_settings  # noqa: E402
from esign.db import get_session  # noqa: E402
from esign.deps import Collaborators, get_collaborators  # noqa: E402
from esign.errors import StorageError  # noqa: E402
from esign.locks import DatabaseLockBackend, LockService  # noqa: E402
from esign.stamping import render_html  # noqa: E402

SIMPLE_SIGNATURE_B64 = "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mP8/5+hHgAHggJ/Pf8icQAAAABJRU5ErkJggg=="
SIGNATURE = f"data:image/png;base64,{SIMPLE_SIGNATURE_B64}"
ADMIN_HEADERS = {"X-Access-Token": "admin-test-token"}


class RecordingNotifier:
    def __init__(self):
        self.sent: List[dict] = []

    def notify(self, recipient, event, context):
        self.sent.append({"to": recipient.get("email"), "event": event, "context": context})

    def events_for(self, email, event=None):
        return [m for m in self.sent if m["to"] == email and (event is None or m["event"] == event)]

    def latest_token(self, email):
        for message in reversed(self.sent):
            url = message["context"].get("signing_url")
            if message["to"] == email and url:
                return token_from_url(url)
        raise AssertionError(f"no signing link sent to {email}")


class RecordingWebhookSender:
    def __init__(self):
        self.enqueued: List[int] = []

    def enqueue(self, document_id):
        self.enqueued.append(document_id)


class RecordingFinalizer:
    def __init__(self):
        self.scheduled: List[int] = []

    def schedule(self, document_id):
        self.scheduled.append(document_id)


class MemoryStorage:
    """Object store double; ``fail_uploads`` counts down failing attempts (-1 = always)."""

    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.upload_attempts = 0
        self.fail_uploads = 0

    def upload(self, data, path, content_type="application/pdf"):
        self.upload_attempts += 1
        if self.fail_uploads:
            if self.fail_uploads > 0:
                self.fail_uploads -= 1
            raise StorageError("simulated outage")
        self.objects[path] = bytes(data)
        return f"memory://{path}"

    def download(self, path):
        if path not in self.objects:
            raise StorageError(f"missing {path}")
        return self.objects[path]

    def presign(self, path, ttl_seconds):
        return f"https://files.test/{path}?ttl={ttl_seconds}"


class CountingRenderer:
    def __init__(self):
        self.calls = 0
        self.failures: List[Exception] = []
        self.before_render = None
        self._lock = threading.Lock()

    def render(self, html, timeout):
        with self._lock:
            self.calls += 1
            failure = self.failures.pop(0) if self.failures else None
        if self.before_render:
            self.before_render()
        if failure:
            raise failure
        return render_html(html)


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    def __call__(self, seconds):
        self.delays.append(seconds)


class OtpInbox:
    def __init__(self):
        self.messages: List[dict] = []
        self.failing = set()

    def sender(self, channel):
        def send(contact, text):
            if channel in self.failing:
                raise ConnectionError(f"{channel} gateway down")
            self.messages.append({"channel": channel, "contact": dict(contact), "text": text})
        return send

    def last_code(self):
        assert self.messages, "no verification code was delivered"
        return re.search(r"\b(\d{6})\b", self.messages[-1]["text"]).group(1)


def token_from_url(url: str) -> str:
    return url.rsplit("/sign/", 1)[1]


@pytest.fixture(scope="session")
def test_engine(tmp_path_factory):
    db_path = tmp_path_factory.mktemp("data") / "test.db"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    return engine


@pytest.fixture
def setup_db(test_engine):
    SQLModel.metadata.drop_all(test_engine)
    SQLModel.metadata.create_all(test_engine)
    original = db_module.engine
    db_module.engine = test_engine
    yield
    db_module.engine = original
    SQLModel.metadata.drop_all(test_engine)


@pytest.fixture
def session(test_engine, setup_db):
    with Session(test_engine) as s:
        yield s


@pytest.fixture
def settings():
    return Settings(
        secret_key="test-secret",
        admin_access_token="admin-test-token",
        public_base_url="https://sign.test",
        lock_retry_delay_seconds=0.05,
        render_max_attempts=3,
        upload_backoff_seconds=(2, 4, 8),
        webhook_backoff_seconds=(2, 4, 8),
        finalize_inline=True,
    )


@pytest.fixture
def otp_inbox():
    return OtpInbox()


@pytest.fixture
def collab(setup_db, settings, otp_inbox):
    return Collaborators(
        renderer=CountingRenderer(),
        storage=MemoryStorage(),
        notifier=RecordingNotifier(),
        webhooks=RecordingWebhookSender(),
        audit=DatabaseAuditLog(),
        locks=LockService(DatabaseLockBackend(), ttl_seconds=60, max_attempts=3, retry_delay_seconds=0.05),
        otp_senders={"email": otp_inbox.sender("email"), "sms": otp_inbox.sender("sms")},
        sleep=RecordingSleep(),
    )


@pytest.fixture
def client(test_engine, setup_db, settings, collab):
    def override_session():
        with Session(test_engine) as s:
            yield s

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_collaborators] = lambda: collab
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


class SigningApi:
    """Thin helpers over the HTTP surface used across the test modules."""

    def __init__(self, client, notifier):
        self.client = client
        self.notifier = notifier

    def create_template(self, **overrides):
        body = {
            "name": "Subscription Agreement",
            "html_content": "<h1>Agreement</h1><p>Investor: {{name}}</p>",
            "topology": "single",
            "fields": [{"key": "name", "type": "text", "required": True}],
        }
        body.update(overrides)
        resp = self.client.post("/api/admin/templates", json=body, headers=ADMIN_HEADERS)
        assert resp.status_code == 201, resp.text
        return resp.json()["id"]

    def create_group(self, emails, name="Compliance"):
        resp = self.client.post(
            "/api/admin/groups",
            json={"name": name, "members": [{"email": e} for e in emails]},
            headers=ADMIN_HEADERS,
        )
        assert resp.status_code == 201, resp.text
        return resp.json()["id"]

    def create_client(self, name="Acme CRM"):
        resp = self.client.post("/api/admin/clients", json={"name": name}, headers=ADMIN_HEADERS)
        assert resp.status_code == 201, resp.text
        return resp.json()

    def initiate(self, template_id, recipients, payload=None, headers=None, **extra):
        body = {"template_id": template_id, "recipients": recipients, "payload": payload or {"name": "Alice"}}
        body.update(extra)
        return self.client.post("/api/documents", json=body, headers=headers or ADMIN_HEADERS)

    def status(self, document_id, headers=None):
        resp = self.client.get(f"/api/documents/{document_id}", headers=headers or ADMIN_HEADERS)
        assert resp.status_code == 200, resp.text
        return resp.json()

    def open(self, token):
        return self.client.get(f"/api/sign/{token}")

    def sign(self, token, field_values=None):
        return self.client.post(
            f"/api/sign/{token}/submit",
            json={"signature_image": SIGNATURE, "field_values": field_values or {}},
        )


@pytest.fixture
def api(client, collab):
    return SigningApi(client, collab.notifier)


def link_tokens(recipient_view):
    return [token_from_url(link["signing_url"]) for link in recipient_view["links"]]


@pytest.fixture
def tokens_of():
    return link_tokens
