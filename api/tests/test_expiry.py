from datetime import timedelta

from sqlalchemy import update
from sqlmodel import select

from esign import workflow
from esign.models import AccessToken, Document, Recipient
from esign.utils import utcnow
from conftest import ADMIN_HEADERS

GRACE = {"value": 1, "unit": "days", "grace_period_hours": 48}


def _open_document(api, emails=("a@example.com", "b@example.com"), **template_overrides):
    template_id = api.create_template(topology="sequential", **template_overrides)
    people = [{"email": e, "order": i + 1} for i, e in enumerate(emails)]
    return api.initiate(template_id, people, expires_in_hours=1).json()


def test_sweep_expires_documents_and_their_waiting_recipients(api, session, settings, collab):
    body = _open_document(api)
    counts, outbox = workflow.sweep_expired(session, settings, now=utcnow() + timedelta(hours=2))
    assert counts == {"expired": 1, "in_grace": 0}
    outbox.flush(collab, settings)

    session.expire_all()
    assert session.get(Document, body["document_id"]).status == "expired"
    statuses = [r.status for r in session.exec(select(Recipient).where(Recipient.document_id == body["document_id"]).order_by(Recipient.signing_order))]
    assert statuses == ["expired", "expired"]
    live = session.exec(select(AccessToken).where(AccessToken.revoked_at.is_(None))).all()
    assert live == []
    assert api.notifier.events_for("a@example.com", "document_expired")


def test_sweep_leaves_documents_inside_their_grace_period(api, session, settings):
    body = _open_document(api, link_expiry=GRACE)
    counts, _ = workflow.sweep_expired(session, settings, now=utcnow() + timedelta(hours=2))
    assert counts == {"expired": 0, "in_grace": 1}
    session.expire_all()
    assert session.get(Document, body["document_id"]).status == "distributed"

    counts, _ = workflow.sweep_expired(session, settings, now=utcnow() + timedelta(hours=50))
    assert counts["expired"] == 1


def test_sweep_ignores_finished_documents(api, tokens_of, session, settings):
    template_id = api.create_template()
    body = api.initiate(template_id, [{"email": "a@example.com"}], expires_in_hours=1).json()
    api.sign(tokens_of(body["recipients"][0])[0])
    counts, _ = workflow.sweep_expired(session, settings, now=utcnow() + timedelta(days=30))
    assert counts == {"expired": 0, "in_grace": 0}
    session.expire_all()
    assert session.get(Document, body["document_id"]).status == "completed"


def test_signing_inside_grace_shows_a_warning(api, tokens_of, session):
    body = _open_document(api, emails=("a@example.com",), link_expiry=GRACE)
    token = tokens_of(body["recipients"][0])[0]
    past = utcnow() - timedelta(hours=3)
    session.exec(update(Document).where(Document.id == body["document_id"]).values(expires_at=past))
    session.exec(update(AccessToken).where(AccessToken.document_id == body["document_id"]).values(expires_at=past))
    session.commit()

    view = api.open(token).json()
    assert view["grace_warning"].startswith("This link expired on")
    assert api.sign(token).json()["status"] == "completed"


def test_expired_link_without_grace_is_refused(api, tokens_of, session):
    body = _open_document(api, emails=("a@example.com",))
    token = tokens_of(body["recipients"][0])[0]
    past = utcnow() - timedelta(minutes=5)
    session.exec(update(Document).where(Document.id == body["document_id"]).values(expires_at=past))
    session.exec(update(AccessToken).where(AccessToken.document_id == body["document_id"]).values(expires_at=past))
    session.commit()
    resp = api.open(token)
    assert resp.status_code == 401
    assert resp.json()["code"] == "TOKEN_EXPIRED"


def test_admin_sweep_endpoint(api, session):
    body = _open_document(api)
    session.exec(update(Document).where(Document.id == body["document_id"]).values(expires_at=utcnow() - timedelta(hours=1)))
    session.commit()
    resp = api.client.post("/api/admin/sweep", headers=ADMIN_HEADERS)
    assert resp.status_code == 200
    assert resp.json() == {"expired": 1, "in_grace": 0, "ok": True}
    assert api.status(body["document_id"])["status"] == "expired"


def test_sweep_leaves_failed_finalizations_for_retry(api, session, settings):
    body = _open_document(api, emails=("a@example.com",))
    session.exec(update(Document).where(Document.id == body["document_id"]).values(status="error"))
    session.commit()
    counts, _ = workflow.sweep_expired(session, settings, now=utcnow() + timedelta(days=30))
    assert counts == {"expired": 0, "in_grace": 0}
    session.expire_all()
    assert session.get(Document, body["document_id"]).status == "error"


REMINDERS = {"reminder_intervals": [{"hours_before_expiry": 24}, {"hours_before_expiry": 2}]}


def test_reminders_fire_once_per_interval_with_a_fresh_link(api, tokens_of, session, settings, collab):
    template_id = api.create_template(topology="sequential", notification_config=REMINDERS)
    people = [{"email": "a@example.com", "order": 1}, {"email": "b@example.com", "order": 2}]
    body = api.initiate(template_id, people, expires_in_hours=48).json()
    original = tokens_of(body["recipients"][0])[0]
    expires = session.get(Document, body["document_id"]).expires_at

    counts, _ = workflow.send_reminders(session, settings, now=expires - timedelta(hours=30))
    assert counts == {"reminded": 0}

    counts, outbox = workflow.send_reminders(session, settings, now=expires - timedelta(hours=20))
    outbox.flush(collab, settings)
    assert counts == {"reminded": 1}
    reminders = api.notifier.events_for("a@example.com", "signing_reminder")
    assert len(reminders) == 1
    assert reminders[0]["context"]["hours_remaining"] == 20
    # the second signer is not up yet
    assert not api.notifier.events_for("b@example.com", "signing_reminder")
    assert api.open(original).json()["code"] == "TOKEN_REVOKED"
    assert api.open(api.notifier.latest_token("a@example.com")).status_code == 200

    counts, _ = workflow.send_reminders(session, settings, now=expires - timedelta(hours=19))
    assert counts == {"reminded": 0}
    counts, _ = workflow.send_reminders(session, settings, now=expires - timedelta(hours=1))
    assert counts == {"reminded": 1}
    session.expire_all()
    assert session.get(Document, body["document_id"]).reminders_sent == [2.0, 24.0]


def test_templates_without_intervals_send_no_reminders(api, session, settings):
    body = _open_document(api)
    counts, _ = workflow.send_reminders(session, settings, now=utcnow() + timedelta(minutes=59))
    assert counts == {"reminded": 0}
    resp = api.client.post("/api/admin/reminders", headers=ADMIN_HEADERS)
    assert resp.json() == {"reminded": 0, "ok": True}
    assert session.get(Document, body["document_id"]).reminders_sent == []
