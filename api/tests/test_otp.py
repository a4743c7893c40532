from datetime import timedelta

import pytest

from esign import otp
from esign.errors import AuthorizationFailed, Throttled
from esign.models import OtpRecord
from esign.utils import utcnow

MFA = {"enabled": True, "channel": "email", "otp_expiry_min": 10}


def _mfa_document(api, tokens_of, mfa=None, phone=None):
    template_id = api.create_template(mfa_config=mfa or MFA)
    recipient = {"email": "signer@example.com"}
    if phone:
        recipient["phone"] = phone
    body = api.initiate(template_id, [recipient]).json()
    return body, tokens_of(body["recipients"][0])[0]


def _verify(api, token, code):
    return api.client.post(f"/api/sign/{token}/otp/verify", json={"code": code})


def _wrong(code):
    return "000000" if code != "000000" else "111111"


def test_signing_requires_verification(api, tokens_of, otp_inbox):
    _, token = _mfa_document(api, tokens_of)
    assert api.open(token).json()["mfa_required"] is True
    blocked = api.sign(token)
    assert blocked.status_code == 403
    assert blocked.json()["code"] == "MFA_REQUIRED"

    sent = api.client.post(f"/api/sign/{token}/otp")
    assert sent.status_code == 200
    assert sent.json()["channels"] == ["email"]
    assert otp_inbox.messages[-1]["contact"]["email"] == "signer@example.com"

    verified = _verify(api, token, otp_inbox.last_code())
    assert verified.status_code == 200
    fresh = verified.json()["token"]
    assert verified.json()["signing_url"].endswith(fresh)
    # verification rotates the link
    assert api.open(token).json()["code"] == "TOKEN_REVOKED"
    assert api.open(fresh).json()["mfa_required"] is False
    assert api.sign(fresh).json()["status"] == "completed"


def test_five_wrong_codes_lock_out_for_thirty_minutes(api, tokens_of, otp_inbox, session):
    body, token = _mfa_document(api, tokens_of)
    api.client.post(f"/api/sign/{token}/otp")
    code = otp_inbox.last_code()

    for remaining in (4, 3, 2, 1):
        resp = _verify(api, token, _wrong(code))
        assert resp.status_code == 400
        assert resp.json()["code"] == "OTP_INVALID"
        assert resp.json()["details"]["attempts_remaining"] == remaining

    locked = _verify(api, token, _wrong(code))
    assert locked.status_code == 429
    assert locked.json()["code"] == "LOCKED_OUT"
    assert int(locked.headers["Retry-After"]) == 30 * 60

    # even the right code is refused while locked, and the counter does not move
    still = _verify(api, token, code)
    assert still.status_code == 429
    assert api.client.post(f"/api/sign/{token}/otp").status_code == 429
    record = otp.get_record(session, body["document_id"], body["recipients"][0]["recipient_id"])
    assert record.attempts == 5
    assert record.locked_until > utcnow() + timedelta(minutes=29)

    record.locked_until = utcnow() - timedelta(seconds=1)
    session.add(record)
    session.commit()
    assert _verify(api, token, code).status_code == 200


def test_requesting_a_new_code_does_not_reset_attempts(api, tokens_of, otp_inbox):
    _, token = _mfa_document(api, tokens_of)
    api.client.post(f"/api/sign/{token}/otp")
    for _ in range(3):
        _verify(api, token, _wrong(otp_inbox.last_code()))
    api.client.post(f"/api/sign/{token}/otp")
    assert _verify(api, token, _wrong(otp_inbox.last_code())).json()["details"]["attempts_remaining"] == 1
    assert _verify(api, token, _wrong(otp_inbox.last_code())).json()["code"] == "LOCKED_OUT"


def test_verify_without_a_code_reports_expired(api, tokens_of):
    _, token = _mfa_document(api, tokens_of)
    resp = _verify(api, token, "123456")
    assert resp.status_code == 400
    assert resp.json()["code"] == "OTP_EXPIRED"


def test_lockout_property_holds_at_the_module_level(session, settings):
    session.add(OtpRecord(document_id=1, recipient_id=1))
    session.commit()
    start = utcnow()
    code, _ = otp.issue_otp(session, 1, 1, settings, now=start)
    wrong = _wrong(code)
    for _ in range(4):
        with pytest.raises(AuthorizationFailed):
            otp.verify_otp(session, 1, 1, wrong, settings, now=start)
    with pytest.raises(Throttled):
        otp.verify_otp(session, 1, 1, wrong, settings, now=start)

    within = start + timedelta(minutes=29)
    with pytest.raises(Throttled):
        otp.verify_otp(session, 1, 1, code, settings, now=within)
    assert otp.lockout_remaining(session, 1, 1, now=within) > 0

    after = start + timedelta(minutes=31)
    assert otp.lockout_remaining(session, 1, 1, now=after) == 0
    fresh, _ = otp.issue_otp(session, 1, 1, settings, now=after)
    otp.verify_otp(session, 1, 1, fresh, settings, now=after)
    assert otp.get_record(session, 1, 1).attempts == 0


def test_both_channels_fall_back_when_one_fails(api, tokens_of, otp_inbox):
    _, token = _mfa_document(api, tokens_of, mfa=dict(MFA, channel="both"), phone="+1 555 0100")
    otp_inbox.failing.add("sms")
    resp = api.client.post(f"/api/sign/{token}/otp")
    assert resp.status_code == 200
    assert resp.json()["channels"] == ["email"]

    otp_inbox.failing.clear()
    assert api.client.post(f"/api/sign/{token}/otp").json()["channels"] == ["email", "sms"]

    otp_inbox.failing.update({"email", "sms"})
    failed = api.client.post(f"/api/sign/{token}/otp")
    assert failed.status_code == 502
    assert failed.json()["code"] == "OTP_DELIVERY_FAILED"


def test_sms_channel_without_a_phone_fails_delivery(api, tokens_of):
    _, token = _mfa_document(api, tokens_of, mfa=dict(MFA, channel="sms"))
    resp = api.client.post(f"/api/sign/{token}/otp")
    assert resp.status_code == 502
