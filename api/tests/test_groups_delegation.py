import threading

from sqlmodel import Session

from esign import workflow
from esign.errors import SigningError
from conftest import ADMIN_HEADERS, SIGNATURE


def _group_document(api, tokens_of, members=("m1@example.com", "m2@example.com"), **template_overrides):
    group_id = api.create_group(list(members))
    template_id = api.create_template(topology="parallel", **template_overrides)
    body = api.initiate(template_id, [{"kind": "group", "group_id": group_id}, {"email": "a@example.com"}]).json()
    return group_id, body, tokens_of(body["recipients"][0])


def test_every_member_gets_a_link_and_the_first_signature_wins(api, tokens_of):
    _, body, (first_member, second_member) = _group_document(api, tokens_of)
    assert api.notifier.events_for("m1@example.com", "signing_requested")
    assert api.notifier.events_for("m2@example.com", "signing_requested")

    assert api.open(first_member).json()["signer_email"] == "m1@example.com"
    resp = api.sign(second_member)
    assert resp.json()["status"] == "partially_signed"

    # the slot is filled, so the other member's link is dead
    assert api.open(first_member).json()["code"] == "TOKEN_REVOKED"
    slot = api.status(body["document_id"])["recipients"][0]
    assert slot["kind"] == "group"
    assert slot["status"] == "signed"
    assert slot["signed_by"] == "m2@example.com"


def test_concurrent_group_members_fill_the_slot_once(api, tokens_of, settings, test_engine):
    _, body, member_tokens = _group_document(api, tokens_of)
    barrier = threading.Barrier(len(member_tokens))
    outcomes = []
    guard = threading.Lock()

    def attempt(token):
        with Session(test_engine) as s:
            barrier.wait()
            try:
                result, _ = workflow.submit(s, token, SIGNATURE, {}, settings)
                outcome = result["status"]
            except SigningError as exc:
                outcome = exc.code
        with guard:
            outcomes.append(outcome)

    threads = [threading.Thread(target=attempt, args=(t,)) for t in member_tokens]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("partially_signed") == 1
    assert set(outcomes) - {"partially_signed"} <= {"ALREADY_SIGNED", "TOKEN_REVOKED"}
    slot = api.status(body["document_id"])["recipients"][0]
    assert slot["signed_by"] in ("m1@example.com", "m2@example.com")


def test_inactive_members_and_groups_are_not_addressed(api, tokens_of):
    group_id = api.create_group(["only@example.com"])
    api.client.post(f"/api/admin/groups/{group_id}/deactivate", headers=ADMIN_HEADERS)
    template_id = api.create_template(topology="parallel")
    resp = api.initiate(template_id, [{"kind": "group", "group_id": group_id}])
    assert resp.status_code == 400
    assert resp.json()["code"] == "VALIDATION_FAILED"


def test_group_slots_cannot_be_delegated(api, tokens_of):
    _, _, (member_token, _) = _group_document(api, tokens_of)
    resp = api.client.post(f"/api/sign/{member_token}/delegate", json={"email": "x@example.com"})
    assert resp.status_code == 400
    assert resp.json()["code"] == "DELEGATION_NOT_ALLOWED"


def test_group_member_verification_keeps_sibling_links(api, tokens_of, otp_inbox):
    _, _, (first_member, second_member) = _group_document(
        api, tokens_of, mfa_config={"enabled": True, "channel": "email"}
    )
    api.client.post(f"/api/sign/{first_member}/otp")
    assert otp_inbox.messages[-1]["contact"]["email"] == "m1@example.com"
    verified = api.client.post(f"/api/sign/{first_member}/otp/verify", json={"code": otp_inbox.last_code()})
    assert verified.status_code == 200
    assert api.open(first_member).json()["code"] == "TOKEN_REVOKED"
    assert api.open(second_member).status_code == 200
    assert api.sign(verified.json()["token"]).json()["status"] == "partially_signed"


def test_each_group_member_must_verify_for_themselves(api, tokens_of, otp_inbox):
    _, body, (first_member, second_member) = _group_document(
        api, tokens_of, mfa_config={"enabled": True, "channel": "email"}
    )
    api.client.post(f"/api/sign/{first_member}/otp")
    verified = api.client.post(f"/api/sign/{first_member}/otp/verify", json={"code": otp_inbox.last_code()})
    assert verified.status_code == 200
    assert api.open(verified.json()["token"]).json()["mfa_required"] is False

    assert api.open(second_member).json()["mfa_required"] is True
    refused = api.sign(second_member)
    assert refused.status_code == 403
    assert refused.json()["code"] == "MFA_REQUIRED"
    assert api.status(body["document_id"])["recipients"][0]["status"] != "signed"

    api.client.post(f"/api/sign/{second_member}/otp")
    assert otp_inbox.messages[-1]["contact"]["email"] == "m2@example.com"
    second = api.client.post(f"/api/sign/{second_member}/otp/verify", json={"code": otp_inbox.last_code()})
    assert second.status_code == 200
    assert api.sign(second.json()["token"]).json()["status"] == "partially_signed"
    assert api.status(body["document_id"])["recipients"][0]["signed_by"] == "m2@example.com"


def test_delegation_hands_the_slot_to_someone_else(api, tokens_of):
    template_id = api.create_template()
    body = api.initiate(template_id, [{"email": "boss@example.com", "name": "Boss"}]).json()
    token = tokens_of(body["recipients"][0])[0]

    resp = api.client.post(
        f"/api/sign/{token}/delegate",
        json={"email": "deputy@example.com", "name": "Deputy", "reason": "travelling"},
    )
    assert resp.status_code == 200
    assert resp.json()["delegate_email"] == "deputy@example.com"
    assert api.open(token).json()["code"] == "TOKEN_REVOKED"

    notice = api.notifier.events_for("deputy@example.com", "signing_delegated")[-1]
    assert notice["context"]["delegated_by"] == "boss@example.com"
    assert api.sign(api.notifier.latest_token("deputy@example.com")).json()["status"] == "completed"

    slot = api.status(body["document_id"])["recipients"][0]
    assert slot["email"] == "deputy@example.com"
    assert slot["delegated_from"] == ["boss@example.com"]


def test_delegation_requires_a_different_valid_email(api, tokens_of):
    template_id = api.create_template()
    body = api.initiate(template_id, [{"email": "boss@example.com"}]).json()
    token = tokens_of(body["recipients"][0])[0]
    assert api.client.post(f"/api/sign/{token}/delegate", json={"email": "not-an-email"}).status_code == 400
    same = api.client.post(f"/api/sign/{token}/delegate", json={"email": "BOSS@example.com"})
    assert same.status_code == 400
    assert api.open(token).status_code == 200


def test_delegation_chain_grows_with_each_handoff(api, tokens_of):
    template_id = api.create_template()
    body = api.initiate(template_id, [{"email": "one@example.com"}]).json()
    token = tokens_of(body["recipients"][0])[0]
    api.client.post(f"/api/sign/{token}/delegate", json={"email": "two@example.com"})
    api.client.post(f"/api/sign/{api.notifier.latest_token('two@example.com')}/delegate", json={"email": "three@example.com"})
    slot = api.status(body["document_id"])["recipients"][0]
    assert slot["delegated_from"] == ["one@example.com", "two@example.com"]
    assert slot["email"] == "three@example.com"
