from accounts.database import session_scope
from accounts.models import Account

from .utils import API, add_verified_email, signup, unique_email, unique_phone


def _verified_account(client, components):
    phone = unique_phone()
    headers = signup(client, components, phone)
    old = unique_email("old")
    add_verified_email(client, components, headers, old)
    return phone, headers, old


def _sms_code(client, components, phone, headers):
    r = client.post(f"{API}/send-verification", json={"phoneNumber": phone})
    assert r.status_code == 200, r.text
    return components.sms_backend.last_code(phone)


def test_full_email_change_flow(client, components):
    phone, headers, old = _verified_account(client, components)
    new = unique_email("new")

    r = client.post(f"{API}/request-email-change", headers=headers, json={"newEmail": new})
    assert r.status_code == 200
    assert r.json()["data"]["message"].startswith("Email change requested")
    profile = client.get(f"{API}/profile", headers=headers).json()["data"]["account"]
    assert profile["pendingEmail"] == new
    assert profile["emailChangeVerificationStep"] == "sms_pending"

    code = _sms_code(client, components, phone, headers)
    r = client.post(f"{API}/verify-email-change-sms", headers=headers, json={"code": code})
    assert r.status_code == 200, r.text
    profile = client.get(f"{API}/profile", headers=headers).json()["data"]["account"]
    assert profile["emailChangeVerificationStep"] == "email_pending"
    assert profile["lastEmailVerificationSent"] is not None

    email_code = components.email_backend.last_code(new)
    r = client.post(f"{API}/verify-email-change-email", headers=headers, json={"code": email_code})
    assert r.status_code == 200
    assert r.json()["data"]["newEmail"] == new

    profile = client.get(f"{API}/profile", headers=headers).json()["data"]["account"]
    assert profile["email"] == new
    assert profile["pendingEmail"] is None
    assert profile["emailVerified"] is True
    assert profile["fullyVerified"] is True
    assert profile["emailChangeVerificationStep"] == "none"
    assert profile["emailVerificationAttempts"] == 0


def test_finalize_is_idempotent(client, components):
    phone, headers, old = _verified_account(client, components)
    new = unique_email("new")
    client.post(f"{API}/request-email-change", headers=headers, json={"newEmail": new})
    code = _sms_code(client, components, phone, headers)
    client.post(f"{API}/verify-email-change-sms", headers=headers, json={"code": code})
    email_code = components.email_backend.last_code(new)

    first = client.post(f"{API}/verify-email-change-email", headers=headers, json={"code": email_code})
    second = client.post(f"{API}/verify-email-change-email", headers=headers, json={"code": email_code})
    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json()["data"] == {"message": "Email change already completed!", "newEmail": new}
    third = client.post(f"{API}/verify-email-change-email", headers=headers, json={"code": email_code})
    assert third.json()["data"] == second.json()["data"]


def test_finalize_without_request_is_noop_success(client, components):
    phone, headers, old = _verified_account(client, components)
    r = client.post(f"{API}/verify-email-change-email", headers=headers, json={"code": "123456"})
    assert r.status_code == 200
    assert r.json()["data"]["newEmail"] == old


def test_sms_step_requires_pending_request(client, components):
    phone, headers, _ = _verified_account(client, components)
    r = client.post(f"{API}/verify-email-change-sms", headers=headers, json={"code": "123456"})
    assert r.status_code == 400
    assert r.json()["error"] == "precondition_failed"


def test_email_step_before_sms_step_fails(client, components):
    phone, headers, _ = _verified_account(client, components)
    client.post(f"{API}/request-email-change", headers=headers, json={"newEmail": unique_email()})
    r = client.post(f"{API}/verify-email-change-email", headers=headers, json={"code": "123456"})
    assert r.status_code == 400
    assert r.json()["error"] == "precondition_failed"


def test_request_rejects_same_or_taken_email(client, components):
    phone, headers, old = _verified_account(client, components)
    r = client.post(f"{API}/request-email-change", headers=headers, json={"newEmail": old.upper()})
    assert r.status_code == 400
    assert r.json()["message"] == "New email cannot be the same as current email"

    other_phone, other_headers, taken = _verified_account(client, components)
    r = client.post(f"{API}/request-email-change", headers=headers, json={"newEmail": taken})
    assert r.status_code == 409


def test_request_only_from_none(client, components):
    phone, headers, _ = _verified_account(client, components)
    assert client.post(f"{API}/request-email-change", headers=headers, json={"newEmail": unique_email()}).status_code == 200
    r = client.post(f"{API}/request-email-change", headers=headers, json={"newEmail": unique_email()})
    assert r.status_code == 400
    assert r.json()["error"] == "precondition_failed"


def test_wrong_sms_code_keeps_step(client, components):
    phone, headers, _ = _verified_account(client, components)
    client.post(f"{API}/request-email-change", headers=headers, json={"newEmail": unique_email()})
    components.sms_otp.issue(phone, "111111")
    r = client.post(f"{API}/verify-email-change-sms", headers=headers, json={"code": "999999"})
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_code"
    with session_scope() as db:
        acct = db.query(Account).filter(Account.phone_number == phone).one()
        assert acct.email_change_verification_step == "sms_pending"


def test_completed_step_is_never_persisted(client, components):
    phone, headers, _ = _verified_account(client, components)
    new = unique_email("new")
    client.post(f"{API}/request-email-change", headers=headers, json={"newEmail": new})
    code = _sms_code(client, components, phone, headers)
    client.post(f"{API}/verify-email-change-sms", headers=headers, json={"code": code})
    client.post(f"{API}/verify-email-change-email", headers=headers, json={"code": components.email_backend.last_code(new)})
    with session_scope() as db:
        steps = {a.email_change_verification_step for a in db.query(Account).all()}
    assert "completed" not in steps


def test_add_email_refused_while_change_in_progress(client, components):
    phone, headers, old = _verified_account(client, components)
    new = unique_email("new")
    client.post(f"{API}/request-email-change", headers=headers, json={"newEmail": new})
    r = client.post(f"{API}/add-email", headers=headers, json={"email": unique_email("other")})
    assert r.status_code == 400
    assert r.json()["error"] == "precondition_failed"
    profile = client.get(f"{API}/profile", headers=headers).json()["data"]["account"]
    assert profile["email"] == old
    assert profile["emailVerified"] is True
    assert profile["pendingEmail"] == new
    assert profile["emailChangeVerificationStep"] == "sms_pending"
