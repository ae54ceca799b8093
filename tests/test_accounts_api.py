from datetime import timedelta

from accounts.database import session_scope
from accounts.models import Account
from wallet_shared import utcnow
from wallet_shared.delivery import PermanentDeliveryError, TransientDeliveryError

from .utils import API, add_verified_email, signup, unique_phone


def test_end_to_end_signup_and_login(client, components):
    phone = "+639171234567"
    components.sms_backend.provider_code = "654321"
    r = client.post(f"{API}/send-verification", json={"phoneNumber": "09171234567"})
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["data"]["status"] == "pending"
    assert body["data"]["to"] == phone
    assert body["data"]["messageId"]
    assert "timestamp" in body

    r = client.post(f"{API}/verify-code", json={"phoneNumber": phone, "code": "654321"})
    assert r.json()["data"]["verified"] is True

    r = client.post(f"{API}/create", json={"phoneNumber": phone, "pin": "123456"})
    assert r.status_code == 200
    account = r.json()["data"]["account"]
    assert account["phoneNumber"] == phone
    assert account["smsVerified"] is True
    assert account["fullyVerified"] is False
    assert "pin" not in account and "pinHash" not in account

    r = client.post(f"{API}/login", json={"phoneNumber": "639171234567", "pin": "123456"})
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["token"]
    assert data["account"]["smsVerified"] is True


def test_end_to_end_email_verification(client, components):
    phone = unique_phone()
    headers = signup(client, components, phone)
    add_verified_email(client, components, headers, "a@x.com")
    r = client.get(f"{API}/profile", headers=headers)
    account = r.json()["data"]["account"]
    assert account["email"] == "a@x.com"
    assert account["emailVerified"] is True
    assert account["fullyVerified"] is True
    assert account["emailVerificationAttempts"] == 0
    assert account["lastEmailVerificationSent"] is None
    subjects = [s for to, s in components.email_backend.sent if to == "a@x.com"]
    assert subjects[-1].startswith("Welcome")


def test_exists(client, components):
    phone = unique_phone()
    r = client.get(f"{API}/exists/{phone}")
    assert r.json()["data"] == {"exists": False}
    signup(client, components, phone)
    local = "0" + phone[3:]
    assert client.get(f"{API}/exists/{local}").json()["data"] == {"exists": True}


def test_invalid_phone_is_rejected_at_boundary(client):
    r = client.post(f"{API}/send-verification", json={"phoneNumber": "+637171234567"})
    assert r.status_code == 400
    body = r.json()
    assert body["success"] is False
    assert body["error"] == "validation"
    assert "Philippines" in body["message"]
    assert client.get(f"{API}/exists/12345").status_code == 400


def test_missing_and_malformed_fields(client):
    r = client.post(f"{API}/create", json={"phoneNumber": unique_phone()})
    assert r.status_code == 400
    assert r.json()["message"] == "pin is required"
    r = client.post(f"{API}/create", json={"phoneNumber": unique_phone(), "pin": "12ab56"})
    assert r.json()["message"] == "PIN must be exactly 6 digits"
    r = client.post(f"{API}/verify-code", json={"phoneNumber": unique_phone(), "code": "12"})
    assert r.status_code == 400


def test_wrong_sms_code_counts_attempts_on_existing_account(client, components):
    phone = unique_phone()
    signup(client, components, phone)
    components.sms_otp.issue(phone, "111111")
    r = client.post(f"{API}/verify-code", json={"phoneNumber": phone, "code": "222222"})
    data = r.json()["data"]
    assert data["verified"] is False
    assert data["reason"] == "invalid_code"
    assert data["attemptsRemaining"] == 2
    with session_scope() as db:
        acct = db.query(Account).filter(Account.phone_number == phone).one()
        assert acct.verification_attempts == 1

    # a fresh code starts a new cycle
    assert client.post(f"{API}/send-verification", json={"phoneNumber": phone}).status_code == 200
    with session_scope() as db:
        acct = db.query(Account).filter(Account.phone_number == phone).one()
        assert acct.verification_attempts == 0


def test_sms_attempt_counter_is_bounded(client, components):
    phone = unique_phone()
    signup(client, components, phone)
    components.sms_otp.issue(phone, "111111")
    for _ in range(8):
        r = client.post(f"{API}/verify-code", json={"phoneNumber": phone, "code": "222222"})
        assert r.json()["data"]["verified"] is False
    with session_scope() as db:
        acct = db.query(Account).filter(Account.phone_number == phone).one()
        assert acct.verification_attempts == 5


def test_sms_cooldown_for_existing_account(client, components):
    phone = unique_phone()
    signup(client, components, phone)
    r = client.post(f"{API}/send-verification", json={"phoneNumber": phone})
    assert r.status_code == 200
    r = client.post(f"{API}/send-verification", json={"phoneNumber": phone})
    assert r.status_code == 429
    assert r.json()["error"] == "rate_limited"
    retry_after = int(r.headers["Retry-After"])
    assert 0 < retry_after <= 60
    assert r.json()["data"]["retryAfter"] == retry_after

    with session_scope() as db:
        acct = db.query(Account).filter(Account.phone_number == phone).one()
        acct.last_verification_sent = utcnow() - timedelta(seconds=61)
    assert client.post(f"{API}/send-verification", json={"phoneNumber": phone}).status_code == 200


def test_no_cooldown_before_account_exists(client):
    phone = unique_phone()
    assert client.post(f"{API}/send-verification", json={"phoneNumber": phone}).status_code == 200
    assert client.post(f"{API}/send-verification", json={"phoneNumber": phone}).status_code == 200


def test_create_conflict(client, components):
    phone = unique_phone()
    signup(client, components, phone)
    r = client.post(f"{API}/create", json={"phoneNumber": phone, "pin": "654321"})
    assert r.status_code == 409
    assert r.json()["error"] == "conflict"


def test_login_failures(client, components):
    phone = unique_phone()
    r = client.post(f"{API}/login", json={"phoneNumber": phone, "pin": "123456"})
    assert r.status_code == 404
    signup(client, components, phone, pin="123456")
    r = client.post(f"{API}/login", json={"phoneNumber": phone, "pin": "000000"})
    assert r.status_code == 401
    assert r.json()["message"] == "Invalid PIN"


def test_pin_is_stored_hashed(client, components):
    phone = unique_phone()
    signup(client, components, phone, pin="246810")
    with session_scope() as db:
        acct = db.query(Account).filter(Account.phone_number == phone).one()
        assert acct.pin_hash != "246810"
        assert acct.pin_hash.startswith("$2")


def test_delivery_failures_map_to_typed_errors(client, components):
    phone = unique_phone()
    components.sms_backend.error = TransientDeliveryError("timeout", provider="fake")
    r = client.post(f"{API}/send-verification", json={"phoneNumber": phone})
    assert r.status_code == 503
    assert r.json()["error"] == "upstream_unavailable"
    assert components.sms_otp.active_count() == 0

    components.sms_backend.error = PermanentDeliveryError("Invalid number", reason="invalid_recipient")
    r = client.post(f"{API}/send-verification", json={"phoneNumber": phone})
    assert r.status_code == 400
    assert r.json()["error"] == "validation"


def test_dedup_rejects_in_flight_duplicate(client, components):
    phone = unique_phone()
    key = f"send-sms:{phone}"
    assert components.dedup.begin(key).admitted
    r = client.post(f"{API}/send-verification", json={"phoneNumber": phone})
    assert r.status_code == 429
    assert r.json()["message"] == "Duplicate request detected. Please wait."
    assert int(r.headers["Retry-After"]) >= 0
    components.dedup.release(key)
    r = client.post(f"{API}/send-verification", json={"phoneNumber": phone})
    assert r.status_code == 200
    # released once the request finished
    assert key not in components.dedup


def test_dedup_entry_released_after_error(client, components):
    phone = unique_phone()
    signup(client, components, phone)
    r = client.post(f"{API}/create", json={"phoneNumber": phone, "pin": "123456"})
    assert r.status_code == 409
    assert f"create-account:{phone}" not in components.dedup
    assert len(components.dedup) == 0


def test_writes_are_visible_before_dedup_key_is_released(client, components, monkeypatch):
    phone = unique_phone()
    signup(client, components, phone)
    seen = []
    release = components.dedup.release

    def observing_release(key):
        with session_scope() as db:
            acct = db.query(Account).filter(Account.phone_number == phone).one()
            seen.append(acct.last_verification_sent)
        release(key)

    monkeypatch.setattr(components.dedup, "release", observing_release)
    r = client.post(f"{API}/send-verification", json={"phoneNumber": phone})
    assert r.status_code == 200
    assert len(seen) == 1
    assert seen[0] is not None
