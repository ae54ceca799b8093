import uuid

API = "/api/accounts"


def unique_phone(prefix: str = "9", digits: int = 9) -> str:
    """Return a unique +63 mobile number; prefix must start with 8 or 9."""
    suffix = str(uuid.uuid4().int % (10 ** digits)).zfill(digits)
    return f"+63{prefix}{suffix}"[:13]


def unique_email(tag: str = "user") -> str:
    return f"{tag}-{uuid.uuid4().hex[:10]}@example.com"


def signup(client, components, phone: str, pin: str = "123456") -> dict:
    """Verify the phone over SMS, create the account and return auth headers."""
    r = client.post(f"{API}/send-verification", json={"phoneNumber": phone})
    assert r.status_code == 200, r.text
    code = components.sms_backend.last_code(phone)
    r = client.post(f"{API}/verify-code", json={"phoneNumber": phone, "code": code})
    assert r.json()["data"]["verified"] is True
    r = client.post(f"{API}/create", json={"phoneNumber": phone, "pin": pin})
    assert r.status_code == 200, r.text
    return {"Authorization": f"Bearer {r.json()['data']['token']}"}


def add_verified_email(client, components, headers: dict, email: str) -> None:
    r = client.post(f"{API}/add-email", headers=headers, json={"email": email})
    assert r.status_code == 200, r.text
    r = client.post(f"{API}/send-email-verification", headers=headers)
    assert r.status_code == 200, r.text
    code = components.email_backend.last_code(email)
    r = client.post(f"{API}/verify-email", headers=headers, json={"code": code})
    assert r.status_code == 200, r.text
