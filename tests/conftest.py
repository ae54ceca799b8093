import os
import tempfile
import uuid

import pytest


# Ensure sensible defaults for tests before app import
_DB_DIR = tempfile.mkdtemp(prefix="accounts-tests-")
os.environ.setdefault("ENV", "dev")
os.environ.setdefault("DB_URL", f"sqlite:///{os.path.join(_DB_DIR, 'accounts.db')}")
os.environ.setdefault("AUTO_CREATE_SCHEMA", "true")
os.environ.setdefault("OTP_SMS_PROVIDER", "log")
os.environ.setdefault("OTP_EMAIL_PROVIDER", "log")
os.environ.setdefault("WALLET_ENV_FILE", os.path.join(_DB_DIR, "missing.env"))

from fastapi.testclient import TestClient  # noqa: E402

from wallet_shared import Cooldown, DedupGate, DeliveryResult, OTPStore  # noqa: E402


class FakeSms:
    """Records every code it is asked to deliver."""

    def __init__(self):
        self.sent = []
        self.provider_code = None
        self.error = None

    def send_code(self, phone, code):
        if self.error is not None:
            raise self.error
        delivered = self.provider_code or code
        self.sent.append((phone, delivered))
        return DeliveryResult(message_id=f"sms-{uuid.uuid4().hex[:8]}", code=delivered)

    def send(self, phone, message):
        self.sent.append((phone, message))
        return DeliveryResult(message_id=f"sms-{uuid.uuid4().hex[:8]}")

    def last_code(self, phone):
        for to, code in reversed(self.sent):
            if to == phone:
                return code
        raise AssertionError(f"no code sent to {phone}")


class FakeEmail:
    def __init__(self):
        self.sent = []
        self.codes = {}
        self.fail_subjects = set()

    def send(self, to, subject, html, text=None):
        if subject in self.fail_subjects:
            raise RuntimeError("mail relay down")
        self.sent.append((to, subject))
        if text and "code is " in text:
            self.codes[to] = text.split("code is ", 1)[1][:6]
        return DeliveryResult(message_id=f"<{uuid.uuid4().hex}@test>")

    def last_code(self, to):
        return self.codes[to]


@pytest.fixture
def components():
    from accounts.verification import VerificationComponents

    return VerificationComponents(
        sms_otp=OTPStore("sms"),
        email_otp=OTPStore("email"),
        sms_backend=FakeSms(),
        email_backend=FakeEmail(),
        dedup=DedupGate(default_ttl=30),
        cooldown=Cooldown(seconds=60),
        email_max_attempts=5,
    )


@pytest.fixture
def app(components):
    from accounts.main import create_app

    return create_app(components)


@pytest.fixture
def client(app):
    return TestClient(app)
