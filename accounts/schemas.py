from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

from wallet_shared import normalize_email, normalize_phone_ph

PHONE_FORMAT_MESSAGE = (
    "Invalid Philippines phone number format. "
    "Use format: +639XXXXXXXXX, 09XXXXXXXXX, or 639XXXXXXXXX"
)
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PIN_RE = re.compile(r"^\d{6}$")
_CODE_RE = re.compile(r"^\d{4,8}$")


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def success_envelope(message: str, data: Any = None) -> dict:
    body: dict = {"success": True, "message": message, "timestamp": _timestamp()}
    if data is not None:
        body["data"] = data
    return body


def error_envelope(message: str, error: str) -> dict:
    return {"success": False, "message": message, "error": error, "timestamp": _timestamp()}


def parse_phone(v: str) -> str:
    phone = normalize_phone_ph(v or "")
    if not phone:
        raise ValueError(PHONE_FORMAT_MESSAGE)
    return phone


def parse_email(v: str) -> str:
    email = normalize_email(v)
    if not _EMAIL_RE.match(email) or len(email) > 254:
        raise ValueError("Invalid email format")
    return email


def parse_code(v: str) -> str:
    code = (v or "").strip()
    if not _CODE_RE.match(code):
        raise ValueError("Invalid verification code format")
    return code


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PhoneIn(CamelModel):
    phone_number: str

    @field_validator("phone_number")
    @classmethod
    def valid_phone(cls, v: str) -> str:
        return parse_phone(v)


class VerifyCodeIn(PhoneIn):
    code: str

    @field_validator("code")
    @classmethod
    def valid_code(cls, v: str) -> str:
        return parse_code(v)


class PinIn(PhoneIn):
    pin: str

    @field_validator("pin")
    @classmethod
    def valid_pin(cls, v: str) -> str:
        if not _PIN_RE.match(v or ""):
            raise ValueError("PIN must be exactly 6 digits")
        return v


class EmailIn(CamelModel):
    email: str

    @field_validator("email")
    @classmethod
    def valid_email(cls, v: str) -> str:
        return parse_email(v)


class NewEmailIn(CamelModel):
    new_email: str

    @field_validator("new_email")
    @classmethod
    def valid_email(cls, v: str) -> str:
        return parse_email(v)


class CodeIn(CamelModel):
    code: str

    @field_validator("code")
    @classmethod
    def valid_code(cls, v: str) -> str:
        return parse_code(v)


class AccountOut(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: UUID
    phone_number: str
    email: Optional[str] = None
    pending_email: Optional[str] = None
    sms_verified: bool
    email_verified: bool
    fully_verified: bool
    verification_attempts: int
    email_verification_attempts: int
    last_verification_sent: Optional[datetime] = None
    last_email_verification_sent: Optional[datetime] = None
    email_change_verification_step: str
    kyc_status: str
    kyc_submitted_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


def account_out(account) -> dict:
    return AccountOut.model_validate(account).model_dump(mode="json", by_alias=True)
