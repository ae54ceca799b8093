"""Account verification state machine and the email-change protocol.

Every transition loads the account row for update, mutates it through the
model helpers (which keep ``fully_verified`` in step with the two flags) and
flushes inside the request transaction. Failed code checks that must leave a
trace on the account (attempt counters) commit before the error is raised,
because the request session rolls back on any exception.
"""
import logging
from dataclasses import dataclass, field
from typing import Optional

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from wallet_shared import (
    Cooldown,
    DedupGate,
    DeliveryError,
    OTPInputError,
    OTPStore,
    VerificationResult,
    mask_email,
    mask_phone,
    utcnow,
)
from wallet_shared.email_provider import EmailBackend
from wallet_shared.sms_provider import SmsBackend

from . import metrics
from .auth import create_access_token, get_db, hash_pin, verify_pin
from .errors import (
    AttemptsExhaustedError,
    ConflictError,
    ExpiredCodeError,
    InvalidCodeError,
    NotFoundError,
    PreconditionFailedError,
    RateLimitedError,
    UnauthorizedError,
    UpstreamUnavailableError,
    ValidationFailedError,
)
from .models import Account

logger = logging.getLogger("accounts.verification")

EMAIL_OTP_SUBJECT = "Your verification code"
WELCOME_SUBJECT = "Welcome! Your email is verified"
# upper bound on the stored SMS attempt counter
ACCOUNT_ATTEMPT_CEILING = 5


@dataclass
class VerificationComponents:
    """Process-wide collaborators, built once per app and held on app.state."""

    sms_otp: OTPStore
    email_otp: OTPStore
    sms_backend: SmsBackend
    email_backend: EmailBackend
    dedup: DedupGate
    cooldown: Cooldown = field(default_factory=Cooldown)
    email_max_attempts: int = 5


def get_components(request: Request) -> VerificationComponents:
    return request.app.state.components


def _email_code_html(code: str, minutes: int) -> str:
    return (
        "<p>Your verification code is:</p>"
        f"<h2>{code}</h2>"
        f"<p>This code will expire in {minutes} minutes. Do not share it with anyone.</p>"
    )


def _welcome_html(phone: str) -> str:
    return (
        "<p>Your email address has been verified.</p>"
        f"<p>It is now linked to the wallet account for {mask_phone(phone)}.</p>"
    )


class AccountService:
    def __init__(self, db: Session, components: VerificationComponents):
        self.db = db
        self.c = components

    # lookups

    def _find(self, phone: str, *, lock: bool = False) -> Optional[Account]:
        q = self.db.query(Account).filter(Account.phone_number == phone)
        if lock:
            q = q.with_for_update()
        return q.one_or_none()

    def _require(self, phone: str) -> Account:
        account = self._find(phone, lock=True)
        if account is None:
            raise NotFoundError("Account not found")
        return account

    def _email_owner(self, email: str) -> Optional[Account]:
        return self.db.query(Account).filter(Account.email == email).one_or_none()

    def exists(self, phone: str) -> bool:
        return self._find(phone) is not None

    # code issuance

    def _check_cooldown(self, last_sent, what: str) -> None:
        if not self.c.cooldown.can_send(last_sent):
            seconds = self.c.cooldown.remaining(last_sent)
            raise RateLimitedError(f"Please wait {seconds} seconds before requesting another {what}", retry_after=seconds)

    def _delivery_failed(self, channel: str, store: OTPStore, recipient: str, exc: DeliveryError):
        store.discard(recipient)
        metrics.OTP_DELIVERY_FAILURES.labels(channel, exc.reason).inc()
        logger.warning("%s delivery failed provider=%s reason=%s: %s", channel, exc.provider, exc.reason, exc)
        if exc.reason == "invalid_recipient":
            return ValidationFailedError(str(exc))
        return UpstreamUnavailableError(f"Unable to send {channel} verification code. Please try again later.")

    def _deliver_sms_code(self, phone: str):
        store = self.c.sms_otp
        code = store.issue(phone)
        try:
            result = self.c.sms_backend.send_code(phone, code)
        except DeliveryError as exc:
            raise self._delivery_failed("sms", store, phone, exc) from exc
        if result.code and result.code != code:
            # provider generated its own code; that is the one the user received
            store.issue(phone, result.code)
        metrics.OTP_ISSUED.labels("sms").inc()
        logger.info("SMS code sent to=%s message_id=%s", mask_phone(phone), result.message_id)
        return result

    def _deliver_email_code(self, email: str):
        store = self.c.email_otp
        code = store.issue(email)
        minutes = max(store.ttl_secs // 60, 1)
        text = f"Your verification code is {code}. It expires in {minutes} minutes."
        try:
            result = self.c.email_backend.send(email, EMAIL_OTP_SUBJECT, _email_code_html(code, minutes), text)
        except DeliveryError as exc:
            raise self._delivery_failed("email", store, email, exc) from exc
        metrics.OTP_ISSUED.labels("email").inc()
        logger.info("Email code sent to=%s message_id=%s", mask_email(email), result.message_id)
        return result

    def _check_code(self, channel: str, store: OTPStore, recipient: str, code: str) -> VerificationResult:
        try:
            result = store.verify(recipient, code)
        except OTPInputError as exc:
            raise ValidationFailedError(str(exc)) from exc
        metrics.OTP_VERIFICATIONS.labels(channel, result.reason).inc()
        return result

    @staticmethod
    def _failure(result: VerificationResult):
        if result.reason in ("expired", "not_found"):
            return ExpiredCodeError("Verification code has expired. Please request a new one.")
        if result.reason == "attempts_exhausted":
            return AttemptsExhaustedError("Too many failed attempts. Please request a new code.")
        remaining = result.attempts_remaining
        suffix = f" {remaining} attempt(s) remaining." if remaining is not None else ""
        return InvalidCodeError(f"Invalid verification code.{suffix}")

    # phone

    def send_sms_verification(self, phone: str) -> dict:
        account = self._find(phone, lock=True)
        if account is not None:
            self._check_cooldown(account.last_verification_sent, "code")
        result = self._deliver_sms_code(phone)
        if account is not None:
            account.last_verification_sent = utcnow()
            account.verification_attempts = 0
            self.db.flush()
        return {"status": "pending", "to": phone, "messageId": result.message_id}

    def verify_sms_code(self, phone: str, code: str) -> VerificationResult:
        result = self._check_code("sms", self.c.sms_otp, phone, code)
        account = self._find(phone, lock=True)
        if account is not None:
            if result.approved:
                if not account.sms_verified:
                    account.mark_sms_verified()
                else:
                    account.verification_attempts = 0
            else:
                account.verification_attempts = min((account.verification_attempts or 0) + 1, ACCOUNT_ATTEMPT_CEILING)
            self.db.flush()
        return result

    # account

    def create_account(self, phone: str, pin: str):
        if self._find(phone) is not None:
            raise ConflictError("Account already exists with this phone number")
        account = Account(phone_number=phone, pin_hash=hash_pin(pin), sms_verified=True)
        account.sync_fully_verified()
        self.db.add(account)
        self.db.flush()
        self.db.refresh(account)
        logger.info("account created %s", mask_phone(phone))
        return account, create_access_token(account)

    def login(self, phone: str, pin: str):
        account = self._find(phone)
        if account is None:
            raise NotFoundError("Account not found")
        if not account.sms_verified:
            raise UnauthorizedError("Account phone number not verified")
        if not verify_pin(pin, account.pin_hash):
            logger.info("login rejected for %s", mask_phone(phone))
            raise UnauthorizedError("Invalid PIN")
        return account, create_access_token(account)

    def profile(self, phone: str) -> Account:
        account = self._find(phone)
        if account is None:
            raise NotFoundError("Account not found")
        return account

    # email

    def add_email(self, phone: str, email: str) -> Account:
        account = self._require(phone)
        if account.email_change_verification_step != "none":
            raise PreconditionFailedError("An email change is in progress")
        owner = self._email_owner(email)
        if owner is not None and owner.id != account.id:
            raise ConflictError("Email is already registered to another account")
        account.replace_email(email)
        self.db.flush()
        logger.info("email set for %s to %s", mask_phone(phone), mask_email(email))
        return account

    def send_email_verification(self, phone: str) -> dict:
        account = self._require(phone)
        if not account.email:
            raise PreconditionFailedError("No email address found for this account")
        if account.email_verified:
            raise PreconditionFailedError("Email is already verified")
        self._check_cooldown(account.last_email_verification_sent, "email verification code")
        result = self._deliver_email_code(account.email)
        account.last_email_verification_sent = utcnow()
        account.email_verification_attempts = 0
        self.db.flush()
        return {"status": "pending", "to": account.email, "messageId": result.message_id}

    def verify_email(self, phone: str, code: str) -> bool:
        account = self._require(phone)
        if not account.email:
            raise PreconditionFailedError("No email address found for this account")
        if (account.email_verification_attempts or 0) >= self.c.email_max_attempts:
            raise AttemptsExhaustedError("Too many email verification attempts. Please request a new code.")
        result = self._check_code("email", self.c.email_otp, account.email, code)
        if not result.approved:
            account.email_verification_attempts = (account.email_verification_attempts or 0) + 1
            self.db.commit()
            raise self._failure(result)
        account.mark_email_verified()
        self.db.flush()
        logger.info("email verified for %s", mask_phone(phone))
        self._send_welcome(account.email, account.phone_number)
        return True

    def _send_welcome(self, email: str, phone: str) -> None:
        try:
            self.c.email_backend.send(email, WELCOME_SUBJECT, _welcome_html(phone))
        except Exception:
            logger.exception("Failed to send welcome email to %s", mask_email(email))

    # email change

    def request_email_change(self, phone: str, new_email: str) -> dict:
        account = self._require(phone)
        if account.email_change_verification_step != "none":
            raise PreconditionFailedError("An email change is already in progress")
        if account.email == new_email:
            raise ValidationFailedError("New email cannot be the same as current email")
        owner = self._email_owner(new_email)
        if owner is not None and owner.id != account.id:
            raise ConflictError("Email is already registered to another account")
        account.pending_email = new_email
        account.email_change_verification_step = "sms_pending"
        self.db.flush()
        logger.info("email change requested for %s", mask_phone(phone))
        return {"message": "Email change requested. SMS verification required first."}

    def verify_email_change_sms(self, phone: str, code: str) -> dict:
        account = self._require(phone)
        if account.email_change_verification_step != "sms_pending":
            raise PreconditionFailedError("No email change request pending SMS verification")
        result = self._check_code("sms", self.c.sms_otp, account.phone_number, code)
        if not result.approved:
            raise self._failure(result)
        account.email_change_verification_step = "email_pending"
        self._deliver_email_code(account.pending_email)
        account.last_email_verification_sent = utcnow()
        self.db.flush()
        return {"message": "SMS verified successfully. Email verification code sent to new email address."}

    def verify_email_change_email(self, phone: str, code: str) -> dict:
        account = self._require(phone)
        step = account.email_change_verification_step
        if step in ("none", "completed"):
            return {"message": "Email change already completed!", "newEmail": account.email}
        if step != "email_pending":
            raise PreconditionFailedError("Email verification not ready. Complete SMS verification first.")
        result = self._check_code("email", self.c.email_otp, account.pending_email, code)
        if not result.approved:
            raise self._failure(result)
        owner = self._email_owner(account.pending_email)
        if owner is not None and owner.id != account.id:
            raise ConflictError("Email is already registered to another account")
        account.finalize_email_change()
        self.db.flush()
        logger.info("email changed for %s to %s", mask_phone(phone), mask_email(account.email))
        return {"message": "Email changed successfully!", "newEmail": account.email}

    # kyc

    def submit_kyc(self, phone: str) -> Account:
        account = self._require(phone)
        if account.kyc_status in ("not_submitted", "rejected"):
            account.kyc_status = "pending"
            account.kyc_submitted_at = utcnow()
            self.db.flush()
        return account

    def approve_kyc(self, phone: str) -> Account:
        account = self._require(phone)
        account.kyc_status = "approved"
        if account.kyc_submitted_at is None:
            account.kyc_submitted_at = utcnow()
        self.db.flush()
        return account


def get_account_service(
    db: Session = Depends(get_db),
    components: VerificationComponents = Depends(get_components),
) -> AccountService:
    return AccountService(db, components)
