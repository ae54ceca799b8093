from contextlib import contextmanager

from fastapi import APIRouter, Depends

from ..auth import Identity, get_identity
from ..config import settings
from ..errors import ValidationFailedError
from ..schemas import (
    CodeIn,
    EmailIn,
    NewEmailIn,
    PhoneIn,
    PinIn,
    VerifyCodeIn,
    account_out,
    parse_phone,
    success_envelope,
)
from ..verification import AccountService, VerificationComponents, get_account_service, get_components


router = APIRouter(prefix=settings.API_PREFIX, tags=["accounts"])


@contextmanager
def _exclusive(svc: AccountService, components: VerificationComponents, key: str):
    """Admit one request per key; its writes are committed before the key is released."""
    with components.dedup.hold(key):
        yield
        svc.db.commit()


@router.get("/exists/{phone}")
def account_exists(phone: str, svc: AccountService = Depends(get_account_service)):
    try:
        normalized = parse_phone(phone)
    except ValueError as exc:
        raise ValidationFailedError(str(exc)) from None
    return success_envelope("Account existence checked", {"exists": svc.exists(normalized)})


@router.post("/send-verification")
def send_verification(
    payload: PhoneIn,
    svc: AccountService = Depends(get_account_service),
    components: VerificationComponents = Depends(get_components),
):
    with _exclusive(svc, components, f"send-sms:{payload.phone_number}"):
        result = svc.send_sms_verification(payload.phone_number)
    return success_envelope("Verification code sent", result)


@router.post("/verify-code")
def verify_code(
    payload: VerifyCodeIn,
    svc: AccountService = Depends(get_account_service),
    components: VerificationComponents = Depends(get_components),
):
    with _exclusive(svc, components, f"verify-sms:{payload.phone_number}:{payload.code}"):
        result = svc.verify_sms_code(payload.phone_number, payload.code)
    data = {"verified": result.approved}
    if not result.approved:
        data["reason"] = result.reason
        data["attemptsRemaining"] = result.attempts_remaining
    return success_envelope("Code verification completed", data)


@router.post("/create")
def create_account(
    payload: PinIn,
    svc: AccountService = Depends(get_account_service),
    components: VerificationComponents = Depends(get_components),
):
    with _exclusive(svc, components, f"create-account:{payload.phone_number}"):
        account, token = svc.create_account(payload.phone_number, payload.pin)
    return success_envelope("Account created successfully", {"account": account_out(account), "token": token})


@router.post("/login")
def login(
    payload: PinIn,
    svc: AccountService = Depends(get_account_service),
    components: VerificationComponents = Depends(get_components),
):
    with _exclusive(svc, components, f"login:{payload.phone_number}"):
        account, token = svc.login(payload.phone_number, payload.pin)
    return success_envelope("Login successful", {"account": account_out(account), "token": token})


@router.get("/profile")
def profile(identity: Identity = Depends(get_identity), svc: AccountService = Depends(get_account_service)):
    account = svc.profile(identity.phone)
    return success_envelope("Profile retrieved successfully", {"account": account_out(account)})


@router.post("/add-email")
def add_email(
    payload: EmailIn,
    identity: Identity = Depends(get_identity),
    svc: AccountService = Depends(get_account_service),
    components: VerificationComponents = Depends(get_components),
):
    with _exclusive(svc, components, f"add-email:{identity.phone}"):
        account = svc.add_email(identity.phone, payload.email)
    return success_envelope("Email added successfully", {"account": account_out(account)})


@router.post("/send-email-verification")
def send_email_verification(
    identity: Identity = Depends(get_identity),
    svc: AccountService = Depends(get_account_service),
    components: VerificationComponents = Depends(get_components),
):
    with _exclusive(svc, components, f"send-email:{identity.phone}"):
        result = svc.send_email_verification(identity.phone)
    return success_envelope("Email verification sent", result)


@router.post("/verify-email")
def verify_email(
    payload: CodeIn,
    identity: Identity = Depends(get_identity),
    svc: AccountService = Depends(get_account_service),
    components: VerificationComponents = Depends(get_components),
):
    with _exclusive(svc, components, f"verify-email:{identity.phone}:{payload.code}"):
        verified = svc.verify_email(identity.phone, payload.code)
    return success_envelope("Email verification completed", {"verified": verified})


@router.post("/request-email-change")
def request_email_change(
    payload: NewEmailIn,
    identity: Identity = Depends(get_identity),
    svc: AccountService = Depends(get_account_service),
    components: VerificationComponents = Depends(get_components),
):
    with _exclusive(svc, components, f"request-email-change:{identity.phone}"):
        result = svc.request_email_change(identity.phone, payload.new_email)
    return success_envelope(result["message"], result)


@router.post("/verify-email-change-sms")
def verify_email_change_sms(
    payload: CodeIn,
    identity: Identity = Depends(get_identity),
    svc: AccountService = Depends(get_account_service),
    components: VerificationComponents = Depends(get_components),
):
    with _exclusive(svc, components, f"verify-email-change-sms:{identity.phone}:{payload.code}"):
        result = svc.verify_email_change_sms(identity.phone, payload.code)
    return success_envelope(result["message"], result)


@router.post("/verify-email-change-email")
def verify_email_change_email(
    payload: CodeIn,
    identity: Identity = Depends(get_identity),
    svc: AccountService = Depends(get_account_service),
    components: VerificationComponents = Depends(get_components),
):
    with _exclusive(svc, components, f"verify-email-change-email:{identity.phone}:{payload.code}"):
        result = svc.verify_email_change_email(identity.phone, payload.code)
    return success_envelope(result["message"], result)
