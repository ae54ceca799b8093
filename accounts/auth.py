import datetime as dt
import logging
from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from wallet_shared import mask_phone, normalize_phone_ph

from .config import settings
from .database import SessionLocal
from .errors import ForbiddenError, UnauthorizedError
from .models import Account

logger = logging.getLogger("accounts.auth")

# auto_error off so a missing header renders as our 401 envelope
bearer_scheme = HTTPBearer(auto_error=False)
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_pin(pin: str) -> str:
    return pwd_context.hash(pin)


def verify_pin(pin: str, pin_hash: str) -> bool:
    try:
        return pwd_context.verify(pin, pin_hash)
    except ValueError:
        logger.warning("unreadable PIN hash")
        return False


def create_access_token(account: Account) -> str:
    now = dt.datetime.now(dt.timezone.utc)
    payload = {
        "sub": str(account.id),
        "phone": account.phone_number,
        "smsVerified": bool(account.sms_verified),
        "emailVerified": bool(account.email_verified),
        "fullyVerified": bool(account.fully_verified),
        "iat": int(now.timestamp()),
        "exp": int((now + settings.jwt_expires_delta).timestamp()),
        "iss": settings.JWT_ISSUER,
        "aud": settings.JWT_AUDIENCE,
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm="HS256")


def decode_access_token(token: str) -> dict:
    options = {"require": ["exp", "iat", "sub"], "verify_aud": settings.JWT_VALIDATE_AUD}
    try:
        return jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=["HS256"],
            audience=(settings.JWT_AUDIENCE if settings.JWT_VALIDATE_AUD else None),
            issuer=(settings.JWT_ISSUER if settings.JWT_VALIDATE_ISS else None),
            leeway=settings.JWT_CLOCK_SKEW_SECS,
            options=options,
        )
    except jwt.ExpiredSignatureError:
        raise UnauthorizedError("Token expired") from None
    except jwt.InvalidTokenError:
        raise UnauthorizedError("Invalid token") from None


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@dataclass(frozen=True)
class Identity:
    """Capabilities of the caller, read from the account row on every request."""

    phone: str
    account_id: str
    sms_verified: bool
    email_verified: bool
    fully_verified: bool
    kyc_status: str

    @classmethod
    def from_account(cls, account: Account) -> "Identity":
        return cls(
            phone=account.phone_number,
            account_id=str(account.id),
            sms_verified=bool(account.sms_verified),
            email_verified=bool(account.email_verified),
            fully_verified=bool(account.sms_verified and account.email_verified),
            kyc_status=account.kyc_status,
        )


def authenticate(db: Session, token: str) -> Identity:
    payload = decode_access_token(token)
    phone = normalize_phone_ph(str(payload.get("phone") or ""))
    if not phone:
        raise UnauthorizedError("Invalid token payload")
    account = db.query(Account).filter(Account.phone_number == phone).one_or_none()
    if account is None:
        raise UnauthorizedError("Account not found")
    if not account.sms_verified:
        raise UnauthorizedError("Account phone number not verified")
    logger.debug("authenticated %s", mask_phone(phone))
    return Identity.from_account(account)


def get_identity(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> Identity:
    if creds is None or not creds.credentials:
        raise UnauthorizedError("Authentication required")
    return authenticate(db, creds.credentials)


def require_sms_verified(identity: Identity = Depends(get_identity)) -> Identity:
    if not identity.sms_verified:
        raise ForbiddenError("Phone verification required to access this endpoint")
    return identity


def require_email_verified(identity: Identity = Depends(get_identity)) -> Identity:
    if not identity.email_verified:
        raise ForbiddenError("Email verification required to access this endpoint")
    return identity


def require_fully_verified(identity: Identity = Depends(get_identity)) -> Identity:
    if not identity.fully_verified:
        raise ForbiddenError("Full account verification required to access this endpoint")
    return identity
