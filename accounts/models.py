import uuid

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    String,
    Uuid,
    event,
)
from sqlalchemy.orm import Session, declarative_base

from wallet_shared.cooldown import utcnow


Base = declarative_base()

EMAIL_CHANGE_STEPS = ("none", "sms_pending", "email_pending", "completed")
KYC_STATUSES = ("not_submitted", "pending", "approved", "rejected")


def default_uuid() -> uuid.UUID:
    return uuid.uuid4()


class Account(Base):
    __tablename__ = "accounts"
    __table_args__ = (
        # "completed" folds back to "none" in the same write and is never stored
        CheckConstraint(
            "email_change_verification_step IN ('none', 'sms_pending', 'email_pending')",
            name="ck_accounts_email_change_step",
        ),
        CheckConstraint(
            "kyc_status IN ('not_submitted', 'pending', 'approved', 'rejected')",
            name="ck_accounts_kyc_status",
        ),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    phone_number = Column(String(16), nullable=False, unique=True, index=True)
    pin_hash = Column(String(128), nullable=False)
    email = Column(String(254), nullable=True, unique=True, index=True)
    pending_email = Column(String(254), nullable=True)
    sms_verified = Column(Boolean, nullable=False, default=False)
    email_verified = Column(Boolean, nullable=False, default=False)
    fully_verified = Column(Boolean, nullable=False, default=False)  # derived, see sync_fully_verified
    verification_attempts = Column(Integer, nullable=False, default=0)
    email_verification_attempts = Column(Integer, nullable=False, default=0)
    last_verification_sent = Column(DateTime, nullable=True)
    last_email_verification_sent = Column(DateTime, nullable=True)
    email_change_verification_step = Column(String(16), nullable=False, default="none")
    kyc_status = Column(String(32), nullable=False, default="not_submitted")
    kyc_submitted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def sync_fully_verified(self) -> bool:
        self.fully_verified = bool(self.sms_verified) and bool(self.email_verified)
        return self.fully_verified

    def mark_sms_verified(self) -> None:
        self.sms_verified = True
        self.verification_attempts = 0
        self.sync_fully_verified()

    def mark_email_verified(self) -> None:
        self.email_verified = True
        self.email_verification_attempts = 0
        self.last_email_verification_sent = None
        self.sync_fully_verified()

    def replace_email(self, email: str) -> None:
        self.email = email
        self.email_verified = False
        self.email_verification_attempts = 0
        self.last_email_verification_sent = None
        self.sync_fully_verified()

    def finalize_email_change(self) -> None:
        self.email = self.pending_email
        self.pending_email = None
        self.email_verified = True
        self.email_change_verification_step = "none"
        self.email_verification_attempts = 0
        self.sync_fully_verified()

    def __repr__(self) -> str:
        return f"<Account id={self.id} sms={self.sms_verified} email={self.email_verified}>"


@event.listens_for(Session, "before_flush")
def _recompute_fully_verified(session, flush_context, instances):
    for obj in list(session.new) + list(session.dirty):
        if isinstance(obj, Account):
            obj.sync_fully_verified()
