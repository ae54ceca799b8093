from fastapi import APIRouter, Depends

from ..auth import Identity, get_identity, require_fully_verified
from ..config import settings
from ..errors import NotFoundError
from ..schemas import success_envelope
from ..verification import AccountService, get_account_service


router = APIRouter(prefix=f"{settings.API_PREFIX}/kyc", tags=["kyc"])


def _kyc_view(account) -> dict:
    return {
        "kycStatus": account.kyc_status,
        "kycSubmittedAt": account.kyc_submitted_at.isoformat() if account.kyc_submitted_at else None,
    }


@router.get("")
def get_kyc(identity: Identity = Depends(get_identity), svc: AccountService = Depends(get_account_service)):
    return success_envelope("KYC status retrieved", _kyc_view(svc.profile(identity.phone)))


@router.post("/submit")
def submit_kyc(identity: Identity = Depends(require_fully_verified), svc: AccountService = Depends(get_account_service)):
    if identity.kyc_status == "approved":
        return success_envelope("KYC already approved", {"kycStatus": "approved"})
    account = svc.submit_kyc(identity.phone)
    return success_envelope("KYC submitted", _kyc_view(account))


@router.post("/dev/approve")
def dev_approve(identity: Identity = Depends(get_identity), svc: AccountService = Depends(get_account_service)):
    if not settings.DEV_ENABLE_KYC_APPROVE:
        raise NotFoundError("Not Found")
    account = svc.approve_kyc(identity.phone)
    return success_envelope("KYC approved", _kyc_view(account))
