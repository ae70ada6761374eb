from fastapi import APIRouter, Depends

from ..auth import get_current_account, get_otp_service
from ..models import Account
from ..otp_service import OtpService
from ..schemas import OtpRequestedOut, ProfileOut, RequestOtpIn, VerifiedOut, VerifyOtpIn


router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/request_otp", response_model=OtpRequestedOut)
def request_otp(payload: RequestOtpIn, service: OtpService = Depends(get_otp_service)):
    issued = service.start_verification(payload.phone)
    return OtpRequestedOut(phoneNumber=issued.phone, expiresIn=issued.expires_in)


@router.post("/verify_otp", response_model=VerifiedOut)
def verify_otp(payload: VerifyOtpIn, service: OtpService = Depends(get_otp_service)):
    result = service.complete_verification(payload.phone, payload.otp)
    account = result.account
    return VerifiedOut(
        accountId=str(account.id),
        phone=account.phone,
        status=account.status,
        token=result.token,
    )


@router.get("/profile", response_model=ProfileOut)
def profile(account: Account = Depends(get_current_account)):
    return ProfileOut(
        id=str(account.id),
        phone=account.phone,
        status=account.status,
        createdAt=account.created_at,
    )
