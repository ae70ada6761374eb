from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from .accounts import get_account
from .database import get_db
from .errors import Unauthenticated
from .models import Account
from .otp_service import OtpService


bearer_scheme = HTTPBearer(auto_error=False)


def get_otp_service(request: Request) -> OtpService:
    return request.app.state.otp_service


def get_current_account(
    request: Request,
    creds: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> Account:
    if creds is None or (creds.scheme or "").lower() != "bearer":
        raise Unauthenticated("Access token required")
    claims = get_otp_service(request).token_issuer.verify(creds.credentials)
    account = get_account(db, claims.account_id)
    if account is None:
        raise Unauthenticated("Account not found")
    if not account.is_active:
        raise Unauthenticated("Account is not active")
    return account
