from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Sequence

import jwt

from .clock import Clock, SystemClock
from .errors import Unauthenticated

TOKEN_TYPE_USER = "user"


def _ts(when: datetime) -> int:
    return calendar.timegm(when.utctimetuple())


def _from_ts(value: int) -> datetime:
    return datetime.fromtimestamp(value, timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: datetime
    expires_in: int


@dataclass(frozen=True)
class TokenClaims:
    account_id: str
    phone: str | None
    type: str
    verified: bool
    issued_at: datetime
    expires_at: datetime


class TokenIssuer:
    """Mints and checks HS256 bearer credentials.

    Signs with the first secret; verification accepts any configured secret
    so keys can be rotated without logging everyone out.
    """

    algorithm = "HS256"

    def __init__(self, secrets: Sequence[str], expires_in: timedelta, clock: Clock | None = None) -> None:
        if not secrets or not all(secrets):
            raise ValueError("At least one non-empty signing secret is required")
        if expires_in.total_seconds() <= 0:
            raise ValueError("Token lifetime must be positive")
        self._secrets = list(secrets)
        self._expires_in = expires_in
        self._clock = clock or SystemClock()

    def issue(self, account) -> IssuedToken:
        now = self._clock.now().replace(microsecond=0)
        expires_at = now + self._expires_in
        payload = {
            "sub": str(account.id),
            "phone": account.phone,
            "type": TOKEN_TYPE_USER,
            "verified": True,
            "iat": _ts(now),
            "exp": _ts(expires_at),
        }
        token = jwt.encode(payload, self._secrets[0], algorithm=self.algorithm)
        return IssuedToken(token=token, expires_at=expires_at, expires_in=int(self._expires_in.total_seconds()))

    def _decode(self, token: str) -> dict:
        options = {"require": ["exp", "iat", "sub"], "verify_exp": False, "verify_iat": False}
        last_err: Exception | None = None
        for secret in self._secrets:
            try:
                return jwt.decode(token, secret, algorithms=[self.algorithm], options=options)
            except jwt.InvalidSignatureError as exc:
                last_err = exc
            except jwt.InvalidTokenError:
                raise Unauthenticated("Invalid token") from None
        raise Unauthenticated("Invalid token") from last_err

    def verify(self, token: str) -> TokenClaims:
        if not token:
            raise Unauthenticated("Access token required")
        payload = self._decode(token)
        try:
            issued_at = _from_ts(int(payload["iat"]))
            expires_at = _from_ts(int(payload["exp"]))
        except (TypeError, ValueError):
            raise Unauthenticated("Invalid token payload") from None
        if self._clock.now() >= expires_at:
            raise Unauthenticated("Token expired")
        if payload.get("type") != TOKEN_TYPE_USER or payload.get("verified") is not True:
            raise Unauthenticated("Invalid token type")
        return TokenClaims(
            account_id=str(payload["sub"]),
            phone=payload.get("phone"),
            type=payload["type"],
            verified=True,
            issued_at=issued_at,
            expires_at=expires_at,
        )
