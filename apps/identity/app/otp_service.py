"""Phone OTP issuance and verification.

A challenge moves ``pending -> verified | expired | locked``. Expired and
verified challenges can be re-issued; a locked one blocks issuance until its
lockout window has passed. Every read-check-write for a (phone, purpose) runs
under a per-key lock inside one database transaction, and delivery happens
only after the challenge has been committed.
"""
from __future__ import annotations

import logging
import math
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterator, Optional

from prometheus_client import Counter
from sqlalchemy.orm import Session, sessionmaker

from ride_shared import (
    DEFAULT_PHONE_RULES,
    OtpSecret,
    PhoneRules,
    PhoneValidationError,
    generate_otp_secret,
    mask_phone,
    normalize_phone,
    otp_digest_matches,
)

from .accounts import AccountActivator, ensure_pending_account, find_account_by_phone
from .clock import Clock, SystemClock
from .database import session_scope
from .delivery import DeliveryGateway, build_delivery_gateway, build_send_failure_fallback
from .errors import (
    DeliveryError,
    DeliveryRateLimited,
    Expired,
    IdentityError,
    InvalidCode,
    Locked,
    NotFound,
    RateLimited,
    ValidationError,
)
from .models import OTP_LOCKED, OTP_PENDING, OTP_EXPIRED, OTP_VERIFIED, Account, OtpChallenge
from .otp_policy import OtpPolicy
from .otp_store import KeyedLock, SqlOtpStore
from .tokens import TokenIssuer

logger = logging.getLogger("identity.otp")

OTP_EVENTS = Counter("identity_otp_events_total", "OTP lifecycle events", ["event"])


@dataclass(frozen=True)
class OtpIssued:
    phone: str
    expires_in: int
    channel: str


@dataclass(frozen=True)
class VerificationResult:
    account: Account
    token: str
    expires_in: int


def _seconds_until(later: datetime, now: datetime) -> int:
    return max(1, int(math.ceil((later - now).total_seconds())))


class OtpService:
    def __init__(
        self,
        session_factory: sessionmaker,
        store: SqlOtpStore,
        gateway: DeliveryGateway,
        activator: AccountActivator,
        token_issuer: TokenIssuer,
        policy: OtpPolicy,
        clock: Optional[Clock] = None,
        fallback: Optional[DeliveryGateway] = None,
        phone_rules: PhoneRules = DEFAULT_PHONE_RULES,
    ) -> None:
        self._session_factory = session_factory
        self._store = store
        self._gateway = gateway
        self._activator = activator
        self._tokens = token_issuer
        self._policy = policy
        self._clock = clock or SystemClock()
        self._fallback = fallback
        self._phone_rules = phone_rules
        self._locks = KeyedLock()

    @property
    def policy(self) -> OtpPolicy:
        return self._policy

    @property
    def gateway(self) -> DeliveryGateway:
        return self._gateway

    @property
    def token_issuer(self) -> TokenIssuer:
        return self._tokens

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        # Domain errors keep the state they recorded; anything else rolls back.
        db = self._session_factory()
        try:
            yield db
        except IdentityError:
            db.commit()
            raise
        except Exception:
            db.rollback()
            raise
        else:
            db.commit()
        finally:
            db.close()

    def normalize(self, raw_phone) -> str:
        try:
            return normalize_phone(raw_phone, self._phone_rules)
        except PhoneValidationError as exc:
            raise ValidationError(str(exc), field="phone") from None

    def _check_code_format(self, code) -> str:
        length = self._policy.code_length
        if not isinstance(code, str) or len(code.strip()) != length or not code.strip().isdigit():
            raise ValidationError(f"OTP must be {length} digits", field="otp")
        return code.strip()

    # Issuance

    def _check_issuance_allowed(self, existing: Optional[OtpChallenge], now: datetime) -> None:
        if existing is None:
            return
        if existing.status == OTP_LOCKED and existing.locked_until and existing.locked_until > now:
            OTP_EVENTS.labels("rate_limited").inc()
            raise RateLimited(
                "Too many failed attempts. Try again later.",
                retry_after=_seconds_until(existing.locked_until, now),
            )
        if existing.status == OTP_PENDING and self._policy.min_interval_secs:
            next_allowed = existing.issued_at + timedelta(seconds=self._policy.min_interval_secs)
            if now < next_allowed:
                OTP_EVENTS.labels("rate_limited").inc()
                raise RateLimited(
                    "OTP requested too frequently. Please wait before retrying.",
                    retry_after=_seconds_until(next_allowed, now),
                )

    def _issue(self, db: Session, phone: str, purpose: str, reference_id: str) -> OtpSecret:
        now = self._clock.now()
        self._check_issuance_allowed(self._store.find_by_tuple(db, phone, purpose, for_update=True), now)
        secret = generate_otp_secret(self._policy.code_length, self._policy.pepper)
        self._store.upsert_pending(
            db,
            phone=phone,
            purpose=purpose,
            reference_id=reference_id,
            digest=secret.digest,
            issued_at=now,
            expires_at=now + timedelta(seconds=self._policy.ttl_secs),
            max_attempts=self._policy.max_attempts,
            channel=self._gateway.name,
            on_conflict=lambda winner: self._check_issuance_allowed(winner, now),
        )
        OTP_EVENTS.labels("issued").inc()
        logger.info("Issued OTP for %s (%s)", mask_phone(phone), purpose)
        return secret

    def _emit_fallback(self, phone: str, code: str) -> None:
        if self._fallback is None:
            return
        try:
            self._fallback.send(phone, code, self._policy.ttl_secs)
        except Exception:
            logger.exception("Fallback delivery failed for %s", mask_phone(phone))
            return
        OTP_EVENTS.labels("fallback_used").inc()

    def _deliver(self, phone: str, secret: OtpSecret) -> OtpIssued:
        ttl = self._policy.ttl_secs
        try:
            receipt = self._gateway.send(phone, secret.plaintext, ttl)
        except DeliveryRateLimited as exc:
            OTP_EVENTS.labels("delivery_failed").inc()
            logger.warning("OTP delivery to %s throttled by provider", mask_phone(phone))
            self._emit_fallback(phone, secret.plaintext)
            raise RateLimited("SMS provider is throttling requests", retry_after=exc.retry_after) from exc
        except DeliveryError as exc:
            OTP_EVENTS.labels("delivery_failed").inc()
            logger.warning("OTP delivery to %s failed via %s: %s", mask_phone(phone), self._gateway.name, exc.message)
            self._emit_fallback(phone, secret.plaintext)
            raise DeliveryError() from exc
        except Exception as exc:
            OTP_EVENTS.labels("delivery_failed").inc()
            logger.exception("OTP gateway %s raised for %s", self._gateway.name, mask_phone(phone))
            self._emit_fallback(phone, secret.plaintext)
            raise DeliveryError() from exc
        OTP_EVENTS.labels("delivered").inc()
        return OtpIssued(phone=phone, expires_in=receipt.expires_in or ttl, channel=self._gateway.name)

    def request_otp(self, phone: str, purpose: str, reference_id: str) -> OtpIssued:
        with self._locks.hold((phone, purpose)):
            with self._transaction() as db:
                secret = self._issue(db, phone, purpose, reference_id)
        return self._deliver(phone, secret)

    # Verification

    def _lock(self, db: Session, challenge: OtpChallenge, now: datetime) -> Locked:
        locked_until = now + timedelta(seconds=self._policy.lockout_secs)
        self._store.mark_status(db, challenge, OTP_LOCKED, locked_until=locked_until)
        OTP_EVENTS.labels("locked").inc()
        logger.warning("OTP for %s locked until %s", mask_phone(challenge.phone), locked_until.isoformat())
        return Locked(retry_after=self._policy.lockout_secs or None)

    def _verify(self, db: Session, phone: str, purpose: str, reference_id: str, code: str) -> Account:
        now = self._clock.now()
        challenge = self._store.find(db, phone, purpose, reference_id, for_update=True)
        if challenge is None:
            raise NotFound("No pending OTP for this phone")
        if challenge.status == OTP_LOCKED:
            if challenge.locked_until and challenge.locked_until > now:
                raise Locked(retry_after=_seconds_until(challenge.locked_until, now))
            raise NotFound("No pending OTP for this phone")
        if challenge.status != OTP_PENDING:
            raise NotFound("No pending OTP for this phone")
        if now >= challenge.expires_at:
            self._store.mark_status(db, challenge, OTP_EXPIRED)
            OTP_EVENTS.labels("expired").inc()
            raise Expired()
        if challenge.attempts >= challenge.max_attempts:
            raise self._lock(db, challenge, now)

        if not otp_digest_matches(code, challenge.secret_digest, self._policy.pepper):
            attempts = self._store.increment_attempts(db, challenge)
            OTP_EVENTS.labels("invalid_code").inc()
            if attempts is None:
                # lost the race to another verification of the same challenge
                if challenge.status == OTP_LOCKED:
                    raise Locked(retry_after=self._policy.lockout_secs or None)
                raise NotFound("No pending OTP for this phone")
            if attempts >= challenge.max_attempts:
                raise self._lock(db, challenge, now)
            raise InvalidCode(attempts_remaining=challenge.attempts_remaining)

        # the account must resolve before the challenge is consumed
        account = self._activator.activate(db, reference_id, now)
        self._store.mark_status(db, challenge, OTP_VERIFIED)
        self._store.delete(db, challenge)
        OTP_EVENTS.labels("verified").inc()
        logger.info("Verified OTP for %s", mask_phone(phone))
        return account

    def verify_otp(self, phone: str, purpose: str, reference_id: str, code: str) -> Account:
        code = self._check_code_format(code)
        with self._locks.hold((phone, purpose)):
            with self._transaction() as db:
                return self._verify(db, phone, purpose, reference_id, code)

    # Account-level flows

    def start_verification(self, raw_phone) -> OtpIssued:
        phone = self.normalize(raw_phone)
        purpose = self._policy.purpose
        with self._locks.hold((phone, purpose)):
            with self._transaction() as db:
                account = ensure_pending_account(db, phone, self._clock.now())
                secret = self._issue(db, phone, purpose, str(account.id))
        return self._deliver(phone, secret)

    def complete_verification(self, raw_phone, code) -> VerificationResult:
        phone = self.normalize(raw_phone)
        code = self._check_code_format(code)
        purpose = self._policy.purpose
        with self._locks.hold((phone, purpose)):
            with self._transaction() as db:
                account = find_account_by_phone(db, phone)
                if account is None:
                    raise NotFound("Account not found")
                account = self._verify(db, phone, purpose, str(account.id), code)
        issued = self._tokens.issue(account)
        return VerificationResult(account=account, token=issued.token, expires_in=issued.expires_in)

    def purge_stale(self) -> int:
        with session_scope(self._session_factory) as db:
            removed = self._store.purge(db, self._clock.now())
        if removed:
            logger.info("Purged %d stale OTP challenges", removed)
        return removed


def build_otp_service(settings, session_factory: sessionmaker, clock: Optional[Clock] = None) -> OtpService:
    clock = clock or SystemClock()
    gateway = build_delivery_gateway(settings)
    return OtpService(
        session_factory=session_factory,
        store=SqlOtpStore(),
        gateway=gateway,
        activator=AccountActivator(),
        token_issuer=TokenIssuer(settings.JWT_SECRETS, settings.jwt_expires_delta, clock),
        policy=settings.otp_policy,
        clock=clock,
        fallback=build_send_failure_fallback(settings, gateway),
        phone_rules=settings.phone_rules,
    )
