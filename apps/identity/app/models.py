import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import declarative_base

from .clock import SystemClock


Base = declarative_base()


def default_uuid():
    return uuid.uuid4()


def utcnow() -> datetime:
    return SystemClock().now()


ACCOUNT_PENDING = "pending"
ACCOUNT_ACTIVE = "active"

OTP_PENDING = "pending"
OTP_VERIFIED = "verified"
OTP_EXPIRED = "expired"
OTP_LOCKED = "locked"


class Account(Base):
    __tablename__ = "accounts"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    phone = Column(String(32), nullable=False, unique=True, index=True)
    status = Column(String(16), nullable=False, default=ACCOUNT_PENDING)  # pending|active
    created_at = Column(DateTime, nullable=False, default=utcnow)
    activated_at = Column(DateTime, nullable=True)

    @property
    def is_active(self) -> bool:
        return self.status == ACCOUNT_ACTIVE


class OtpChallenge(Base):
    __tablename__ = "otp_challenges"
    __table_args__ = (
        UniqueConstraint("phone", "purpose", name="uq_otp_phone_purpose"),
        Index("ix_otp_expires_at", "expires_at"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    phone = Column(String(32), nullable=False)
    purpose = Column(String(64), nullable=False)
    reference_id = Column(String(64), nullable=False)
    secret_digest = Column(String(128), nullable=False)
    issued_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False)
    status = Column(String(16), nullable=False, default=OTP_PENDING)  # pending|verified|expired|locked
    locked_until = Column(DateTime, nullable=True)
    channel = Column(String(32), nullable=False, default="sms")
    version = Column(Integer, nullable=False, default=1)

    @property
    def attempts_remaining(self) -> int:
        return max(self.max_attempts - self.attempts, 0)
