from __future__ import annotations

import threading
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Dict, Hashable, Iterator, Optional

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import OTP_EXPIRED, OTP_LOCKED, OTP_PENDING, OTP_VERIFIED, OtpChallenge


class KeyedLock:
    """One mutex per key, dropped again once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.Lock] = {}
        self._waiters: Dict[Hashable, int] = defaultdict(int)

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._waiters[key] += 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._waiters[key] -= 1
                if self._waiters[key] == 0:
                    del self._waiters[key]
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class SqlOtpStore:
    """Persistence for OTP challenges.

    One row per (phone, purpose): issuing a new challenge rewrites that row in
    place, so two live pending challenges for the same tuple cannot exist.
    Callers own the session and its transaction; every method only flushes.
    """

    def find(
        self,
        db: Session,
        phone: str,
        purpose: str,
        reference_id: str,
        *,
        for_update: bool = False,
    ) -> Optional[OtpChallenge]:
        stmt = select(OtpChallenge).where(
            OtpChallenge.phone == phone,
            OtpChallenge.purpose == purpose,
            OtpChallenge.reference_id == reference_id,
        )
        if for_update:
            stmt = stmt.with_for_update()
        return db.execute(stmt).scalar_one_or_none()

    def find_by_tuple(self, db: Session, phone: str, purpose: str, *, for_update: bool = False) -> Optional[OtpChallenge]:
        stmt = select(OtpChallenge).where(OtpChallenge.phone == phone, OtpChallenge.purpose == purpose)
        if for_update:
            stmt = stmt.with_for_update()
        return db.execute(stmt).scalar_one_or_none()

    def upsert_pending(
        self,
        db: Session,
        *,
        phone: str,
        purpose: str,
        reference_id: str,
        digest: str,
        issued_at: datetime,
        expires_at: datetime,
        max_attempts: int,
        channel: str,
        on_conflict: Optional[Callable[[OtpChallenge], None]] = None,
    ) -> OtpChallenge:
        """Write a fresh pending challenge for (phone, purpose).

        If a concurrent insert for the same tuple wins, ``on_conflict`` is
        called with the winning row before it is taken over and may raise to
        leave that row as it is.
        """
        if expires_at <= issued_at:
            raise ValueError("expires_at must be later than issued_at")
        fields = dict(
            reference_id=reference_id,
            secret_digest=digest,
            issued_at=issued_at,
            expires_at=expires_at,
            attempts=0,
            max_attempts=max_attempts,
            status=OTP_PENDING,
            locked_until=None,
            channel=channel,
        )
        existing = self.find_by_tuple(db, phone, purpose, for_update=True)
        if existing is None:
            try:
                with db.begin_nested():
                    challenge = OtpChallenge(phone=phone, purpose=purpose, version=1, **fields)
                    db.add(challenge)
                return challenge
            except IntegrityError:
                # another worker inserted the row first
                existing = self.find_by_tuple(db, phone, purpose, for_update=True)
                if existing is None:
                    raise
                if on_conflict is not None:
                    on_conflict(existing)
        for name, value in fields.items():
            setattr(existing, name, value)
        existing.version = (existing.version or 0) + 1
        db.flush()
        return existing

    def increment_attempts(self, db: Session, challenge: OtpChallenge) -> Optional[int]:
        """Count one failed check. Returns the new total, or None if the row
        was no longer pending or had already reached its ceiling."""
        result = db.execute(
            update(OtpChallenge)
            .where(
                OtpChallenge.id == challenge.id,
                OtpChallenge.status == OTP_PENDING,
                OtpChallenge.attempts < OtpChallenge.max_attempts,
            )
            .values(attempts=OtpChallenge.attempts + 1, version=OtpChallenge.version + 1)
            .execution_options(synchronize_session=False)
        )
        db.refresh(challenge)
        if result.rowcount != 1:
            return None
        return challenge.attempts

    def mark_status(
        self,
        db: Session,
        challenge: OtpChallenge,
        status: str,
        *,
        locked_until: Optional[datetime] = None,
    ) -> OtpChallenge:
        if status not in (OTP_PENDING, OTP_VERIFIED, OTP_EXPIRED, OTP_LOCKED):
            raise ValueError(f"Unknown OTP status {status!r}")
        challenge.status = status
        challenge.locked_until = locked_until if status == OTP_LOCKED else None
        challenge.version = (challenge.version or 0) + 1
        db.flush()
        return challenge

    def delete(self, db: Session, challenge: OtpChallenge) -> None:
        db.delete(challenge)
        db.flush()

    def purge(self, db: Session, now: datetime) -> int:
        result = db.execute(
            delete(OtpChallenge)
            .where(
                or_(
                    OtpChallenge.status.in_((OTP_VERIFIED, OTP_EXPIRED)),
                    and_(OtpChallenge.status == OTP_PENDING, OtpChallenge.expires_at <= now),
                    and_(OtpChallenge.status == OTP_LOCKED, OtpChallenge.locked_until <= now),
                )
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0
