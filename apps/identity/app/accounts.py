from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ride_shared import mask_phone

from .errors import NotFound
from .models import ACCOUNT_ACTIVE, ACCOUNT_PENDING, Account

logger = logging.getLogger("identity.accounts")


def find_account_by_phone(db: Session, phone: str) -> Optional[Account]:
    return db.execute(select(Account).where(Account.phone == phone)).scalar_one_or_none()


def get_account(db: Session, account_id) -> Optional[Account]:
    try:
        key = account_id if isinstance(account_id, uuid.UUID) else uuid.UUID(str(account_id))
    except ValueError:
        return None
    return db.get(Account, key)


def ensure_pending_account(db: Session, phone: str, now: datetime) -> Account:
    """Return the account for ``phone``, creating it as pending on first sight."""
    account = find_account_by_phone(db, phone)
    if account is not None:
        return account
    try:
        with db.begin_nested():
            account = Account(phone=phone, status=ACCOUNT_PENDING, created_at=now)
            db.add(account)
    except IntegrityError:
        account = find_account_by_phone(db, phone)
        if account is None:
            raise
        return account
    logger.info("Created pending account for %s", mask_phone(phone))
    return account


class AccountActivator:
    """The only writer of ``Account.status``: pending -> active, never back."""

    def activate(self, db: Session, account_id, now: datetime) -> Account:
        account = get_account(db, account_id)
        if account is None:
            raise NotFound("Account not found")
        result = db.execute(
            update(Account)
            .where(Account.id == account.id, Account.status == ACCOUNT_PENDING)
            .values(status=ACCOUNT_ACTIVE, activated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            db.refresh(account)
            logger.info("Activated account %s", account.id)
        return account
