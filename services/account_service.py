"""Access to the account mirror: profile fields and denormalized subscription flags."""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from models.account import Account
from services.billing_errors import NotFoundError

logger = logging.getLogger(__name__)


def get_account(db: Session, account_id: str) -> Account:
    account = db.get(Account, account_id, populate_existing=True)
    if account is None:
        raise NotFoundError(f"Account {account_id} was not found.", code="billing.account_not_found")
    return account


def find_account_by_customer(db: Session, customer_id: str) -> Optional[Account]:
    return db.execute(select(Account).where(Account.processor_customer_id == customer_id)).scalar_one_or_none()


def claim_processor_customer_id(db: Session, account_id: str, customer_id: str) -> str:
    """Persist ``customer_id`` unless another request already stored one; return the winner."""
    result = db.execute(
        update(Account)
        .where(Account.id == account_id, Account.processor_customer_id.is_(None))
        .values(processor_customer_id=customer_id)
    )
    if result.rowcount:
        return customer_id
    existing = db.execute(select(Account.processor_customer_id).where(Account.id == account_id)).scalar_one_or_none()
    if existing and existing != customer_id:
        logger.warning(
            "Account %s already has processor customer %s; discarding %s.",
            account_id,
            existing,
            customer_id,
        )
    return existing or customer_id


def sync_subscription_flags(db: Session, account_id: str, *, tier: str, has_active_subscription: bool) -> bool:
    """Write the denormalized tier/active flags; returns False when the account is not mirrored."""
    result = db.execute(
        update(Account)
        .where(Account.id == account_id)
        .values(subscription_tier=tier, has_active_subscription=has_active_subscription)
    )
    if not result.rowcount:
        logger.info("Account %s is not mirrored locally; skipped flag sync.", account_id)
        return False
    return True


__all__ = [
    "claim_processor_customer_id",
    "find_account_by_customer",
    "get_account",
    "sync_subscription_flags",
]
