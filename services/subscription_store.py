"""Persistence for subscription records, invoices and payment methods.

Every write to ``subscription_records`` goes through a single SQL statement
(``INSERT .. ON CONFLICT DO UPDATE`` or a guarded ``UPDATE``) so concurrent
webhooks, user requests and background checks never lose each other's
changes. The denormalized account flags are written in the same transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, TypeVar

from sqlalchemy import and_, case, delete, or_, select, update
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

import database
from core.clock import ensure_utc, month_start, utcnow
from core.plan_constants import BillingSource, PlanTier, SubscriptionStatus
from models.account import Account
from models.subscription import Invoice, PaymentMethod, SubscriptionRecord
from services import account_service
from services.billing_errors import InvalidInputError, NotFoundError
from services.db_utils import dialect_insert
from services.plan_catalog_service import UNLIMITED, free_features
from services.subscription_state import is_entitled, validate_changes

logger = logging.getLogger(__name__)

T = TypeVar("T")

_records = SubscriptionRecord.__table__

USAGE_COLUMNS = ("boosts_used_this_month", "gig_applications_this_month", "media_uploads_this_month")


@dataclass(frozen=True)
class UsageCounter:
    name: str
    column: str
    limit_key: str


USAGE_COUNTERS: Dict[str, UsageCounter] = {
    "boosts": UsageCounter("boosts", "boosts_used_this_month", "max_profile_boosts"),
    "gig_applications": UsageCounter("gig_applications", "gig_applications_this_month", "max_gig_applications"),
    "media_uploads": UsageCounter("media_uploads", "media_uploads_this_month", "max_media_uploads"),
}
_COUNTER_ALIASES = {
    "profileBoosts": "boosts",
    "gigApplications": "gig_applications",
    "mediaUploads": "media_uploads",
}


def resolve_counter(name: str) -> UsageCounter:
    key = _COUNTER_ALIASES.get(name, name)
    counter = USAGE_COUNTERS.get(key)
    if counter is None:
        raise InvalidInputError(f"Unknown usage counter '{name}'.", code="billing.unknown_counter")
    return counter


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


def commit(db: Session, *, context: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to commit billing change (%s).", context)
        raise


def run_transaction(
    operation: Callable[[Session], T],
    *,
    context: str,
    attempts: int = 3,
    session_factory: Optional[database.SessionFactory] = None,
) -> T:
    """Run ``operation`` in its own session, retrying transient database errors."""
    if attempts < 1:
        raise ValueError(f"attempts must be at least 1 for {context}.")
    factory = session_factory or database.SessionLocal
    attempt = 0
    while True:
        attempt += 1
        db = factory()
        try:
            result = operation(db)
            db.commit()
            return result
        except OperationalError as exc:
            db.rollback()
            if attempt >= attempts:
                logger.error(
                    "billing.inconsistent: %s did not commit after %d attempts; operator reconciliation required.",
                    context,
                    attempts,
                    extra={"billing": {"context": context, "attempts": attempts}},
                )
                raise
            logger.warning("Transient database error during %s (attempt %d/%d): %s", context, attempt, attempts, exc)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


# ---------------------------------------------------------------------------
# Subscription records
# ---------------------------------------------------------------------------


def get_record(db: Session, account_id: str) -> Optional[SubscriptionRecord]:
    statement = (
        select(SubscriptionRecord)
        .where(SubscriptionRecord.account_id == account_id)
        .execution_options(populate_existing=True)
    )
    return db.execute(statement).scalar_one_or_none()


def require_record(db: Session, account_id: str) -> SubscriptionRecord:
    record = get_record(db, account_id)
    if record is None:
        raise NotFoundError("No subscription found for this account.", code="billing.subscription_not_found")
    return record


def find_by_processor_subscription(db: Session, subscription_id: str) -> Optional[SubscriptionRecord]:
    statement = (
        select(SubscriptionRecord)
        .where(SubscriptionRecord.processor_subscription_id == subscription_id)
        .execution_options(populate_existing=True)
    )
    return db.execute(statement).scalar_one_or_none()


def find_by_customer(db: Session, customer_id: str) -> Optional[SubscriptionRecord]:
    statement = (
        select(SubscriptionRecord)
        .where(SubscriptionRecord.processor_customer_id == customer_id)
        .order_by(SubscriptionRecord.updated_at.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    record = db.execute(statement).scalar_one_or_none()
    if record is not None:
        return record
    account = account_service.find_account_by_customer(db, customer_id)
    if account is None:
        return None
    return get_record(db, account.id)


def _usage_reset_condition(changes: Mapping[str, Any]):
    conditions = []
    if "tier" in changes:
        conditions.append(_records.c.tier != changes["tier"])
    period_start = changes.get("current_period_start")
    if period_start is not None:
        conditions.append(
            or_(
                _records.c.current_period_start.is_(None),
                _records.c.current_period_start != period_start,
            )
        )
    if not conditions:
        return None
    return or_(*conditions)


def _update_values(changes: Mapping[str, Any], now: datetime) -> Dict[str, Any]:
    values: Dict[str, Any] = dict(changes)
    values["updated_at"] = now
    reset = _usage_reset_condition(changes)
    if reset is not None:
        # SET expressions read the pre-update row, so the comparison sees the old tier/period.
        for column in USAGE_COLUMNS:
            values[column] = case((reset, 0), else_=_records.c[column])
        values["usage_period_start"] = case((reset, now), else_=_records.c.usage_period_start)
    return values


def _baseline_values(account_id: str, now: datetime) -> Dict[str, Any]:
    values: Dict[str, Any] = {
        "account_id": account_id,
        "tier": PlanTier.FREE.value,
        "status": SubscriptionStatus.CANCELED.value,
        "features": free_features(),
        "is_yearly_billing": False,
        "cancel_at_period_end": False,
        "usage_period_start": now,
        "created_at": now,
        "updated_at": now,
    }
    for column in USAGE_COLUMNS:
        values[column] = 0
    return values


def _sync_account(db: Session, record: SubscriptionRecord) -> None:
    account_service.sync_subscription_flags(
        db,
        record.account_id,
        tier=record.tier,
        has_active_subscription=is_entitled(record.status, record.tier),
    )


def upsert_record(
    db: Session,
    account_id: str,
    changes: Mapping[str, Any],
    *,
    now: Optional[datetime] = None,
) -> SubscriptionRecord:
    """Apply ``changes`` to the account's record, creating it when absent."""
    validate_changes(changes)
    now = now or utcnow()
    insert_values = _baseline_values(account_id, now)
    insert_values.update(changes)
    insert = dialect_insert(db)
    statement = insert(SubscriptionRecord).values(**insert_values)
    statement = statement.on_conflict_do_update(
        index_elements=[SubscriptionRecord.account_id],
        set_=_update_values(changes, now),
    )
    db.execute(statement)
    record = require_record(db, account_id)
    _sync_account(db, record)
    logger.info(
        "Subscription record upserted.",
        extra={"subscription": {"account_id": account_id, "status": record.status, "tier": record.tier}},
    )
    return record


def update_record(
    db: Session,
    account_id: str,
    changes: Mapping[str, Any],
    *,
    conditions: Sequence[Any] = (),
    now: Optional[datetime] = None,
) -> Optional[SubscriptionRecord]:
    """Apply ``changes`` only when the record exists and ``conditions`` hold; ``None`` otherwise."""
    validate_changes(changes)
    now = now or utcnow()
    clauses = [_records.c.account_id == account_id, *conditions]
    if changes.get("status") in (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value) and "tier" not in changes:
        clauses.append(_records.c.tier != PlanTier.FREE.value)
    result = db.execute(update(_records).where(*clauses).values(**_update_values(changes, now)))
    if not result.rowcount:
        return None
    record = require_record(db, account_id)
    _sync_account(db, record)
    return record


def ensure_record(db: Session, account_id: str, *, now: Optional[datetime] = None) -> SubscriptionRecord:
    """Create the free baseline record if the account has none."""
    now = now or utcnow()
    insert = dialect_insert(db)
    statement = (
        insert(SubscriptionRecord)
        .values(**_baseline_values(account_id, now))
        .on_conflict_do_nothing(index_elements=[SubscriptionRecord.account_id])
    )
    db.execute(statement)
    return require_record(db, account_id)


def is_iap_record(record: SubscriptionRecord) -> bool:
    return record.billing_source in (BillingSource.APPLE.value, BillingSource.GOOGLE.value)


# ---------------------------------------------------------------------------
# Usage counters
# ---------------------------------------------------------------------------


def usage_window_start(record: Optional[SubscriptionRecord], now: datetime) -> datetime:
    """Start of the period the usage counters belong to."""
    if record is not None and is_entitled(record.status, record.tier):
        start = ensure_utc(record.current_period_start)
        end = ensure_utc(record.current_period_end)
        if start is not None and start <= now and (end is None or end > now):
            return start
    return month_start(now)


def read_usage(record: Optional[SubscriptionRecord], counter: UsageCounter, *, now: Optional[datetime] = None) -> int:
    if record is None:
        return 0
    now = now or utcnow()
    started = ensure_utc(record.usage_period_start)
    if started is None or started < usage_window_start(record, now):
        return 0
    return int(getattr(record, counter.column) or 0)


def increment_usage(
    db: Session,
    account_id: str,
    counter: UsageCounter,
    *,
    amount: int,
    limit: int,
    now: Optional[datetime] = None,
) -> Optional[int]:
    """Atomically add ``amount`` unless it would exceed ``limit``; returns the new value or ``None``."""
    if amount <= 0:
        raise InvalidInputError("Usage amount must be positive.")
    now = now or utcnow()
    record = ensure_record(db, account_id, now=now)
    window = usage_window_start(record, now)

    reset_values: Dict[str, Any] = {column: 0 for column in USAGE_COLUMNS}
    reset_values["usage_period_start"] = window
    db.execute(
        update(_records)
        .where(
            _records.c.account_id == account_id,
            or_(_records.c.usage_period_start.is_(None), _records.c.usage_period_start < window),
        )
        .values(**reset_values)
    )

    column = _records.c[counter.column]
    clauses = [_records.c.account_id == account_id]
    if limit != UNLIMITED:
        clauses.append(column + amount <= limit)
    result = db.execute(update(_records).where(*clauses).values({counter.column: column + amount, "updated_at": now}))
    if not result.rowcount:
        return None
    return int(db.execute(select(column).where(_records.c.account_id == account_id)).scalar_one())


# ---------------------------------------------------------------------------
# Sweeps
# ---------------------------------------------------------------------------


def lapsed_condition(now: datetime):
    """Soft cancel, processor-less trial or app-store period that has run past its end."""
    return and_(
        SubscriptionRecord.status != SubscriptionStatus.CANCELED.value,
        or_(
            and_(SubscriptionRecord.cancel_at_period_end.is_(True), SubscriptionRecord.current_period_end <= now),
            and_(
                SubscriptionRecord.status == SubscriptionStatus.TRIALING.value,
                SubscriptionRecord.billing_source == BillingSource.TRIAL.value,
                SubscriptionRecord.trial_end <= now,
            ),
            and_(
                SubscriptionRecord.billing_source.in_([BillingSource.APPLE.value, BillingSource.GOOGLE.value]),
                SubscriptionRecord.current_period_end <= now,
            ),
        ),
    )


def find_lapsed_records(db: Session, *, now: Optional[datetime] = None, limit: int = 500) -> List[SubscriptionRecord]:
    now = now or utcnow()
    statement = (
        select(SubscriptionRecord)
        .where(lapsed_condition(now))
        .order_by(SubscriptionRecord.current_period_end)
        .limit(limit)
    )
    return list(db.execute(statement).scalars())


def find_flag_drift(db: Session, *, limit: int = 500) -> List[Tuple[SubscriptionRecord, Account]]:
    statement = (
        select(SubscriptionRecord, Account)
        .join(Account, Account.id == SubscriptionRecord.account_id)
        .order_by(SubscriptionRecord.updated_at.desc())
    )
    drifted: List[Tuple[SubscriptionRecord, Account]] = []
    for record, account in db.execute(statement):
        expected_active = is_entitled(record.status, record.tier)
        if account.subscription_tier != record.tier or bool(account.has_active_subscription) != expected_active:
            drifted.append((record, account))
            if len(drifted) >= limit:
                break
    return drifted


def resync_account_flags(db: Session, record: SubscriptionRecord) -> None:
    _sync_account(db, record)


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


def record_invoice(
    db: Session,
    *,
    account_id: str,
    external_invoice_id: str,
    amount: int,
    amount_paid: int,
    currency: str = "usd",
    status: str = "paid",
    paid_at: Optional[datetime] = None,
    processor_subscription_id: Optional[str] = None,
    period_start: Optional[datetime] = None,
    period_end: Optional[datetime] = None,
) -> bool:
    """Append an invoice; returns False when the external id was already recorded."""
    if amount < 0 or amount_paid < 0:
        raise InvalidInputError("Invoice amounts cannot be negative.")
    insert = dialect_insert(db)
    statement = (
        insert(Invoice)
        .values(
            account_id=account_id,
            external_invoice_id=external_invoice_id,
            processor_subscription_id=processor_subscription_id,
            amount=amount,
            amount_paid=amount_paid,
            currency=currency,
            status=status,
            paid_at=paid_at,
            period_start=period_start,
            period_end=period_end,
            created_at=utcnow(),
        )
        .on_conflict_do_nothing(index_elements=[Invoice.external_invoice_id])
    )
    result = db.execute(statement)
    inserted = bool(result.rowcount)
    if not inserted:
        logger.info("Invoice %s already recorded; skipping.", external_invoice_id)
    return inserted


def list_invoices(db: Session, account_id: str, *, page: int = 1, limit: int = 10) -> Tuple[List[Invoice], bool]:
    if page < 1 or limit < 1:
        raise InvalidInputError("Page and limit must be positive.")
    statement = (
        select(Invoice)
        .where(Invoice.account_id == account_id)
        .order_by(Invoice.created_at.desc(), Invoice.external_invoice_id)
        .offset((page - 1) * limit)
        .limit(limit + 1)
    )
    rows = list(db.execute(statement).scalars())
    return rows[:limit], len(rows) > limit


# ---------------------------------------------------------------------------
# Payment methods
# ---------------------------------------------------------------------------


def list_payment_methods(db: Session, account_id: str) -> List[PaymentMethod]:
    statement = (
        select(PaymentMethod)
        .where(PaymentMethod.account_id == account_id)
        .order_by(PaymentMethod.is_default.desc(), PaymentMethod.created_at.desc())
        .execution_options(populate_existing=True)
    )
    return list(db.execute(statement).scalars())


def get_payment_method(db: Session, account_id: str, external_id: str) -> PaymentMethod:
    statement = (
        select(PaymentMethod)
        .where(PaymentMethod.account_id == account_id, PaymentMethod.external_payment_method_id == external_id)
        .execution_options(populate_existing=True)
    )
    method = db.execute(statement).scalar_one_or_none()
    if method is None:
        raise NotFoundError("Payment method not found.", code="billing.payment_method_not_found")
    return method


def save_payment_method(
    db: Session,
    *,
    account_id: str,
    external_id: str,
    method_type: str,
    brand: Optional[str],
    last4: Optional[str],
    exp_month: Optional[int],
    exp_year: Optional[int],
    make_default: bool,
) -> PaymentMethod:
    insert = dialect_insert(db)
    details = {"type": method_type, "brand": brand, "last4": last4, "exp_month": exp_month, "exp_year": exp_year}
    statement = (
        insert(PaymentMethod)
        .values(account_id=account_id, external_payment_method_id=external_id, is_default=False, created_at=utcnow(), **details)
        .on_conflict_do_update(index_elements=[PaymentMethod.external_payment_method_id], set_=details)
    )
    db.execute(statement)
    if make_default:
        return set_default_payment_method(db, account_id, external_id)
    return get_payment_method(db, account_id, external_id)


def set_default_payment_method(db: Session, account_id: str, external_id: str) -> PaymentMethod:
    method = get_payment_method(db, account_id, external_id)
    # Clear first so the one-default-per-account index never sees two defaults.
    db.execute(
        update(PaymentMethod)
        .where(
            PaymentMethod.account_id == account_id,
            PaymentMethod.is_default.is_(True),
            PaymentMethod.id != method.id,
        )
        .values(is_default=False)
    )
    db.execute(update(PaymentMethod).where(PaymentMethod.id == method.id).values(is_default=True))
    return get_payment_method(db, account_id, external_id)


def delete_payment_method(db: Session, account_id: str, external_id: str) -> None:
    method = get_payment_method(db, account_id, external_id)
    db.execute(delete(PaymentMethod).where(PaymentMethod.id == method.id))


__all__ = [
    "USAGE_COUNTERS",
    "UsageCounter",
    "commit",
    "delete_payment_method",
    "ensure_record",
    "find_by_customer",
    "find_by_processor_subscription",
    "find_flag_drift",
    "find_lapsed_records",
    "get_payment_method",
    "get_record",
    "increment_usage",
    "is_iap_record",
    "lapsed_condition",
    "list_invoices",
    "list_payment_methods",
    "read_usage",
    "record_invoice",
    "require_record",
    "resolve_counter",
    "resync_account_flags",
    "run_transaction",
    "save_payment_method",
    "set_default_payment_method",
    "update_record",
    "upsert_record",
    "usage_window_start",
]
