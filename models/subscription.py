from __future__ import annotations

import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, Index, Integer, String, func, text
from sqlalchemy.dialects.postgresql import UUID

from database import Base


class SubscriptionRecord(Base):
    """One row per account; the subscription state machine instance."""

    __tablename__ = "subscription_records"
    __table_args__ = {"extend_existing": True}

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(String(64), nullable=False, unique=True, index=True)
    tier = Column(String(16), nullable=False, default="free")
    status = Column(String(16), nullable=False, default="canceled", index=True)
    billing_source = Column(String(16), nullable=True)
    processor_subscription_id = Column(String(255), nullable=True, unique=True)
    processor_customer_id = Column(String(255), nullable=True, index=True)
    is_yearly_billing = Column(Boolean, nullable=False, default=False)
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True, index=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    trial_start = Column(DateTime(timezone=True), nullable=True)
    trial_end = Column(DateTime(timezone=True), nullable=True)
    features = Column(JSON, nullable=False, default=dict)
    boosts_used_this_month = Column(Integer, nullable=False, default=0)
    gig_applications_this_month = Column(Integer, nullable=False, default=0)
    media_uploads_this_month = Column(Integer, nullable=False, default=0)
    usage_period_start = Column(DateTime(timezone=True), nullable=True)
    last_processor_event_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class Invoice(Base):
    """Append-only ledger of successful payments."""

    __tablename__ = "invoices"
    __table_args__ = {"extend_existing": True}

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(String(64), nullable=False, index=True)
    external_invoice_id = Column(String(255), nullable=False, unique=True)
    processor_subscription_id = Column(String(255), nullable=True)
    amount = Column(Integer, nullable=False, default=0)
    amount_paid = Column(Integer, nullable=False, default=0)
    currency = Column(String(8), nullable=False, default="usd")
    status = Column(String(16), nullable=False, default="paid")
    paid_at = Column(DateTime(timezone=True), nullable=True)
    period_start = Column(DateTime(timezone=True), nullable=True)
    period_end = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), index=True)


class PaymentMethod(Base):
    __tablename__ = "payment_methods"
    __table_args__ = (
        Index(
            "uq_payment_methods_account_default",
            "account_id",
            unique=True,
            postgresql_where=text("is_default"),
            sqlite_where=text("is_default = 1"),
        ),
        {"extend_existing": True},
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(String(64), nullable=False, index=True)
    external_payment_method_id = Column(String(255), nullable=False, unique=True)
    type = Column(String(32), nullable=False, default="card")
    brand = Column(String(32), nullable=True)
    last4 = Column(String(4), nullable=True)
    exp_month = Column(Integer, nullable=True)
    exp_year = Column(Integer, nullable=True)
    is_default = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
