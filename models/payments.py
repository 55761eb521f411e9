from __future__ import annotations

from sqlalchemy import JSON, Column, DateTime, String, Text, func

from database import Base


class ProcessedWebhookEvent(Base):
    """Idempotency ledger; the primary key is the processor's event id."""

    __tablename__ = "processed_webhook_events"
    __table_args__ = {"extend_existing": True}

    event_id = Column(String(255), primary_key=True)
    event_type = Column(String(128), nullable=False, index=True)
    result = Column(String(32), nullable=False, index=True)
    account_id = Column(String(64), nullable=True, index=True)
    error = Column(Text, nullable=True)
    payload = Column(JSON, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), index=True)


class BillingStateEntry(Base):
    """Durable key/value rows with expiry, used when Redis is not configured."""

    __tablename__ = "billing_state_entries"
    __table_args__ = {"extend_existing": True}

    key = Column(String(255), primary_key=True)
    value = Column(JSON, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
