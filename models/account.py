from __future__ import annotations

from sqlalchemy import Boolean, Column, DateTime, String, func

from database import Base


class Account(Base):
    """Mirror of the platform account with the denormalized subscription fields."""

    __tablename__ = "accounts"
    __table_args__ = {"extend_existing": True}

    id = Column(String(64), primary_key=True)
    email = Column(String(320), nullable=True)
    full_name = Column(String(255), nullable=True)
    subscription_tier = Column(String(16), nullable=False, default="free", server_default="free")
    has_active_subscription = Column(Boolean, nullable=False, default=False, server_default="0")
    processor_customer_id = Column(String(255), nullable=True, unique=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
