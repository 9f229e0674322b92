"""Loyalty account and points ledger models."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from orderflow_api.db.base import Base
from ._time import utcnow


class LoyaltyTierEnum(str, Enum):
    BRONZE = "BRONZE"
    SILVER = "SILVER"
    GOLD = "GOLD"


class LedgerReasonEnum(str, Enum):
    """Reason codes recorded on every points movement."""

    ORDER_EARNED = "ORDER_EARNED"
    POINTS_EXPIRED_90_DAY_CYCLE = "POINTS_EXPIRED_90_DAY_CYCLE"


class LoyaltyAccount(Base):
    """Per-user points balance anchored to the user's registration date."""

    __tablename__ = "loyalty_accounts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    points = Column(Integer, nullable=False, default=0, server_default="0")
    tier = Column(
        SqlEnum(LoyaltyTierEnum, name="loyalty_tier_enum"),
        nullable=False,
        default=LoyaltyTierEnum.BRONZE,
        server_default=LoyaltyTierEnum.BRONZE.value,
    )
    total_spent_this_year = Column(Numeric(12, 2), nullable=False, default=0, server_default="0")
    registration_date = Column(Date, nullable=False)
    last_points_reset = Column(DateTime(timezone=True), nullable=True)
    last_annual_reset = Column(Date, nullable=True)
    birthday_reward_sent = Column(Boolean, nullable=False, default=False, server_default="false")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow, server_default=func.now())

    user = relationship("User", back_populates="loyalty_account")
    transactions = relationship(
        "LoyaltyTransaction",
        back_populates="account",
        order_by="LoyaltyTransaction.created_at",
    )


class LoyaltyTransaction(Base):
    """Append-only points movement; one ORDER_EARNED row per order at most."""

    __tablename__ = "loyalty_transactions"
    __table_args__ = (
        Index(
            "uq_loyalty_transactions_order_earned",
            "order_id",
            unique=True,
            postgresql_where=text("reason = 'ORDER_EARNED'"),
            sqlite_where=text("reason = 'ORDER_EARNED'"),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    account_id = Column(
        UUID(as_uuid=True),
        ForeignKey("loyalty_accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="SET NULL"), nullable=True)
    points = Column(Integer, nullable=False)
    reason = Column(SqlEnum(LedgerReasonEnum, name="loyalty_ledger_reason_enum"), nullable=False)
    details = Column(Text, nullable=True)
    source = Column(String(32), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())

    account = relationship("LoyaltyAccount", back_populates="transactions")
