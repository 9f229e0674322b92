from enum import Enum

from sqlalchemy import Column, DateTime, Enum as SqlEnum, ForeignKey, Index, Integer, JSON, Numeric, String, Text, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from orderflow_api.db.base import Base
from ._time import utcnow


class OrderStatusEnum(str, Enum):
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    CONFIRMED = "CONFIRMED"
    PREPARING = "PREPARING"
    READY = "READY"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class FulfillmentMethodEnum(str, Enum):
    PICKUP = "PICKUP"
    DELIVERY = "DELIVERY"


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_status_created_at", "status", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    status = Column(
        SqlEnum(OrderStatusEnum, name="order_status_enum"),
        nullable=False,
        default=OrderStatusEnum.AWAITING_PAYMENT,
        server_default=OrderStatusEnum.AWAITING_PAYMENT.value,
    )
    total = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="EUR", server_default="EUR")
    checkout_id = Column(String, nullable=True, unique=True)
    fulfillment_method = Column(
        SqlEnum(FulfillmentMethodEnum, name="fulfillment_method_enum"),
        nullable=False,
        default=FulfillmentMethodEnum.PICKUP,
        server_default=FulfillmentMethodEnum.PICKUP.value,
    )
    delivery_address = Column(Text, nullable=True)
    order_code = Column(String(6), nullable=True)
    notes = Column(Text, nullable=True)
    decline_reason = Column(Text, nullable=True)
    driver_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    estimated_ready_at = Column(DateTime(timezone=True), nullable=True)
    ready_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow, server_default=func.now())

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
    )
    user = relationship("User", foreign_keys=[user_id])


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    menu_item_id = Column(Integer, nullable=True)
    name = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False, default=1, server_default="1")
    unit_price = Column(Numeric(10, 2), nullable=False)
    customizations = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())

    order = relationship("Order", back_populates="items")
