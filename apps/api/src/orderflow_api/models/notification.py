from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, Enum as SqlEnum, ForeignKey, String, Text, func
from sqlalchemy.dialects.postgresql import UUID

from orderflow_api.db.base import Base
from ._time import utcnow


class NotificationStatusEnum(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class NotificationCategoryEnum(str, Enum):
    BIRTHDAY_REWARD = "BIRTHDAY_REWARD"
    ORDER_UPDATE = "ORDER_UPDATE"


class Notification(Base):
    """Notification record handed to the external push dispatcher."""

    __tablename__ = "notifications"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    category = Column(SqlEnum(NotificationCategoryEnum, name="notification_category_enum"), nullable=False)
    status = Column(
        SqlEnum(NotificationStatusEnum, name="notification_status_enum"),
        nullable=False,
        default=NotificationStatusEnum.PENDING,
        server_default=NotificationStatusEnum.PENDING.value,
    )
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())
    sent_at = Column(DateTime(timezone=True), nullable=True)
