from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, Date, DateTime, String, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from orderflow_api.db.base import Base
from ._time import utcnow


class UserRoleEnum(str, Enum):
    CUSTOMER = "CUSTOMER"
    ADMIN = "ADMIN"
    DRIVER = "DRIVER"


class User(Base):
    __tablename__ = "users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    email = Column(String, nullable=False, unique=True, index=True)
    display_name = Column(String, nullable=True)
    phone_number = Column(String(32), nullable=True)
    push_token = Column(String(256), nullable=True)
    role = Column(String(length=16), nullable=False, default=UserRoleEnum.CUSTOMER.value, server_default=UserRoleEnum.CUSTOMER.value)
    birth_date = Column(Date, nullable=True)
    registered_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow, server_default=func.now())

    loyalty_account = relationship("LoyaltyAccount", back_populates="user", uselist=False)
