"""SQLAlchemy models package."""

from .loyalty import LedgerReasonEnum, LoyaltyAccount, LoyaltyTierEnum, LoyaltyTransaction  # noqa: F401
from .notification import Notification, NotificationCategoryEnum, NotificationStatusEnum  # noqa: F401
from .order import FulfillmentMethodEnum, Order, OrderItem, OrderStatusEnum  # noqa: F401
from .user import User, UserRoleEnum  # noqa: F401
