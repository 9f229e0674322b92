"""Loyalty service exports."""

from .cycle import (  # noqa: F401
    CyclePosition,
    annual_reset_due,
    cycle_position,
    expiry_due,
    is_birthday,
)
from .ledger import (  # noqa: F401
    BIRTHDAY_REWARD_MESSAGE,
    BIRTHDAY_REWARD_TITLE,
    LedgerAudit,
    LoyaltyLedgerService,
    points_for_total,
)
