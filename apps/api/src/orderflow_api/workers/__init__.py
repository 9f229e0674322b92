"""Background workers supporting async processing."""

from .loyalty_cycle import LoyaltyCycleScheduler

__all__ = [
    "LoyaltyCycleScheduler",
]
