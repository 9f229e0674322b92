"""Loyalty job exports."""

from .cycle import LoyaltyCycleSummary, run_loyalty_cycle  # noqa: F401

__all__ = [
    "LoyaltyCycleSummary",
    "run_loyalty_cycle",
]
