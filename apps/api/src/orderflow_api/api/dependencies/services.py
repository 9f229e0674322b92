"""Providers for collaborators shared across requests."""

from __future__ import annotations

from fastapi import Request

from orderflow_api.core.settings import settings
from orderflow_api.db.session import async_session
from orderflow_api.services.checkout.locks import KeyedLock, get_checkout_lock
from orderflow_api.services.payments.gateway import SumUpGateway, get_default_gateway
from orderflow_api.workers import LoyaltyCycleScheduler


def get_payment_gateway() -> SumUpGateway:
    return get_default_gateway()


def get_keyed_lock() -> KeyedLock:
    return get_checkout_lock()


def get_loyalty_cycle_scheduler(request: Request) -> LoyaltyCycleScheduler:
    """Return the lifespan-managed scheduler, creating an unscheduled one on demand."""

    scheduler = getattr(request.app.state, "loyalty_cycle_scheduler", None)
    if scheduler is None:
        scheduler = LoyaltyCycleScheduler(
            session_factory=async_session,
            cron=settings.loyalty_cycle_cron,
            timezone=settings.loyalty_cycle_timezone,
        )
        request.app.state.loyalty_cycle_scheduler = scheduler
    return scheduler
