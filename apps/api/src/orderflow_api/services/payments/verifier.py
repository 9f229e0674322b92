"""Reconcile local order state against the provider's authoritative checkout status."""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from orderflow_api.core.errors import InvalidTransition, OrderNotFound, PaymentProviderError
from orderflow_api.core.settings import Settings, settings
from orderflow_api.models.order import Order, OrderStatusEnum
from orderflow_api.observability.payments import get_payment_store
from orderflow_api.observability.tracing import get_tracer
from orderflow_api.services.loyalty.ledger import LoyaltyLedgerService, is_duplicate_order_award
from orderflow_api.services.orders.state_machine import OrderStateMachine
from .gateway import ProviderCheckout, SumUpGateway

tracer = get_tracer(__name__)


class PaymentVerifier:
    """Idempotent payment verification shared by client polling and provider webhooks.

    Verification takes no order-level lock: the status
    change is a compare-and-set from ``AWAITING_PAYMENT``, and the loyalty award
    checks for an existing ``ORDER_EARNED`` entry under the account row lock in
    the same transaction.
    """

    def __init__(
        self,
        session: AsyncSession,
        gateway: SumUpGateway,
        *,
        config: Settings = settings,
    ) -> None:
        self._session = session
        self._gateway = gateway
        self._config = config
        self._state_machine = OrderStateMachine(session)
        self._ledger = LoyaltyLedgerService(session)
        self._store = get_payment_store()

    async def verify_payment(self, order_id: int) -> Order:
        with tracer.start_as_current_span("payment.verify") as span:
            span.set_attribute("order.id", order_id)
            outcome = await self._reconcile(order_id)
            span.set_attribute("payment.outcome", outcome)

        if outcome == "paid" and self._config.auto_accept_orders:
            await self._auto_accept(order_id)
        return await self._load_order(order_id)

    async def _reconcile(self, order_id: int) -> str:
        order = await self._load_order(order_id)
        if order.status != OrderStatusEnum.AWAITING_PAYMENT or not order.checkout_id:
            self._store.record_verification("noop")
            return "noop"

        checkout_id = order.checkout_id
        user_id = order.user_id
        total = Decimal(order.total)
        # release the read transaction before the provider round-trip
        await self._session.commit()

        try:
            checkout = await self._gateway.get_checkout(checkout_id)
        except PaymentProviderError as exc:
            self._store.record_verification("error")
            logger.error(
                "Payment verification could not reach provider",
                order_id=order_id,
                checkout_id=checkout_id,
                error=str(exc),
                status_code=exc.status_code,
            )
            raise

        if checkout.is_paid:
            outcome = await self._confirm_payment(order_id, user_id, total, checkout)
        elif checkout.is_failed:
            outcome = await self._mark_failed(order_id, checkout)
        else:
            outcome = "pending"
        self._store.record_verification(outcome)
        logger.info(
            "Payment verified",
            order_id=order_id,
            checkout_id=checkout.id,
            provider_status=checkout.status,
            outcome=outcome,
        )
        return outcome

    async def _confirm_payment(
        self,
        order_id: int,
        user_id: UUID | None,
        total: Decimal,
        checkout: ProviderCheckout,
        *,
        attempts: int = 2,
    ) -> str:
        try:
            claimed = await self._state_machine.claim(
                order_id,
                expected=OrderStatusEnum.AWAITING_PAYMENT,
                target=OrderStatusEnum.PAYMENT_CONFIRMED,
            )
            if not claimed:
                await self._session.rollback()
                return "noop"
            if user_id is not None:
                await self._ledger.award_order_points(user_id=user_id, order_id=order_id, order_total=total)
            await self._session.commit()
        except IntegrityError as exc:
            await self._session.rollback()
            if is_duplicate_order_award(exc):
                logger.warning(
                    "Concurrent verification already recorded this payment",
                    order_id=order_id,
                    checkout_id=checkout.id,
                )
                return "noop"
            if attempts <= 1:
                raise
            # a concurrent first order may have opened the loyalty account
            logger.warning(
                "Retrying payment confirmation after integrity conflict",
                order_id=order_id,
                checkout_id=checkout.id,
                error=str(exc.orig),
            )
            return await self._confirm_payment(order_id, user_id, total, checkout, attempts=attempts - 1)
        except Exception:
            await self._session.rollback()
            raise
        return "paid"

    async def _mark_failed(self, order_id: int, checkout: ProviderCheckout) -> str:
        claimed = await self._state_machine.claim(
            order_id,
            expected=OrderStatusEnum.AWAITING_PAYMENT,
            target=OrderStatusEnum.PAYMENT_FAILED,
        )
        if not claimed:
            await self._session.rollback()
            return "noop"
        await self._session.commit()
        logger.warning("Payment failed at provider", order_id=order_id, provider_status=checkout.status)
        return "failed"

    async def _auto_accept(self, order_id: int) -> None:
        try:
            await self._state_machine.accept_order(order_id, self._config.auto_accept_estimated_minutes)
        except InvalidTransition as exc:
            logger.info("Auto-accept skipped", order_id=order_id, reason=str(exc))

    async def _load_order(self, order_id: int) -> Order:
        stmt = (
            select(Order)
            .options(selectinload(Order.items))
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        order = (await self._session.execute(stmt)).scalar_one_or_none()
        if order is None:
            raise OrderNotFound(order_id)
        return order


__all__ = ["PaymentVerifier"]
