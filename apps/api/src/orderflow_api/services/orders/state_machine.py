"""Order state machine for payment, kitchen, and delivery transitions."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable
from uuid import UUID

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from orderflow_api.core.errors import InvalidTransition, OrderNotFound
from orderflow_api.models.order import FulfillmentMethodEnum, Order, OrderStatusEnum

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStateMachine:
    """Validates and applies order status transitions."""

    _ALLOWED_TRANSITIONS: dict[OrderStatusEnum, set[OrderStatusEnum]] = {
        OrderStatusEnum.AWAITING_PAYMENT: {
            OrderStatusEnum.PAYMENT_CONFIRMED,
            OrderStatusEnum.PAYMENT_FAILED,
        },
        OrderStatusEnum.PAYMENT_CONFIRMED: {
            OrderStatusEnum.CONFIRMED,
            OrderStatusEnum.READY,
            OrderStatusEnum.CANCELLED,
        },
        OrderStatusEnum.CONFIRMED: {
            OrderStatusEnum.PREPARING,
            OrderStatusEnum.READY,
            OrderStatusEnum.CANCELLED,
        },
        OrderStatusEnum.PREPARING: {
            OrderStatusEnum.READY,
        },
        OrderStatusEnum.READY: {
            OrderStatusEnum.OUT_FOR_DELIVERY,
            OrderStatusEnum.DELIVERED,
        },
        OrderStatusEnum.OUT_FOR_DELIVERY: {
            OrderStatusEnum.DELIVERED,
        },
        OrderStatusEnum.PAYMENT_FAILED: set(),
        OrderStatusEnum.DELIVERED: set(),
        OrderStatusEnum.CANCELLED: set(),
    }

    _ESTIMATE_EDITABLE = {OrderStatusEnum.CONFIRMED, OrderStatusEnum.PREPARING}

    # Edges out of PAYMENT_CONFIRMED that only ``accept_order`` may take.
    _ACCEPT_ONLY = {
        (OrderStatusEnum.PAYMENT_CONFIRMED, OrderStatusEnum.CONFIRMED),
        (OrderStatusEnum.PAYMENT_CONFIRMED, OrderStatusEnum.READY),
    }

    def __init__(self, session: AsyncSession, *, clock: Clock | None = None) -> None:
        self._session = session
        self._clock = clock or _utcnow

    @classmethod
    def ensure_allowed(cls, current: OrderStatusEnum, target: OrderStatusEnum) -> None:
        if target not in cls._ALLOWED_TRANSITIONS.get(current, set()):
            raise InvalidTransition(current, target)

    @classmethod
    def _ensure_fulfillment(cls, order: Order, target: OrderStatusEnum) -> None:
        is_delivery = order.fulfillment_method == FulfillmentMethodEnum.DELIVERY
        if target == OrderStatusEnum.OUT_FOR_DELIVERY and not is_delivery:
            raise InvalidTransition(order.status, target, detail="pickup orders are collected, not dispatched")
        if order.status == OrderStatusEnum.PAYMENT_CONFIRMED and target == OrderStatusEnum.READY and not is_delivery:
            raise InvalidTransition(order.status, target, detail="pickup orders are confirmed before they are ready")
        if (
            target == OrderStatusEnum.DELIVERED
            and order.status == OrderStatusEnum.READY
            and is_delivery
        ):
            raise InvalidTransition(order.status, target, detail="delivery orders must be dispatched first")

    async def claim(self, order_id: int, *, expected: OrderStatusEnum, target: OrderStatusEnum) -> bool:
        """Compare-and-set the status inside the caller's transaction.

        Returns ``False`` when another writer already moved the order away from
        ``expected``. The caller owns the commit.
        """

        self.ensure_allowed(expected, target)
        stmt = (
            update(Order)
            .where(Order.id == order_id, Order.status == expected)
            .values(status=target, updated_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def transition(
        self,
        order_id: int,
        target_status: OrderStatusEnum,
        *,
        changes: dict | None = None,
        accepting: bool = False,
    ) -> Order:
        """Move an order to ``target_status`` and commit, applying any field changes."""

        order = await self._get_order(order_id, for_update=True)
        current_status = order.status
        self.ensure_allowed(current_status, target_status)
        if (current_status, target_status) in self._ACCEPT_ONLY and not accepting:
            raise InvalidTransition(current_status, target_status, detail="paid orders must be accepted first")
        self._ensure_fulfillment(order, target_status)

        order.status = target_status
        for field_name, value in (changes or {}).items():
            setattr(order, field_name, value)
        await self._session.commit()
        logger.info(
            "Order status transitioned",
            order_id=order_id,
            from_status=current_status.value,
            to_status=target_status.value,
        )
        return await self._get_order(order_id)

    async def accept_order(self, order_id: int, estimated_minutes: int) -> Order:
        """Accept a paid order; delivery orders go straight to READY."""

        order = await self._get_order(order_id)
        now = self._clock()
        changes: dict = {"estimated_ready_at": now + timedelta(minutes=estimated_minutes)}
        if order.fulfillment_method == FulfillmentMethodEnum.DELIVERY:
            target = OrderStatusEnum.READY
            changes["ready_at"] = now
        else:
            target = OrderStatusEnum.CONFIRMED
        if order.status != OrderStatusEnum.PAYMENT_CONFIRMED:
            raise InvalidTransition(order.status, target)
        return await self.transition(order_id, target, changes=changes, accepting=True)

    async def decline_order(self, order_id: int, reason: str) -> Order:
        return await self.transition(
            order_id,
            OrderStatusEnum.CANCELLED,
            changes={"decline_reason": reason},
        )

    async def start_preparing(self, order_id: int) -> Order:
        return await self.transition(order_id, OrderStatusEnum.PREPARING)

    async def mark_ready(self, order_id: int) -> Order:
        return await self.transition(order_id, OrderStatusEnum.READY, changes={"ready_at": self._clock()})

    async def assign_driver(self, order_id: int, driver_id: UUID) -> Order:
        return await self.transition(
            order_id,
            OrderStatusEnum.OUT_FOR_DELIVERY,
            changes={"driver_id": driver_id},
        )

    async def mark_delivered(self, order_id: int) -> Order:
        return await self.transition(order_id, OrderStatusEnum.DELIVERED)

    async def update_estimate(self, order_id: int, estimated_minutes: int) -> Order:
        """Push back (or pull in) the ready estimate without changing status."""

        order = await self._get_order(order_id, for_update=True)
        if order.status not in self._ESTIMATE_EDITABLE:
            raise InvalidTransition(order.status, order.status, detail="estimate can only change while in the kitchen")
        order.estimated_ready_at = self._clock() + timedelta(minutes=estimated_minutes)
        await self._session.commit()
        logger.info("Order estimate updated", order_id=order_id, estimated_minutes=estimated_minutes)
        return await self._get_order(order_id)

    async def _get_order(self, order_id: int, *, for_update: bool = False) -> Order:
        stmt = (
            select(Order)
            .options(selectinload(Order.items))
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update(of=Order)
        result = await self._session.execute(stmt)
        order = result.scalar_one_or_none()
        if order is None:
            raise OrderNotFound(order_id)
        return order


__all__ = ["OrderStateMachine"]
