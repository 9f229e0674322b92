"""Order creation and read-side queries consumed by the storefront and admin tools."""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from orderflow_api.core.errors import OrderNotFound
from orderflow_api.core.settings import settings
from orderflow_api.models.order import FulfillmentMethodEnum, Order, OrderItem, OrderStatusEnum
from orderflow_api.services.loyalty.ledger import LoyaltyLedgerService

ORDER_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
ORDER_CODE_LENGTH = 6
_CENT = Decimal("0.01")


@dataclass(slots=True)
class OrderLine:
    """Priced line item captured at order time."""

    name: str
    quantity: int
    unit_price: Decimal
    menu_item_id: int | None = None
    customizations: dict[str, Any] | None = None

    @property
    def charged_unit_price(self) -> Decimal:
        """Unit price rounded to the cent, as stored on the order item."""

        return Decimal(self.unit_price).quantize(_CENT, rounding=ROUND_HALF_UP)

    @property
    def line_total(self) -> Decimal:
        return self.charged_unit_price * self.quantity


@dataclass(slots=True)
class OrderStatusSnapshot:
    order_id: int
    status: OrderStatusEnum
    ready_at: datetime | None
    estimated_ready_at: datetime | None
    checkout_id: str | None


def generate_order_code() -> str:
    return "".join(secrets.choice(ORDER_CODE_ALPHABET) for _ in range(ORDER_CODE_LENGTH))


def compute_order_total(lines: Iterable[OrderLine]) -> Decimal:
    return sum((line.line_total for line in lines), Decimal("0"))


class OrderService:
    """Creates orders and answers status queries."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create_order(
        self,
        lines: Sequence[OrderLine],
        *,
        user_id: UUID | None = None,
        fulfillment_method: FulfillmentMethodEnum = FulfillmentMethodEnum.PICKUP,
        delivery_address: str | None = None,
        notes: str | None = None,
        currency: str | None = None,
    ) -> Order:
        if not lines:
            raise ValueError("An order needs at least one line item")
        if any(line.quantity < 1 for line in lines):
            raise ValueError("Line item quantities must be positive")
        if any(Decimal(line.unit_price) < 0 for line in lines):
            raise ValueError("Line item prices cannot be negative")
        is_delivery = fulfillment_method == FulfillmentMethodEnum.DELIVERY
        if is_delivery and not (delivery_address or "").strip():
            raise ValueError("Delivery orders require a delivery address")

        order = Order(
            user_id=user_id,
            status=OrderStatusEnum.AWAITING_PAYMENT,
            total=compute_order_total(lines),
            currency=(currency or settings.checkout_currency).upper(),
            fulfillment_method=fulfillment_method,
            delivery_address=delivery_address if is_delivery else None,
            order_code=generate_order_code() if is_delivery else None,
            notes=notes,
        )
        order.items = [
            OrderItem(
                menu_item_id=line.menu_item_id,
                name=line.name,
                quantity=line.quantity,
                unit_price=line.charged_unit_price,
                customizations=line.customizations,
            )
            for line in lines
        ]
        self._session.add(order)

        if user_id is not None:
            await LoyaltyLedgerService(self._session).ensure_account(user_id)

        await self._session.commit()
        logger.info(
            "Order created",
            order_id=order.id,
            user_id=str(user_id) if user_id else None,
            total=str(order.total),
            fulfillment_method=fulfillment_method.value,
            items=len(lines),
        )
        return await self.get_order(order.id)

    async def get_order(self, order_id: int) -> Order:
        stmt = (
            select(Order)
            .options(selectinload(Order.items))
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        order = result.scalar_one_or_none()
        if order is None:
            raise OrderNotFound(order_id)
        return order

    async def get_order_status(self, order_id: int) -> OrderStatusSnapshot:
        stmt = select(
            Order.id,
            Order.status,
            Order.ready_at,
            Order.estimated_ready_at,
            Order.checkout_id,
        ).where(Order.id == order_id)
        row = (await self._session.execute(stmt)).one_or_none()
        if row is None:
            raise OrderNotFound(order_id)
        return OrderStatusSnapshot(
            order_id=row.id,
            status=row.status,
            ready_at=row.ready_at,
            estimated_ready_at=row.estimated_ready_at,
            checkout_id=row.checkout_id,
        )

    async def list_orders_by_status(
        self,
        statuses: Iterable[OrderStatusEnum],
        *,
        limit: int = 100,
    ) -> list[Order]:
        wanted = list(dict.fromkeys(statuses))
        if not wanted:
            return []
        stmt = (
            select(Order)
            .options(selectinload(Order.items))
            .where(Order.status.in_(wanted))
            .order_by(Order.created_at.asc(), Order.id.asc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().unique())


__all__ = [
    "OrderLine",
    "OrderService",
    "OrderStatusSnapshot",
    "compute_order_total",
    "generate_order_code",
]
