"""Order placement, status, and kitchen workflow endpoints."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow_api.api.dependencies.security import require_checkout_api_key
from orderflow_api.api.dependencies.session import optional_member_session
from orderflow_api.db.session import get_session
from orderflow_api.models.order import FulfillmentMethodEnum, Order, OrderStatusEnum
from orderflow_api.models.user import User
from orderflow_api.services.orders.order_service import OrderLine, OrderService
from orderflow_api.services.orders.state_machine import OrderStateMachine


router = APIRouter(prefix="/orders", tags=["orders"])


class OrderItemCreate(BaseModel):
    """Request model for a priced order line."""
    menu_item_id: Optional[int] = Field(None, description="Menu item ID")
    name: str = Field(..., min_length=1, description="Menu item name snapshot")
    quantity: int = Field(1, ge=1, description="Item quantity")
    unit_price: Decimal = Field(..., ge=0, description="Unit price")
    customizations: Optional[Dict[str, Any]] = Field(None, description="Selected customizations")


class OrderCreate(BaseModel):
    """Request model for creating orders."""
    items: List[OrderItemCreate] = Field(..., min_length=1, description="Order items")
    fulfillment_method: FulfillmentMethodEnum = Field(
        FulfillmentMethodEnum.PICKUP,
        description="Pickup or delivery",
    )
    delivery_address: Optional[str] = Field(None, description="Delivery address for delivery orders")
    notes: Optional[str] = Field(None, description="Order notes")


class OrderItemResponse(BaseModel):
    id: int
    menu_item_id: Optional[int]
    name: str
    quantity: int
    unit_price: float
    customizations: Optional[Dict[str, Any]]


class OrderResponse(BaseModel):
    """Response model for orders."""
    id: int
    user_id: Optional[str]
    status: OrderStatusEnum
    total: float
    currency: str
    checkout_id: Optional[str]
    fulfillment_method: FulfillmentMethodEnum
    delivery_address: Optional[str]
    order_code: Optional[str]
    notes: Optional[str]
    decline_reason: Optional[str]
    driver_id: Optional[str]
    estimated_ready_at: Optional[datetime]
    ready_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime
    items: List[OrderItemResponse]


class OrderStatusResponse(BaseModel):
    id: int
    status: OrderStatusEnum
    ready_at: Optional[datetime]
    estimated_ready_at: Optional[datetime]
    checkout_id: Optional[str]


class AcceptOrderRequest(BaseModel):
    estimated_minutes: int = Field(..., ge=1, le=240, description="Minutes until the order is ready")


class DeclineOrderRequest(BaseModel):
    reason: str = Field(..., min_length=1, description="Reason shown to the customer")


class AssignDriverRequest(BaseModel):
    driver_id: UUID = Field(..., description="Driver user ID")


def serialize_order(order: Order) -> OrderResponse:
    return OrderResponse(
        id=order.id,
        user_id=str(order.user_id) if order.user_id else None,
        status=order.status,
        total=float(order.total),
        currency=order.currency,
        checkout_id=order.checkout_id,
        fulfillment_method=order.fulfillment_method,
        delivery_address=order.delivery_address,
        order_code=order.order_code,
        notes=order.notes,
        decline_reason=order.decline_reason,
        driver_id=str(order.driver_id) if order.driver_id else None,
        estimated_ready_at=order.estimated_ready_at,
        ready_at=order.ready_at,
        created_at=order.created_at,
        updated_at=order.updated_at,
        items=[
            OrderItemResponse(
                id=item.id,
                menu_item_id=item.menu_item_id,
                name=item.name,
                quantity=item.quantity,
                unit_price=float(item.unit_price),
                customizations=item.customizations,
            )
            for item in order.items
        ],
    )


@router.post("/", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
async def create_order(
    payload: OrderCreate,
    user: User | None = Depends(optional_member_session),
    db: AsyncSession = Depends(get_session),
) -> OrderResponse:
    """Place an order in ``AWAITING_PAYMENT`` for a guest or the session user."""
    lines = [
        OrderLine(
            name=item.name,
            quantity=item.quantity,
            unit_price=item.unit_price,
            menu_item_id=item.menu_item_id,
            customizations=item.customizations,
        )
        for item in payload.items
    ]
    try:
        order = await OrderService(db).create_order(
            lines,
            user_id=user.id if user else None,
            fulfillment_method=payload.fulfillment_method,
            delivery_address=payload.delivery_address,
            notes=payload.notes,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return serialize_order(order)


@router.get(
    "/",
    response_model=List[OrderResponse],
    dependencies=[Depends(require_checkout_api_key)],
)
async def list_orders(
    status_filter: List[OrderStatusEnum] = Query(..., alias="status", description="Statuses to include"),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_session),
) -> List[OrderResponse]:
    orders = await OrderService(db).list_orders_by_status(status_filter, limit=limit)
    return [serialize_order(order) for order in orders]


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(order_id: int, db: AsyncSession = Depends(get_session)) -> OrderResponse:
    order = await OrderService(db).get_order(order_id)
    return serialize_order(order)


@router.get("/{order_id}/status", response_model=OrderStatusResponse)
async def get_order_status(order_id: int, db: AsyncSession = Depends(get_session)) -> OrderStatusResponse:
    """Lightweight status poll used by the confirmation screen."""
    snapshot = await OrderService(db).get_order_status(order_id)
    return OrderStatusResponse(
        id=snapshot.order_id,
        status=snapshot.status,
        ready_at=snapshot.ready_at,
        estimated_ready_at=snapshot.estimated_ready_at,
        checkout_id=snapshot.checkout_id,
    )


@router.post(
    "/{order_id}/accept",
    response_model=OrderResponse,
    dependencies=[Depends(require_checkout_api_key)],
)
async def accept_order(
    order_id: int,
    payload: AcceptOrderRequest,
    db: AsyncSession = Depends(get_session),
) -> OrderResponse:
    order = await OrderStateMachine(db).accept_order(order_id, payload.estimated_minutes)
    return serialize_order(order)


@router.post(
    "/{order_id}/decline",
    response_model=OrderResponse,
    dependencies=[Depends(require_checkout_api_key)],
)
async def decline_order(
    order_id: int,
    payload: DeclineOrderRequest,
    db: AsyncSession = Depends(get_session),
) -> OrderResponse:
    order = await OrderStateMachine(db).decline_order(order_id, payload.reason)
    return serialize_order(order)


@router.post(
    "/{order_id}/estimate",
    response_model=OrderResponse,
    dependencies=[Depends(require_checkout_api_key)],
)
async def update_estimate(
    order_id: int,
    payload: AcceptOrderRequest,
    db: AsyncSession = Depends(get_session),
) -> OrderResponse:
    order = await OrderStateMachine(db).update_estimate(order_id, payload.estimated_minutes)
    return serialize_order(order)


@router.post(
    "/{order_id}/preparing",
    response_model=OrderResponse,
    dependencies=[Depends(require_checkout_api_key)],
)
async def start_preparing(order_id: int, db: AsyncSession = Depends(get_session)) -> OrderResponse:
    order = await OrderStateMachine(db).start_preparing(order_id)
    return serialize_order(order)


@router.post(
    "/{order_id}/ready",
    response_model=OrderResponse,
    dependencies=[Depends(require_checkout_api_key)],
)
async def mark_ready(order_id: int, db: AsyncSession = Depends(get_session)) -> OrderResponse:
    order = await OrderStateMachine(db).mark_ready(order_id)
    return serialize_order(order)


@router.post(
    "/{order_id}/assign-driver",
    response_model=OrderResponse,
    dependencies=[Depends(require_checkout_api_key)],
)
async def assign_driver(
    order_id: int,
    payload: AssignDriverRequest,
    db: AsyncSession = Depends(get_session),
) -> OrderResponse:
    order = await OrderStateMachine(db).assign_driver(order_id, payload.driver_id)
    return serialize_order(order)


@router.post(
    "/{order_id}/delivered",
    response_model=OrderResponse,
    dependencies=[Depends(require_checkout_api_key)],
)
async def mark_delivered(order_id: int, db: AsyncSession = Depends(get_session)) -> OrderResponse:
    order = await OrderStateMachine(db).mark_delivered(order_id)
    return serialize_order(order)
