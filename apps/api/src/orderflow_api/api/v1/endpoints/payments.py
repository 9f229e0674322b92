import json
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow_api.api.dependencies.security import require_checkout_api_key
from orderflow_api.api.dependencies.services import get_keyed_lock, get_payment_gateway
from orderflow_api.core.errors import OrderflowError
from orderflow_api.core.settings import settings
from orderflow_api.db.session import get_session
from orderflow_api.observability.payments import get_payment_store
from orderflow_api.services.checkout.coordinator import CheckoutCoordinator
from orderflow_api.services.checkout.locks import KeyedLock
from orderflow_api.services.payments import (
    SIGNATURE_HEADER,
    PaymentVerifier,
    SumUpGateway,
    SumUpWebhookEvent,
    WebhookSignatureError,
    resolve_order_id,
    verify_signature,
)
from .orders import OrderResponse, serialize_order


router = APIRouter(prefix="/payments", tags=["payments"])


class CheckoutRequest(BaseModel):
    """Request model for starting a hosted checkout."""
    order_id: int = Field(..., ge=1, description="Order ID awaiting payment")


class CheckoutResponse(BaseModel):
    """Response model for hosted checkout initiation."""
    order_id: int = Field(..., description="Order ID")
    checkout_id: str = Field(..., description="Provider checkout ID")
    checkout_url: str = Field(..., description="Hosted checkout URL to redirect the customer to")
    reused: bool = Field(False, description="Whether an existing checkout was returned")


class WebhookResponse(BaseModel):
    """Response model for webhook processing."""
    success: bool = Field(..., description="Whether webhook was processed successfully")
    message: str = Field(..., description="Processing result message")
    order_id: Optional[int] = Field(None, description="Resolved order ID")


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    request: CheckoutRequest,
    db: AsyncSession = Depends(get_session),
    gateway: SumUpGateway = Depends(get_payment_gateway),
    lock: KeyedLock = Depends(get_keyed_lock),
) -> CheckoutResponse:
    """Create (or reuse) the hosted checkout for an order.

    Concurrent requests for the same order answer 409 ``checkout_in_progress``
    with a ``Retry-After`` header.
    """
    coordinator = CheckoutCoordinator(db, gateway, lock=lock)
    handle = await coordinator.initiate_checkout(request.order_id)
    return CheckoutResponse(
        order_id=handle.order_id,
        checkout_id=handle.checkout_id,
        checkout_url=handle.checkout_url,
        reused=handle.reused,
    )


@router.post("/orders/{order_id}/verify", response_model=OrderResponse)
async def verify_payment(
    order_id: int,
    db: AsyncSession = Depends(get_session),
    gateway: SumUpGateway = Depends(get_payment_gateway),
) -> OrderResponse:
    """Reconcile the order against the provider; safe to poll repeatedly."""
    order = await PaymentVerifier(db, gateway).verify_payment(order_id)
    return serialize_order(order)


@router.post("/webhooks/sumup", response_model=WebhookResponse)
async def handle_sumup_webhook(
    request: Request,
    signature: Optional[str] = Header(None, alias=SIGNATURE_HEADER),
    db: AsyncSession = Depends(get_session),
    gateway: SumUpGateway = Depends(get_payment_gateway),
) -> WebhookResponse:
    """Handle SumUp checkout events by re-running payment verification."""
    payments_store = get_payment_store()
    payload = await request.body()

    try:
        verify_signature(payload, signature, settings.sumup_webhook_secret)
    except WebhookSignatureError as exc:
        logger.warning("Invalid SumUp webhook signature", error=str(exc))
        payments_store.record_webhook("signature_error", "failed", error="signature_verification_failed")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc

    try:
        body = json.loads(payload or b"{}")
    except ValueError as exc:
        payments_store.record_webhook("unknown", "failed", error="invalid_json")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook payload") from exc
    if not isinstance(body, dict):
        payments_store.record_webhook("unknown", "failed", error="invalid_json")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook payload")

    event = SumUpWebhookEvent.parse(body)
    logger.info(
        "Processing SumUp webhook event",
        event_type=event.event_type,
        checkout_id=event.checkout_id,
        checkout_reference=event.checkout_reference,
    )
    if not event.handled:
        payments_store.record_webhook(event.event_type, "ignored")
        return WebhookResponse(success=True, message=f"Event {event.event_type} ignored")

    order_id = await resolve_order_id(db, event)
    if order_id is None:
        payments_store.record_webhook(event.event_type, "failed", error="order_unresolved")
        logger.warning(
            "SumUp webhook did not resolve to an order",
            event_type=event.event_type,
            checkout_id=event.checkout_id,
        )
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unable to resolve order for webhook")

    try:
        order = await PaymentVerifier(db, gateway).verify_payment(order_id)
    except OrderflowError as exc:
        payments_store.record_webhook(event.event_type, "failed", error=exc.reason)
        raise

    payments_store.record_webhook(event.event_type, "processed")
    return WebhookResponse(
        success=True,
        message=f"Order {order_id} is {order.status.value}",
        order_id=order_id,
    )


@router.get(
    "/provider/merchant",
    dependencies=[Depends(require_checkout_api_key)],
)
async def test_provider_connection(gateway: SumUpGateway = Depends(get_payment_gateway)) -> Dict[str, Any]:
    """Fetch the merchant profile to confirm credentials work."""
    profile = await gateway.get_merchant_profile()
    merchant = profile.get("merchant_profile") if isinstance(profile.get("merchant_profile"), dict) else {}
    return {
        "connected": True,
        "merchant_code": merchant.get("merchant_code"),
        "merchant_email": settings.sumup_merchant_email or None,
        "profile": profile,
    }


@router.get(
    "/observability",
    dependencies=[Depends(require_checkout_api_key)],
)
async def payment_observability() -> Dict[str, Any]:
    return get_payment_store().snapshot().as_dict()
