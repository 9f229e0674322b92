"""Checkout initiation with per-order serialization and duplicate-checkout recovery."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow_api.core.errors import (
    CheckoutInProgress,
    DuplicateCheckoutError,
    InvalidTransition,
    OrderNotFound,
    PaymentProviderError,
    PaymentProviderUnavailable,
)
from orderflow_api.core.settings import Settings, settings
from orderflow_api.models.order import Order, OrderStatusEnum
from orderflow_api.observability.payments import get_payment_store
from orderflow_api.observability.tracing import get_tracer
from orderflow_api.services.payments.gateway import ProviderCheckout, SumUpGateway, hosted_checkout_fallback_url
from orderflow_api.services.payments.references import (
    build_checkout_reference,
    parse_order_reference,
    retry_reference,
)
from .locks import KeyedLock, LockUnavailableError, get_checkout_lock

tracer = get_tracer(__name__)


@dataclass(slots=True)
class CheckoutHandle:
    order_id: int
    checkout_id: str
    checkout_url: str
    reused: bool = False
    recovered_via: str | None = None


class CheckoutCoordinator:
    """Creates (or reuses) exactly one provider checkout per order."""

    def __init__(
        self,
        session: AsyncSession,
        gateway: SumUpGateway,
        *,
        lock: KeyedLock | None = None,
        config: Settings = settings,
    ) -> None:
        self._session = session
        self._gateway = gateway
        self._lock = lock or get_checkout_lock()
        self._config = config
        self._store = get_payment_store()

    async def initiate_checkout(self, order_id: int) -> CheckoutHandle:
        """Return the order's hosted checkout, creating it if none exists yet.

        A concurrent initiation for the same order fails fast with
        ``CheckoutInProgress`` rather than queueing.
        """

        try:
            async with self._lock.hold(f"order:{order_id}"):
                with tracer.start_as_current_span("checkout.initiate") as span:
                    span.set_attribute("order.id", order_id)
                    handle = await self._initiate_locked(order_id)
        except LockUnavailableError:
            self._store.record_checkout("in_progress")
            logger.info("Checkout already in progress", order_id=order_id)
            raise CheckoutInProgress(order_id) from None
        except PaymentProviderError as exc:
            self._store.record_checkout("failed", reason=str(exc))
            logger.error(
                "Checkout initiation failed",
                order_id=order_id,
                error=str(exc),
                status_code=exc.status_code,
                payload=exc.payload,
            )
            raise

        outcome = "reused" if handle.reused else ("recovered" if handle.recovered_via else "created")
        self._store.record_checkout(outcome, checkout_id=handle.checkout_id)
        return handle

    async def _initiate_locked(self, order_id: int) -> CheckoutHandle:
        order = await self._load_order(order_id)
        if order.status != OrderStatusEnum.AWAITING_PAYMENT:
            raise InvalidTransition(
                order.status,
                OrderStatusEnum.PAYMENT_CONFIRMED,
                detail="checkout is only available while awaiting payment",
            )

        if order.checkout_id:
            checkout = await self._gateway.get_checkout(order.checkout_id)
            logger.info("Reusing existing checkout", order_id=order_id, checkout_id=order.checkout_id)
            return CheckoutHandle(
                order_id=order_id,
                checkout_id=order.checkout_id,
                checkout_url=checkout.checkout_url,
                reused=True,
            )

        if not self._gateway.configured:
            raise PaymentProviderUnavailable("SumUp credentials are not configured")

        reference = build_checkout_reference(order_id)
        recovered_via: str | None = None
        try:
            checkout = await self._create(order, reference)
            checkout_id, checkout_url = checkout.id, checkout.checkout_url
        except DuplicateCheckoutError as exc:
            logger.warning("Provider reported duplicate checkout", order_id=order_id, reference=reference)
            checkout_id, checkout_url, recovered_via = await self._recover_duplicate(order, reference, exc)

        persisted_id = await self._persist_checkout_id(order_id, checkout_id)
        if persisted_id != checkout_id:
            checkout_id = persisted_id
            checkout_url = hosted_checkout_fallback_url(persisted_id)
        return CheckoutHandle(
            order_id=order_id,
            checkout_id=checkout_id,
            checkout_url=checkout_url,
            recovered_via=recovered_via,
        )

    async def _recover_duplicate(
        self,
        order: Order,
        reference: str,
        error: DuplicateCheckoutError,
    ) -> tuple[str, str, str]:
        existing_id = error.existing_checkout_id
        if existing_id:
            logger.info("Recovered checkout id from duplicate error", order_id=order.id, checkout_id=existing_id)
            return existing_id, hosted_checkout_fallback_url(existing_id), "error_payload"

        try:
            candidates = await self._gateway.list_checkouts(limit=10)
        except PaymentProviderError as list_error:
            logger.warning("Listing provider checkouts failed", order_id=order.id, error=str(list_error))
            candidates = []
        for candidate in candidates:
            if parse_order_reference(candidate.reference) == order.id:
                logger.info("Recovered checkout id from provider listing", order_id=order.id, checkout_id=candidate.id)
                return candidate.id, candidate.checkout_url, "checkout_list"

        retry = await self._create(order, retry_reference(reference))
        logger.info("Recovered checkout with retry reference", order_id=order.id, checkout_id=retry.id)
        return retry.id, retry.checkout_url, "retry"

    async def _create(self, order: Order, reference: str) -> ProviderCheckout:
        redirect_url = None
        if self._config.app_host.startswith("http"):
            redirect_url = f"{self._config.app_host.rstrip('/')}/order-confirmation?orderId={order.id}"
        return await self._gateway.create_checkout(
            reference=reference,
            amount=Decimal(order.total),
            currency=order.currency or self._config.checkout_currency,
            description=f"Order #{order.id}",
            redirect_url=redirect_url,
            custom_fields={"order_id": str(order.id)},
        )

    async def _persist_checkout_id(self, order_id: int, checkout_id: str) -> str:
        """Bind the checkout to the order once; returns whichever id the order ends up holding."""

        stmt = (
            update(Order)
            .where(Order.id == order_id, Order.checkout_id.is_(None))
            .values(checkout_id=checkout_id, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.commit()
        if result.rowcount == 1:
            logger.info("Checkout id persisted", order_id=order_id, checkout_id=checkout_id)
            return checkout_id

        order = await self._load_order(order_id)
        if order.checkout_id != checkout_id:
            logger.warning(
                "Order already bound to another checkout",
                order_id=order_id,
                persisted_checkout_id=order.checkout_id,
                discarded_checkout_id=checkout_id,
            )
        return order.checkout_id

    async def _load_order(self, order_id: int) -> Order:
        stmt = select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
        order = (await self._session.execute(stmt)).scalar_one_or_none()
        if order is None:
            raise OrderNotFound(order_id)
        return order


__all__ = [
    "CheckoutCoordinator",
    "CheckoutHandle",
]
