from __future__ import annotations

import asyncio

import httpx
import pytest

from orderflow_api.core.errors import (
    CheckoutInProgress,
    InvalidTransition,
    OrderNotFound,
    PaymentProviderUnavailable,
)
from orderflow_api.models.order import Order, OrderStatusEnum
from orderflow_api.observability.payments import get_payment_store
from orderflow_api.services.checkout.coordinator import CheckoutCoordinator
from orderflow_api.services.checkout.locks import InMemoryKeyedLock
from orderflow_api.services.payments.gateway import SumUpGateway
from orderflow_api.services.payments.references import build_checkout_reference, parse_order_reference


async def _stored_checkout_id(session_factory, order_id: int) -> str | None:
    async with session_factory() as session:
        order = await session.get(Order, order_id)
        return order.checkout_id


def test_reference_format_and_parsing() -> None:
    reference = build_checkout_reference(42)

    prefix, order_id, epoch_ms, suffix = reference.split("-")
    assert prefix == "ORDER"
    assert order_id == "42"
    assert epoch_ms.isdigit()
    assert len(suffix) == 6
    assert parse_order_reference(reference) == 42
    assert parse_order_reference("ORDER-7") == 7
    assert parse_order_reference("ORDER-71-1700000000000-abcdef") == 71
    assert parse_order_reference("ORDERX-7-1") is None
    assert parse_order_reference(None) is None


@pytest.mark.asyncio
async def test_initiate_creates_and_persists_checkout(session_factory, make_order, sumup) -> None:
    order = await make_order(session_factory, order_id=42)

    async with session_factory() as session:
        coordinator = CheckoutCoordinator(session, sumup.gateway(), lock=InMemoryKeyedLock())
        handle = await coordinator.initiate_checkout(order.id)

    assert handle.checkout_id == "chk_1"
    assert handle.checkout_url == "https://pay.sumup.test/chk_1"
    assert handle.reused is False
    assert await _stored_checkout_id(session_factory, 42) == "chk_1"

    body = sumup.created[0]
    assert parse_order_reference(body["checkout_reference"]) == 42
    assert body["description"] == "Order #42"
    assert body["redirect_url"].endswith("/order-confirmation?orderId=42")
    assert get_payment_store().snapshot().checkout_totals == {"created": 1}


@pytest.mark.asyncio
async def test_existing_checkout_is_reused_without_create(session_factory, make_order, sumup) -> None:
    sumup.add_checkout("chk_existing")
    order = await make_order(session_factory, checkout_id="chk_existing")

    async with session_factory() as session:
        handle = await CheckoutCoordinator(session, sumup.gateway(), lock=InMemoryKeyedLock()).initiate_checkout(
            order.id
        )

    assert handle.reused is True
    assert handle.checkout_id == "chk_existing"
    assert handle.checkout_url == "https://pay.sumup.test/chk_existing"
    assert sumup.create_calls == 0


@pytest.mark.asyncio
async def test_concurrent_initiation_for_order_7_creates_one_checkout(session_factory, make_order, sumup) -> None:
    await make_order(session_factory, order_id=7)
    gateway = sumup.gateway()
    lock = InMemoryKeyedLock()

    async def initiate():
        async with session_factory() as session:
            return await CheckoutCoordinator(session, gateway, lock=lock).initiate_checkout(7)

    results = await asyncio.gather(initiate(), initiate(), return_exceptions=True)

    handles = [result for result in results if not isinstance(result, Exception)]
    errors = [result for result in results if isinstance(result, Exception)]
    assert len(handles) >= 1
    assert all(isinstance(error, CheckoutInProgress) for error in errors)
    assert {handle.checkout_id for handle in handles} == {"chk_1"}
    assert sumup.create_calls == 1
    assert await _stored_checkout_id(session_factory, 7) == "chk_1"
    if errors:
        assert get_payment_store().snapshot().checkout_totals.get("in_progress") == 1


@pytest.mark.asyncio
async def test_lock_held_raises_checkout_in_progress(session_factory, make_order, sumup) -> None:
    await make_order(session_factory, order_id=7)
    lock = InMemoryKeyedLock()

    async with lock.hold("order:7"):
        async with session_factory() as session:
            with pytest.raises(CheckoutInProgress) as excinfo:
                await CheckoutCoordinator(session, sumup.gateway(), lock=lock).initiate_checkout(7)

    assert "try again shortly" in str(excinfo.value)
    assert sumup.requests == []
    assert not lock.is_held("order:7")


@pytest.mark.asyncio
async def test_duplicate_recovery_uses_error_payload_id(session_factory, make_order, sumup) -> None:
    order = await make_order(session_factory)
    sumup.create_failures.append(
        httpx.Response(409, json={"error_code": "DUPLICATED_CHECKOUT", "checkout_id": "chk_from_error"})
    )

    async with session_factory() as session:
        handle = await CheckoutCoordinator(session, sumup.gateway(), lock=InMemoryKeyedLock()).initiate_checkout(
            order.id
        )

    assert handle.checkout_id == "chk_from_error"
    assert handle.recovered_via == "error_payload"
    assert handle.checkout_url == "https://checkout.sumup.com/pay/chk_from_error"
    assert await _stored_checkout_id(session_factory, order.id) == "chk_from_error"


@pytest.mark.asyncio
async def test_duplicate_recovery_matches_provider_listing(session_factory, make_order, sumup) -> None:
    await make_order(session_factory, order_id=7)
    sumup.listing = [
        {"id": "chk_other", "status": "PENDING", "checkout_reference": "ORDER-71-1700000000000-zzzzzz"},
        {"id": "chk_mine", "status": "PENDING", "checkout_reference": "ORDER-7-1700000000000-aaaaaa"},
    ]
    sumup.create_failures.append(httpx.Response(400, json={"error_code": "DUPLICATED_CHECKOUT"}))

    async with session_factory() as session:
        handle = await CheckoutCoordinator(session, sumup.gateway(), lock=InMemoryKeyedLock()).initiate_checkout(7)

    assert handle.checkout_id == "chk_mine"
    assert handle.recovered_via == "checkout_list"
    assert sumup.create_calls == 1


@pytest.mark.asyncio
async def test_duplicate_recovery_retries_with_suffix(session_factory, make_order, sumup) -> None:
    await make_order(session_factory, order_id=7)
    sumup.listing = []
    sumup.create_failures.append(httpx.Response(409, json={"message": "DUPLICATED_CHECKOUT"}))

    async with session_factory() as session:
        handle = await CheckoutCoordinator(session, sumup.gateway(), lock=InMemoryKeyedLock()).initiate_checkout(7)

    assert handle.recovered_via == "retry"
    assert handle.checkout_id == "chk_1"
    assert sumup.created[0]["checkout_reference"].endswith("-retry")
    assert sumup.create_calls == 2
    assert get_payment_store().snapshot().checkout_totals == {"recovered": 1}


@pytest.mark.asyncio
async def test_only_awaiting_payment_orders_can_check_out(session_factory, make_order, sumup) -> None:
    order = await make_order(session_factory, status=OrderStatusEnum.PAYMENT_CONFIRMED)

    async with session_factory() as session:
        coordinator = CheckoutCoordinator(session, sumup.gateway(), lock=InMemoryKeyedLock())
        with pytest.raises(InvalidTransition):
            await coordinator.initiate_checkout(order.id)
        with pytest.raises(OrderNotFound):
            await coordinator.initiate_checkout(999)


@pytest.mark.asyncio
async def test_unconfigured_provider_leaves_order_awaiting(session_factory, make_order) -> None:
    order = await make_order(session_factory)
    gateway = SumUpGateway(
        base_url="https://api.sumup.test",
        client_id="",
        client_secret="",
        merchant_email="",
    )

    async with session_factory() as session:
        with pytest.raises(PaymentProviderUnavailable):
            await CheckoutCoordinator(session, gateway, lock=InMemoryKeyedLock()).initiate_checkout(order.id)

    async with session_factory() as session:
        stored = await session.get(Order, order.id)
        assert stored.status == OrderStatusEnum.AWAITING_PAYMENT
        assert stored.checkout_id is None
    assert get_payment_store().snapshot().checkout_totals == {"failed": 1}
