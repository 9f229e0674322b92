import itertools
import json
import sys
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import orderflow_api.models  # noqa: F401
from orderflow_api.app import create_app
from orderflow_api.db.base import Base
from orderflow_api.db.session import get_session
from orderflow_api.models.order import FulfillmentMethodEnum, Order, OrderItem, OrderStatusEnum
from orderflow_api.models.user import User
from orderflow_api.observability.payments import get_payment_store
from orderflow_api.observability.scheduler import get_loyalty_cycle_store
from orderflow_api.services.payments.gateway import SumUpGateway


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()


async def _build_factory(url: str):
    engine = create_async_engine(url, future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine, async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture
async def session_factory():
    engine, factory = await _build_factory("sqlite+aiosqlite:///:memory:")

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """Separate connections per session; used where sessions must truly run concurrently."""

    engine, factory = await _build_factory(f"sqlite+aiosqlite:///{tmp_path / 'orderflow-test.db'}")

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def app_with_db(session_factory):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def reset_observability():
    get_payment_store().reset()
    get_loyalty_cycle_store().reset()
    yield


class FakeSumUp:
    """In-memory SumUp API served through ``httpx.MockTransport``."""

    base_url = "https://api.sumup.test"

    def __init__(self) -> None:
        self.checkouts: dict[str, dict[str, Any]] = {}
        self.created: list[dict[str, Any]] = []
        self.requests: list[httpx.Request] = []
        self.create_failures: list[httpx.Response] = []
        self.listing: list[dict[str, Any]] | None = None
        self.get_failure: Callable[[], httpx.Response] | None = None
        self.token_requests = 0
        self._ids = itertools.count(1)

    def add_checkout(self, checkout_id: str, *, status: str = "PENDING", reference: str | None = None) -> None:
        self.checkouts[checkout_id] = {
            "id": checkout_id,
            "status": status,
            "checkout_reference": reference,
            "amount": 10.0,
            "currency": "EUR",
            "hosted_checkout_url": f"https://pay.sumup.test/{checkout_id}",
        }

    def set_status(self, checkout_id: str, status: str) -> None:
        self.checkouts[checkout_id]["status"] = status

    @property
    def create_calls(self) -> int:
        return sum(
            1 for request in self.requests if request.method == "POST" and request.url.path == "/v0.1/checkouts"
        )

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/token":
            self.token_requests += 1
            return httpx.Response(200, json={"access_token": "token-123", "expires_in": 3600})

        if path == "/v0.1/checkouts" and request.method == "POST":
            if self.create_failures:
                return self.create_failures.pop(0)
            payload = json.loads(request.content)
            checkout_id = f"chk_{next(self._ids)}"
            self.created.append(payload)
            self.add_checkout(checkout_id, reference=payload["checkout_reference"])
            return httpx.Response(200, json=self.checkouts[checkout_id])

        if path == "/v0.1/checkouts" and request.method == "GET":
            items = self.listing if self.listing is not None else list(self.checkouts.values())
            return httpx.Response(200, json=items)

        if path.startswith("/v0.1/checkouts/"):
            if self.get_failure is not None:
                return self.get_failure()
            checkout = self.checkouts.get(path.rsplit("/", 1)[-1])
            if checkout is None:
                return httpx.Response(404, json={"error_code": "NOT_FOUND", "message": "Resource not found"})
            return httpx.Response(200, json=checkout)

        if path == "/v0.1/me":
            return httpx.Response(200, json={"merchant_profile": {"merchant_code": "MTEST01"}})

        return httpx.Response(404, json={"message": "unknown route"})

    def gateway(self) -> SumUpGateway:
        return SumUpGateway(
            base_url=self.base_url,
            client_id="client-id",
            client_secret="client-secret",
            merchant_email="merchant@example.com",
            timeout_seconds=2.0,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(self.handler)),
        )


@pytest.fixture
def sumup() -> FakeSumUp:
    return FakeSumUp()


async def create_user(session_factory, *, email: str = "diner@example.com", **fields) -> User:
    async with session_factory() as session:
        user = User(email=email, display_name="Diner", **fields)
        session.add(user)
        await session.commit()
        return user


async def create_order(
    session_factory,
    *,
    order_id: int | None = None,
    total: str = "21.98",
    user_id=None,
    status: OrderStatusEnum = OrderStatusEnum.AWAITING_PAYMENT,
    checkout_id: str | None = None,
    fulfillment_method: FulfillmentMethodEnum = FulfillmentMethodEnum.PICKUP,
) -> Order:
    async with session_factory() as session:
        order = Order(
            id=order_id,
            user_id=user_id,
            status=status,
            total=Decimal(total),
            currency="EUR",
            checkout_id=checkout_id,
            fulfillment_method=fulfillment_method,
            delivery_address="1 Main Street" if fulfillment_method == FulfillmentMethodEnum.DELIVERY else None,
            created_at=datetime.now(timezone.utc),
        )
        order.items = [OrderItem(name="Burger", quantity=1, unit_price=Decimal(total))]
        session.add(order)
        await session.commit()
        return order


@pytest.fixture
def make_user():
    return create_user


@pytest.fixture
def make_order():
    return create_order
