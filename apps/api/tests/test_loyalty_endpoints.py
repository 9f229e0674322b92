from datetime import date, timedelta
from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient

from orderflow_api.models.loyalty import LedgerReasonEnum
from orderflow_api.services.loyalty import LoyaltyLedgerService
from orderflow_api.workers import LoyaltyCycleScheduler


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_member_account_lists_ledger(app_with_db, make_user, make_order) -> None:
    app, session_factory = app_with_db
    user = await make_user(session_factory)
    order = await make_order(session_factory, user_id=user.id)

    async with session_factory() as session:
        await LoyaltyLedgerService(session).award_order_points(
            user_id=user.id,
            order_id=order.id,
            order_total=Decimal("21.98"),
        )
        await session.commit()

    async with _client(app) as client:
        response = await client.get("/api/v1/loyalty/me", headers={"X-Session-User": str(user.id)})
        anonymous = await client.get("/api/v1/loyalty/me")

    assert response.status_code == 200
    body = response.json()
    assert body["points"] == 21
    assert body["user_id"] == str(user.id)
    assert body["total_spent_this_year"] == pytest.approx(21.98)
    assert date.fromisoformat(body["next_expiry_date"]) > date.fromisoformat(body["registration_date"])
    assert [entry["reason"] for entry in body["transactions"]] == [LedgerReasonEnum.ORDER_EARNED.value]
    assert body["transactions"][0]["order_id"] == order.id
    assert anonymous.status_code == 401


@pytest.mark.asyncio
async def test_audit_reports_consistency_and_drift(app_with_db, make_user, make_order) -> None:
    app, session_factory = app_with_db
    user = await make_user(session_factory)
    order = await make_order(session_factory, user_id=user.id)

    async with session_factory() as session:
        await LoyaltyLedgerService(session).award_order_points(
            user_id=user.id,
            order_id=order.id,
            order_total=Decimal("30.00"),
        )
        await session.commit()

    async with _client(app) as client:
        consistent = await client.get(f"/api/v1/loyalty/accounts/{user.id}/audit")

        async with session_factory() as session:
            account = await LoyaltyLedgerService(session).get_account(user.id)
            account.points = 45
            await session.commit()

        drifted = await client.get(f"/api/v1/loyalty/accounts/{user.id}/audit")
        missing = await client.get("/api/v1/loyalty/accounts/00000000-0000-0000-0000-000000000000/audit")

    assert consistent.status_code == 200
    assert consistent.json()["stored_balance"] == 30
    assert consistent.json()["consistent"] is True
    assert drifted.status_code == 500
    assert drifted.json()["reason"] == "invalid_ledger_state"
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_manual_cycle_run_and_observability(app_with_db, make_user) -> None:
    app, session_factory = app_with_db
    app.state.loyalty_cycle_scheduler = LoyaltyCycleScheduler(
        session_factory,
        cron="0 2 * * *",
        timezone="Europe/Dublin",
    )
    user = await make_user(session_factory)
    async with session_factory() as session:
        account = await LoyaltyLedgerService(session).ensure_account(user.id)
        account.registration_date = date(2026, 10, 19) - timedelta(days=91)
        account.last_annual_reset = date(2026, 1, 1)
        await session.commit()

    async with _client(app) as client:
        run = await client.post("/api/v1/loyalty/cycle/run", json={"run_date": "2026-10-19"})
        observability = await client.get("/api/v1/loyalty/cycle/observability")

    assert run.status_code == 200
    summary = run.json()
    assert summary["run_date"] == "2026-10-19"
    assert summary["triggered_by"] == "manual"
    assert summary["accounts_scanned"] == 1
    assert summary["failures"] == []

    snapshot = observability.json()
    assert snapshot["totals"]["completed"] == 1
    assert snapshot["last_summary"]["accounts_scanned"] == 1
    assert snapshot["scheduler"] == {
        "running": False,
        "executing": False,
        "cron": "0 2 * * *",
        "timezone": "Europe/Dublin",
    }
