from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest
from sqlalchemy.exc import IntegrityError

from orderflow_api.core.errors import InvalidLedgerState
from orderflow_api.models.loyalty import LedgerReasonEnum, LoyaltyTransaction
from orderflow_api.services.loyalty import (
    LoyaltyLedgerService,
    annual_reset_due,
    cycle_position,
    expiry_due,
    is_birthday,
    points_for_total,
)


def test_points_are_floor_of_total() -> None:
    assert points_for_total(Decimal("21.98")) == 21
    assert points_for_total(Decimal("0.99")) == 0
    assert points_for_total(Decimal("100.00")) == 100


def test_cycle_position_is_anchored_to_registration() -> None:
    position = cycle_position(date(2026, 1, 1), date(2026, 4, 1))

    assert position.days_since_registration == 90
    assert position.cycles_completed == 1
    assert position.cycle_start == date(2026, 4, 1)
    assert position.next_cycle_start == date(2026, 6, 30)

    early = cycle_position(date(2026, 1, 1), date(2026, 3, 31))
    assert early.cycles_completed == 0
    assert early.next_cycle_start == date(2026, 4, 1)


def test_expiry_applies_once_per_boundary() -> None:
    registered = date(2026, 1, 1)

    assert expiry_due(registered, None, date(2026, 3, 31)) is None
    assert expiry_due(registered, None, date(2026, 4, 2)) is not None
    reset_at = datetime(2026, 4, 1, 2, 0, tzinfo=timezone.utc)
    assert expiry_due(registered, reset_at, date(2026, 4, 2)) is None
    assert expiry_due(registered, reset_at, date(2026, 6, 30)) is not None


def test_expiry_reads_reset_stamp_on_the_local_calendar() -> None:
    registered = date(2026, 1, 1)
    # 00:30 on 1 April in Dublin, still 31 March in UTC
    reset_at = datetime(2026, 3, 31, 23, 30, tzinfo=timezone.utc)
    naive_reset = datetime(2026, 3, 31, 23, 30)

    assert expiry_due(registered, reset_at, date(2026, 4, 1), zone=ZoneInfo("Europe/Dublin")) is None
    assert expiry_due(registered, naive_reset, date(2026, 4, 1), zone=ZoneInfo("Europe/Dublin")) is None
    assert expiry_due(registered, reset_at, date(2026, 4, 1)) is not None


def test_annual_reset_and_birthdays() -> None:
    assert annual_reset_due(None, date(2025, 6, 1), date(2026, 1, 1))
    assert not annual_reset_due(date(2026, 1, 1), date(2025, 6, 1), date(2026, 10, 19))

    assert is_birthday(date(1990, 10, 19), date(2026, 10, 19))
    assert not is_birthday(date(1990, 10, 18), date(2026, 10, 19))
    assert not is_birthday(None, date(2026, 10, 19))
    assert is_birthday(date(2000, 2, 29), date(2027, 2, 28))
    assert is_birthday(date(2000, 2, 29), date(2028, 2, 29))
    assert not is_birthday(date(2000, 2, 29), date(2028, 2, 28))


@pytest.mark.asyncio
async def test_award_is_once_per_order(session_factory, make_user, make_order) -> None:
    user = await make_user(session_factory)
    order = await make_order(session_factory, user_id=user.id)

    async with session_factory() as session:
        ledger = LoyaltyLedgerService(session)
        first = await ledger.award_order_points(user_id=user.id, order_id=order.id, order_total=Decimal("21.98"))
        second = await ledger.award_order_points(user_id=user.id, order_id=order.id, order_total=Decimal("21.98"))
        await session.commit()

        account = await ledger.get_account(user.id)
        assert first is not None and first.points == 21
        assert first.reason == LedgerReasonEnum.ORDER_EARNED
        assert second is None
        assert account.points == 21
        assert await ledger.verify_balance(account) == 21


@pytest.mark.asyncio
async def test_unique_order_award_index_rejects_duplicates(session_factory, make_user, make_order) -> None:
    user = await make_user(session_factory)
    order = await make_order(session_factory, user_id=user.id)

    async with session_factory() as session:
        account = await LoyaltyLedgerService(session).ensure_account(user.id)
        for _ in range(2):
            session.add(
                LoyaltyTransaction(
                    account_id=account.id,
                    user_id=user.id,
                    order_id=order.id,
                    points=21,
                    reason=LedgerReasonEnum.ORDER_EARNED,
                )
            )
        with pytest.raises(IntegrityError):
            await session.flush()
        await session.rollback()


@pytest.mark.asyncio
async def test_verify_balance_detects_drift(session_factory, make_user, make_order) -> None:
    user = await make_user(session_factory)
    order = await make_order(session_factory, user_id=user.id)

    async with session_factory() as session:
        ledger = LoyaltyLedgerService(session)
        await ledger.award_order_points(user_id=user.id, order_id=order.id, order_total=Decimal("10.00"))
        account = await ledger.get_account(user.id)
        account.points += 5
        await session.flush()

        audit = await ledger.audit(account)
        assert audit.stored_balance == 15
        assert audit.replayed_balance == 10
        assert not audit.consistent
        with pytest.raises(InvalidLedgerState):
            await ledger.verify_balance(account)


@pytest.mark.asyncio
async def test_ensure_account_anchors_registration_date(session_factory, make_user) -> None:
    registered = datetime(2025, 3, 14, 9, 30, tzinfo=timezone.utc)
    user = await make_user(session_factory, registered_at=registered)

    async with session_factory() as session:
        ledger = LoyaltyLedgerService(session)
        account = await ledger.ensure_account(user.id)
        again = await ledger.ensure_account(user.id)
        await session.commit()

    assert again.id == account.id
    assert account.registration_date == date(2025, 3, 14)
    assert account.points == 0
    assert account.birthday_reward_sent is False
