"""Daily loyalty maintenance: cycle expiry, annual resets, and birthday rewards."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List
from uuid import UUID
from zoneinfo import ZoneInfo

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow_api.core.errors import InvalidLedgerState
from orderflow_api.core.settings import settings
from orderflow_api.models.loyalty import LoyaltyAccount
from orderflow_api.models.user import User
from orderflow_api.services.loyalty import (
    LoyaltyLedgerService,
    annual_reset_due,
    expiry_due,
    is_birthday,
)


# meta: job: loyalty-cycle

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]


@dataclass
class LoyaltyCycleSummary:
    run_date: date
    triggered_by: str
    accounts_scanned: int = 0
    expired_accounts: int = 0
    points_expired: int = 0
    annual_resets: int = 0
    birthday_rewards: int = 0
    failures: List[Dict[str, str]] = field(default_factory=list)
    skipped: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "run_date": self.run_date.isoformat(),
            "triggered_by": self.triggered_by,
            "accounts_scanned": self.accounts_scanned,
            "expired_accounts": self.expired_accounts,
            "points_expired": self.points_expired,
            "annual_resets": self.annual_resets,
            "birthday_rewards": self.birthday_rewards,
            "failures": list(self.failures),
            "skipped": self.skipped,
        }


@dataclass
class _AccountOutcome:
    expired_points: int | None = None
    annual_reset: bool = False
    birthday_reward: bool = False


def local_today(timezone_name: str | None = None) -> date:
    return datetime.now(ZoneInfo(timezone_name or settings.loyalty_cycle_timezone)).date()


async def _open_session(session_factory: SessionFactory) -> AsyncSession:
    maybe_session = session_factory()
    if isinstance(maybe_session, AsyncSession):
        return maybe_session
    return await maybe_session


async def run_loyalty_cycle(
    *,
    session_factory: SessionFactory,
    today: date | None = None,
    now: datetime | None = None,
    triggered_by: str = "manual",
    expiry_days: int | None = None,
    birthday_threshold: float | Decimal | None = None,
    timezone_name: str | None = None,
) -> LoyaltyCycleSummary:
    """Run every loyalty maintenance stage once for each account.

    Accounts are processed in their own transactions; a failing account is
    rolled back, recorded in ``failures``, and the sweep moves on.
    """

    zone = ZoneInfo(timezone_name or settings.loyalty_cycle_timezone)
    run_date = today or local_today(timezone_name)
    run_at = now or datetime.now(timezone.utc)
    cycle_days = expiry_days or settings.loyalty_expiry_days
    threshold = Decimal(str(birthday_threshold if birthday_threshold is not None else settings.birthday_reward_threshold))
    summary = LoyaltyCycleSummary(run_date=run_date, triggered_by=triggered_by)

    session = await _open_session(session_factory)
    async with session as managed_session:
        result = await managed_session.execute(select(LoyaltyAccount.id).order_by(LoyaltyAccount.created_at))
        account_ids = list(result.scalars())

    for account_id in account_ids:
        summary.accounts_scanned += 1
        session = await _open_session(session_factory)
        async with session as managed_session:
            stage = "load"
            try:
                outcome = _AccountOutcome()
                account = await _lock_account(managed_session, account_id)
                if account is None:
                    continue
                ledger = LoyaltyLedgerService(managed_session)

                stage = "expiry"
                if (account.points or 0) != 0:
                    position = expiry_due(
                        account.registration_date,
                        account.last_points_reset,
                        run_date,
                        cycle_days=cycle_days,
                        zone=zone,
                    )
                    if position is not None:
                        entry = await ledger.expire_cycle_points(account, position=position, now=run_at)
                        outcome.expired_points = -entry.points

                stage = "annual_reset"
                if annual_reset_due(account.last_annual_reset, account.registration_date, run_date):
                    ledger.apply_annual_reset(account, today=run_date)
                    outcome.annual_reset = True

                stage = "birthday"
                user = await managed_session.get(User, account.user_id)
                if (
                    user is not None
                    and not account.birthday_reward_sent
                    and is_birthday(user.birth_date, run_date)
                    and Decimal(account.total_spent_this_year or 0) >= threshold
                ):
                    await ledger.grant_birthday_reward(account)
                    outcome.birthday_reward = True

                stage = "commit"
                await managed_session.commit()
            except InvalidLedgerState as exc:
                await managed_session.rollback()
                summary.failures.append({"account_id": str(account_id), "stage": stage, "error": str(exc)})
                logger.critical(
                    "Loyalty ledger invariant violated during cycle",
                    account_id=str(account_id),
                    stage=stage,
                    error=str(exc),
                )
                continue
            except Exception as exc:
                await managed_session.rollback()
                summary.failures.append({"account_id": str(account_id), "stage": stage, "error": str(exc)})
                logger.exception(
                    "Loyalty cycle failed for account",
                    account_id=str(account_id),
                    stage=stage,
                    error=str(exc),
                )
                continue

        _apply_outcome(summary, outcome, account_id)

    logger.bind(summary=summary.as_dict()).info("Loyalty cycle completed")
    return summary


async def _lock_account(session: AsyncSession, account_id: UUID) -> LoyaltyAccount | None:
    stmt = (
        select(LoyaltyAccount)
        .where(LoyaltyAccount.id == account_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


def _apply_outcome(summary: LoyaltyCycleSummary, outcome: _AccountOutcome, account_id: UUID) -> None:
    if outcome.expired_points is not None:
        summary.expired_accounts += 1
        summary.points_expired += outcome.expired_points
        logger.info("Loyalty points expired", account_id=str(account_id), points=outcome.expired_points)
    if outcome.annual_reset:
        summary.annual_resets += 1
        logger.info("Loyalty annual totals reset", account_id=str(account_id))
    if outcome.birthday_reward:
        summary.birthday_rewards += 1
        logger.info("Birthday reward granted", account_id=str(account_id))


__all__ = ["LoyaltyCycleSummary", "local_today", "run_loyalty_cycle"]
