"""Loyalty account management backed by an append-only points ledger."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import ROUND_FLOOR, Decimal
from typing import Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow_api.core.errors import InvalidLedgerState
from orderflow_api.models.loyalty import LedgerReasonEnum, LoyaltyAccount, LoyaltyTransaction
from orderflow_api.models.notification import Notification, NotificationCategoryEnum
from orderflow_api.models.user import User
from .cycle import CyclePosition

BIRTHDAY_REWARD_TITLE = "🎂 Happy Birthday!"
BIRTHDAY_REWARD_MESSAGE = "Happy Birthday! Enjoy a free burger on us! Show this notification to redeem."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


ORDER_AWARD_INDEX = "uq_loyalty_transactions_order_earned"
# SQLite reports the indexed column rather than the index name
_ORDER_AWARD_MARKERS = (ORDER_AWARD_INDEX, "loyalty_transactions.order_id")


def is_duplicate_order_award(exc: IntegrityError) -> bool:
    """True when the violation is the one-award-per-order index, not some other key."""

    message = str(exc.orig if exc.orig is not None else exc)
    return any(marker in message for marker in _ORDER_AWARD_MARKERS)


def points_for_total(total: Decimal) -> int:
    """One point per whole currency unit spent."""

    return int(Decimal(total).to_integral_value(rounding=ROUND_FLOOR))


@dataclass(slots=True)
class LedgerAudit:
    account_id: UUID
    stored_balance: int
    replayed_balance: int

    @property
    def consistent(self) -> bool:
        return self.stored_balance == self.replayed_balance


class LoyaltyLedgerService:
    """Reads and mutates loyalty accounts; the caller owns the transaction boundary."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_account(self, user_id: UUID, *, lock: bool = False) -> LoyaltyAccount | None:
        stmt = (
            select(LoyaltyAccount)
            .where(LoyaltyAccount.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        if lock:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def ensure_account(self, user_id: UUID, *, lock: bool = False) -> LoyaltyAccount:
        """Return the user's account, creating an empty one anchored at registration."""

        account = await self.get_account(user_id, lock=lock)
        if account is not None:
            return account

        user = await self._session.get(User, user_id)
        if user is None:
            raise LookupError(f"User {user_id} not found")
        registered_at = user.registered_at or _utcnow()
        account = LoyaltyAccount(
            user_id=user_id,
            points=0,
            total_spent_this_year=Decimal("0"),
            registration_date=registered_at.date(),
            birthday_reward_sent=False,
        )
        self._session.add(account)
        await self._session.flush()
        logger.info("Loyalty account created", user_id=str(user_id), account_id=str(account.id))
        return account

    async def has_order_award(self, order_id: int) -> bool:
        stmt = select(LoyaltyTransaction.id).where(
            LoyaltyTransaction.order_id == order_id,
            LoyaltyTransaction.reason == LedgerReasonEnum.ORDER_EARNED,
        )
        result = await self._session.execute(stmt.limit(1))
        return result.scalar_one_or_none() is not None

    async def award_order_points(
        self,
        *,
        user_id: UUID,
        order_id: int,
        order_total: Decimal,
    ) -> LoyaltyTransaction | None:
        """Credit ``floor(order_total)`` points once per order.

        The account row is locked before the existence check so two concurrent
        awards for the same user serialize on it. Returns ``None`` when the order
        was already credited.
        """

        account = await self.ensure_account(user_id, lock=True)
        if await self.has_order_award(order_id):
            logger.info("Order points already awarded", order_id=order_id, user_id=str(user_id))
            return None

        points = points_for_total(order_total)
        entry = LoyaltyTransaction(
            account_id=account.id,
            user_id=user_id,
            order_id=order_id,
            points=points,
            reason=LedgerReasonEnum.ORDER_EARNED,
            details=f"Points earned for order #{order_id}",
            source="payment_verification",
        )
        account.points = (account.points or 0) + points
        account.total_spent_this_year = Decimal(account.total_spent_this_year or 0) + Decimal(order_total)
        self._session.add(entry)
        await self._session.flush()
        logger.info(
            "Order points awarded",
            order_id=order_id,
            user_id=str(user_id),
            points=points,
            balance=account.points,
        )
        return entry

    async def expire_cycle_points(
        self,
        account: LoyaltyAccount,
        *,
        position: CyclePosition,
        now: datetime | None = None,
    ) -> LoyaltyTransaction:
        """Zero the balance at a cycle boundary and record the negated amount."""

        balance = account.points or 0
        if balance < 0:
            raise InvalidLedgerState(
                f"Loyalty account {account.id} holds a negative balance ({balance}) before expiry"
            )

        cycle_days = (position.next_cycle_start - position.cycle_start).days
        entry = LoyaltyTransaction(
            account_id=account.id,
            user_id=account.user_id,
            order_id=None,
            points=-balance,
            reason=LedgerReasonEnum.POINTS_EXPIRED_90_DAY_CYCLE,
            details=(
                f"{cycle_days}-day cycle ended {position.cycle_start.isoformat()}"
                f" (registered {account.registration_date.isoformat()})"
            ),
            source="loyalty_cycle",
        )
        account.points = 0
        account.last_points_reset = now or _utcnow()
        self._session.add(entry)
        await self._session.flush()
        return entry

    def apply_annual_reset(self, account: LoyaltyAccount, *, today: date) -> None:
        account.total_spent_this_year = Decimal("0")
        account.birthday_reward_sent = False
        account.last_annual_reset = today

    async def grant_birthday_reward(self, account: LoyaltyAccount) -> Notification:
        notification = Notification(
            user_id=account.user_id,
            category=NotificationCategoryEnum.BIRTHDAY_REWARD,
            title=BIRTHDAY_REWARD_TITLE,
            message=BIRTHDAY_REWARD_MESSAGE,
        )
        account.birthday_reward_sent = True
        self._session.add(notification)
        await self._session.flush()
        return notification

    async def replay_balance(self, account_id: UUID) -> int:
        stmt = select(func.coalesce(func.sum(LoyaltyTransaction.points), 0)).where(
            LoyaltyTransaction.account_id == account_id
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def audit(self, account: LoyaltyAccount) -> LedgerAudit:
        return LedgerAudit(
            account_id=account.id,
            stored_balance=account.points or 0,
            replayed_balance=await self.replay_balance(account.id),
        )

    async def verify_balance(self, account: LoyaltyAccount) -> int:
        """Raise ``InvalidLedgerState`` unless the stored balance matches the ledger replay."""

        report = await self.audit(account)
        if report.stored_balance < 0 or not report.consistent:
            logger.critical(
                "Loyalty ledger drift detected",
                account_id=str(account.id),
                stored_balance=report.stored_balance,
                replayed_balance=report.replayed_balance,
            )
            raise InvalidLedgerState(
                f"Loyalty account {account.id} balance {report.stored_balance}"
                f" does not match ledger replay {report.replayed_balance}"
            )
        return report.stored_balance

    async def list_transactions(self, account_id: UUID, *, limit: int = 20) -> Sequence[LoyaltyTransaction]:
        stmt = (
            select(LoyaltyTransaction)
            .where(LoyaltyTransaction.account_id == account_id)
            .order_by(LoyaltyTransaction.created_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars())


__all__ = [
    "BIRTHDAY_REWARD_MESSAGE",
    "BIRTHDAY_REWARD_TITLE",
    "LedgerAudit",
    "LoyaltyLedgerService",
    "ORDER_AWARD_INDEX",
    "is_duplicate_order_award",
    "points_for_total",
]
