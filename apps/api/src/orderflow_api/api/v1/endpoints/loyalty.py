"""Loyalty account, ledger audit, and cycle scheduler endpoints."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow_api.api.dependencies.security import require_checkout_api_key
from orderflow_api.api.dependencies.services import get_loyalty_cycle_scheduler
from orderflow_api.api.dependencies.session import require_member_session
from orderflow_api.core.settings import settings
from orderflow_api.db.session import get_session
from orderflow_api.jobs.loyalty.cycle import local_today
from orderflow_api.models.loyalty import LedgerReasonEnum, LoyaltyTierEnum
from orderflow_api.models.user import User
from orderflow_api.observability.scheduler import get_loyalty_cycle_store
from orderflow_api.services.loyalty import LoyaltyLedgerService, cycle_position
from orderflow_api.workers import LoyaltyCycleScheduler


router = APIRouter(prefix="/loyalty", tags=["loyalty"])


class LoyaltyTransactionResponse(BaseModel):
    id: UUID
    order_id: Optional[int]
    points: int
    reason: LedgerReasonEnum
    details: Optional[str]
    created_at: datetime


class LoyaltyAccountResponse(BaseModel):
    id: UUID
    user_id: UUID
    points: int
    tier: LoyaltyTierEnum
    total_spent_this_year: float
    registration_date: date
    last_points_reset: Optional[datetime]
    next_expiry_date: date = Field(..., description="Date the current points cycle ends")
    birthday_reward_sent: bool
    transactions: List[LoyaltyTransactionResponse]


class LedgerAuditResponse(BaseModel):
    account_id: UUID
    stored_balance: int
    replayed_balance: int
    consistent: bool


class CycleRunRequest(BaseModel):
    run_date: Optional[date] = Field(None, description="Override the scheduler's local date")


@router.get("/me", response_model=LoyaltyAccountResponse)
async def get_my_account(
    limit: int = Query(20, ge=1, le=100),
    user: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> LoyaltyAccountResponse:
    ledger = LoyaltyLedgerService(db)
    account = await ledger.ensure_account(user.id)
    await db.commit()
    transactions = await ledger.list_transactions(account.id, limit=limit)
    position = cycle_position(
        account.registration_date,
        local_today(),
        cycle_days=settings.loyalty_expiry_days,
    )
    return LoyaltyAccountResponse(
        id=account.id,
        user_id=account.user_id,
        points=account.points or 0,
        tier=account.tier,
        total_spent_this_year=float(account.total_spent_this_year or 0),
        registration_date=account.registration_date,
        last_points_reset=account.last_points_reset,
        next_expiry_date=position.next_cycle_start,
        birthday_reward_sent=bool(account.birthday_reward_sent),
        transactions=[
            LoyaltyTransactionResponse(
                id=entry.id,
                order_id=entry.order_id,
                points=entry.points,
                reason=entry.reason,
                details=entry.details,
                created_at=entry.created_at,
            )
            for entry in transactions
        ],
    )


@router.get(
    "/accounts/{user_id}/audit",
    response_model=LedgerAuditResponse,
    dependencies=[Depends(require_checkout_api_key)],
)
async def audit_account(user_id: UUID, db: AsyncSession = Depends(get_session)) -> LedgerAuditResponse:
    """Replay the ledger; drift answers 500 ``invalid_ledger_state``."""
    ledger = LoyaltyLedgerService(db)
    account = await ledger.get_account(user_id)
    if account is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Loyalty account not found")
    balance = await ledger.verify_balance(account)
    return LedgerAuditResponse(
        account_id=account.id,
        stored_balance=balance,
        replayed_balance=balance,
        consistent=True,
    )


@router.post(
    "/cycle/run",
    dependencies=[Depends(require_checkout_api_key)],
)
async def trigger_loyalty_cycle(
    payload: CycleRunRequest | None = None,
    scheduler: LoyaltyCycleScheduler = Depends(get_loyalty_cycle_scheduler),
) -> Dict[str, Any]:
    summary = await scheduler.run_once(
        triggered_by="manual",
        today=payload.run_date if payload else None,
    )
    return summary.as_dict()


@router.get(
    "/cycle/observability",
    dependencies=[Depends(require_checkout_api_key)],
)
async def loyalty_cycle_observability(
    scheduler: LoyaltyCycleScheduler = Depends(get_loyalty_cycle_scheduler),
) -> Dict[str, Any]:
    snapshot = get_loyalty_cycle_store().snapshot().as_dict()
    snapshot["scheduler"] = {
        "running": scheduler.is_running,
        "executing": scheduler.is_executing,
        "cron": scheduler.cron,
        "timezone": scheduler.timezone,
    }
    return snapshot
