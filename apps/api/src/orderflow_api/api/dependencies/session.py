"""Session-aware dependencies for customer-facing APIs."""

from __future__ import annotations

from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow_api.db.session import get_session
from orderflow_api.models.user import User


def _parse_user_id(session_user: str) -> UUID:
    try:
        return UUID(session_user)
    except ValueError as error:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid session user identifier",
        ) from error


async def optional_member_session(
    session_user: str | None = Header(None, alias="X-Session-User"),
    db: AsyncSession = Depends(get_session),
) -> User | None:
    """Resolve the forwarded session user when present; guests resolve to ``None``."""

    if not session_user:
        return None

    user = await db.get(User, _parse_user_id(session_user))
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Session user not found",
        )
    return user


async def require_member_session(
    user: User | None = Depends(optional_member_session),
) -> User:
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing session user context",
        )
    return user
