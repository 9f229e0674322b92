"""Translate domain errors into JSON responses with stable reason strings."""

from __future__ import annotations

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from loguru import logger

from orderflow_api.core.errors import (
    CheckoutInProgress,
    InvalidLedgerState,
    InvalidTransition,
    OrderflowError,
    OrderNotFound,
    PaymentProviderError,
    PaymentProviderUnavailable,
)

CHECKOUT_RETRY_AFTER_SECONDS = 2

# Most specific first; subclasses must precede their bases.
_STATUS_CODES: tuple[tuple[type[OrderflowError], int], ...] = (
    (InvalidTransition, status.HTTP_409_CONFLICT),
    (CheckoutInProgress, status.HTTP_409_CONFLICT),
    (OrderNotFound, status.HTTP_404_NOT_FOUND),
    (PaymentProviderUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
    (PaymentProviderError, status.HTTP_502_BAD_GATEWAY),
    (InvalidLedgerState, status.HTTP_500_INTERNAL_SERVER_ERROR),
)


def status_code_for(exc: OrderflowError) -> int:
    for error_type, status_code in _STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def handle_orderflow_error(request: Request, exc: OrderflowError) -> JSONResponse:
    status_code = status_code_for(exc)
    headers: dict[str, str] = {}

    if isinstance(exc, CheckoutInProgress):
        headers["Retry-After"] = str(CHECKOUT_RETRY_AFTER_SECONDS)
    elif isinstance(exc, PaymentProviderError):
        logger.error(
            "Payment provider request failed",
            path=request.url.path,
            reason=exc.reason,
            status_code=exc.status_code,
            provider_url=exc.url,
            payload=exc.payload,
            error=str(exc),
        )
    elif isinstance(exc, InvalidLedgerState):
        logger.critical("Loyalty ledger invariant violated", path=request.url.path, error=str(exc))

    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "reason": exc.reason},
        headers=headers or None,
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(OrderflowError, handle_orderflow_error)


__all__ = ["register_exception_handlers", "status_code_for"]
