"""Domain error taxonomy shared by the order, checkout, payment, and loyalty services."""

from __future__ import annotations

from typing import Any, Mapping


class OrderflowError(RuntimeError):
    """Base exception carrying a stable, client-facing reason string."""

    reason: str = "orderflow_error"


class InvalidTransition(OrderflowError):
    """Raised when an order status change is not permitted by the state machine."""

    reason = "invalid_transition"

    def __init__(self, current_status: Any, requested_status: Any, *, detail: str | None = None) -> None:
        current = getattr(current_status, "value", current_status)
        requested = getattr(requested_status, "value", requested_status)
        message = f"Cannot transition order from {current} to {requested}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.current_status = current_status
        self.requested_status = requested_status


class CheckoutInProgress(OrderflowError):
    """Raised when another checkout initiation already holds the order's lock."""

    reason = "checkout_in_progress"

    def __init__(self, order_id: int) -> None:
        super().__init__(f"Checkout already in progress for order {order_id}; try again shortly")
        self.order_id = order_id


class OrderNotFound(OrderflowError):
    reason = "order_not_found"

    def __init__(self, order_id: int) -> None:
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class PaymentProviderError(OrderflowError):
    """Raised when the payment provider rejects a request or answers unexpectedly."""

    reason = "payment_provider_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        payload: Mapping[str, Any] | None = None,
        url: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = dict(payload or {})
        self.url = url

    @property
    def error_code(self) -> str | None:
        code = self.payload.get("error_code") or self.payload.get("error")
        return str(code) if code else None


class PaymentProviderUnavailable(PaymentProviderError):
    """Raised when the provider cannot be reached, times out, or is not configured."""

    reason = "payment_provider_unavailable"


class DuplicateCheckoutError(PaymentProviderError):
    """Raised when the provider reports the checkout reference was already used."""

    @property
    def existing_checkout_id(self) -> str | None:
        for key in ("id", "checkout_id"):
            value = self.payload.get(key)
            if value:
                return str(value)
        return None


class InvalidLedgerState(OrderflowError):
    """Raised when a loyalty balance breaks its ledger invariants."""

    reason = "invalid_ledger_state"


__all__ = [
    "CheckoutInProgress",
    "DuplicateCheckoutError",
    "InvalidLedgerState",
    "InvalidTransition",
    "OrderNotFound",
    "OrderflowError",
    "PaymentProviderError",
    "PaymentProviderUnavailable",
]
