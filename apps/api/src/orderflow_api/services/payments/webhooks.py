"""SumUp webhook parsing, signature checks, and order resolution."""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow_api.models.order import Order
from .references import parse_order_reference

SIGNATURE_HEADER = "sumup-signature"
HANDLED_EVENT_TYPES = frozenset(
    {
        "checkout.paid",
        "checkout.failed",
        "checkout.status.updated",
        "CHECKOUT_STATUS_CHANGED",
    }
)


class WebhookSignatureError(ValueError):
    """Raised when a webhook body does not match its signature."""


def compute_signature(payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_signature(payload: bytes, signature: str | None, secret: str | None) -> None:
    """Check the HMAC-SHA256 hex digest of the raw body.

    Verification is skipped when no secret is configured.
    """

    if not secret:
        return
    if not signature:
        raise WebhookSignatureError("Missing webhook signature")
    expected = compute_signature(payload, secret)
    candidate = signature.strip()
    if candidate.startswith("sha256="):
        candidate = candidate[len("sha256="):]
    if not hmac.compare_digest(expected, candidate.lower()):
        raise WebhookSignatureError("Invalid webhook signature")


@dataclass(slots=True)
class SumUpWebhookEvent:
    event_type: str
    checkout_id: str | None
    checkout_reference: str | None
    status: str | None
    raw: dict[str, Any]

    @classmethod
    def parse(cls, payload: Mapping[str, Any]) -> "SumUpWebhookEvent":
        # SumUp nests the checkout under "payload" for some event shapes
        body = payload.get("payload") if isinstance(payload.get("payload"), Mapping) else payload
        checkout_id = body.get("id") or body.get("checkout_id") or payload.get("id")
        return cls(
            event_type=str(payload.get("event_type") or payload.get("type") or "unknown"),
            checkout_id=str(checkout_id) if checkout_id else None,
            checkout_reference=body.get("checkout_reference"),
            status=body.get("status"),
            raw=dict(payload),
        )

    @property
    def handled(self) -> bool:
        return self.event_type in HANDLED_EVENT_TYPES


async def resolve_order_id(session: AsyncSession, event: SumUpWebhookEvent) -> int | None:
    """Order id from the checkout reference, falling back to the stored checkout id."""

    order_id = parse_order_reference(event.checkout_reference)
    if order_id is not None:
        return order_id
    if not event.checkout_id:
        return None
    result = await session.execute(select(Order.id).where(Order.checkout_id == event.checkout_id))
    return result.scalar_one_or_none()


__all__ = [
    "HANDLED_EVENT_TYPES",
    "SIGNATURE_HEADER",
    "SumUpWebhookEvent",
    "WebhookSignatureError",
    "compute_signature",
    "resolve_order_id",
    "verify_signature",
]
