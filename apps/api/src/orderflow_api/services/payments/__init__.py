"""Payment provider integration and reconciliation."""

from .gateway import ProviderCheckout, SumUpGateway, get_default_gateway  # noqa: F401
from .references import build_checkout_reference, parse_order_reference  # noqa: F401
from .verifier import PaymentVerifier  # noqa: F401
from .webhooks import (  # noqa: F401
    SIGNATURE_HEADER,
    SumUpWebhookEvent,
    WebhookSignatureError,
    resolve_order_id,
    verify_signature,
)

__all__ = [
    "PaymentVerifier",
    "ProviderCheckout",
    "SIGNATURE_HEADER",
    "SumUpGateway",
    "SumUpWebhookEvent",
    "WebhookSignatureError",
    "build_checkout_reference",
    "get_default_gateway",
    "parse_order_reference",
    "resolve_order_id",
    "verify_signature",
]
