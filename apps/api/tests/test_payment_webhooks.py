from __future__ import annotations

import pytest

from orderflow_api.services.payments.webhooks import (
    SumUpWebhookEvent,
    WebhookSignatureError,
    compute_signature,
    resolve_order_id,
    verify_signature,
)


def test_signature_accepts_prefixed_and_bare_digests() -> None:
    payload = b'{"event_type":"checkout.paid"}'
    digest = compute_signature(payload, "secret")

    verify_signature(payload, digest, "secret")
    verify_signature(payload, f"sha256={digest}", "secret")
    verify_signature(payload, None, "")

    with pytest.raises(WebhookSignatureError):
        verify_signature(payload, None, "secret")
    with pytest.raises(WebhookSignatureError):
        verify_signature(payload + b" ", digest, "secret")


def test_event_parsing_handles_nested_and_flat_shapes() -> None:
    nested = SumUpWebhookEvent.parse(
        {
            "event_type": "checkout.paid",
            "payload": {"id": "chk_1", "checkout_reference": "ORDER-42-1-abcdef", "status": "PAID"},
        }
    )
    flat = SumUpWebhookEvent.parse({"type": "CHECKOUT_STATUS_CHANGED", "checkout_id": "chk_2"})
    unknown = SumUpWebhookEvent.parse({"foo": "bar"})

    assert nested.checkout_id == "chk_1"
    assert nested.checkout_reference == "ORDER-42-1-abcdef"
    assert nested.status == "PAID"
    assert nested.handled
    assert flat.event_type == "CHECKOUT_STATUS_CHANGED"
    assert flat.checkout_id == "chk_2"
    assert unknown.event_type == "unknown"
    assert not unknown.handled


@pytest.mark.asyncio
async def test_resolve_order_prefers_reference_then_checkout_id(session_factory, make_order) -> None:
    order = await make_order(session_factory, checkout_id="chk_lookup")

    async with session_factory() as session:
        by_reference = await resolve_order_id(
            session,
            SumUpWebhookEvent.parse({"event_type": "checkout.paid", "checkout_reference": "ORDER-42-1-aaaaaa"}),
        )
        by_checkout = await resolve_order_id(
            session,
            SumUpWebhookEvent.parse({"event_type": "checkout.paid", "id": "chk_lookup"}),
        )
        unresolved = await resolve_order_id(session, SumUpWebhookEvent.parse({"event_type": "checkout.paid"}))

    assert by_reference == 42
    assert by_checkout == order.id
    assert unresolved is None
