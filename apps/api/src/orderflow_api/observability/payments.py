"""In-memory observability helper for checkout, verification, and webhook flows."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Dict


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class CheckoutEventLog:
    last_success_at: datetime | None = None
    last_checkout_id: str | None = None
    last_failure_at: datetime | None = None
    last_failure_reason: str | None = None


@dataclass
class WebhookEventLog:
    last_event_at: datetime | None = None
    last_event_type: str | None = None
    last_failure_at: datetime | None = None
    last_failure_reason: str | None = None


@dataclass
class PaymentObservabilitySnapshot:
    checkout_totals: Dict[str, int]
    verification_totals: Dict[str, int]
    webhook_totals: Dict[str, Dict[str, int]]
    checkout_events: CheckoutEventLog
    webhook_events: WebhookEventLog

    def as_dict(self) -> Dict[str, object]:
        return {
            "checkout": {
                "totals": self.checkout_totals,
                "events": {
                    "last_success_at": _iso(self.checkout_events.last_success_at),
                    "last_checkout_id": self.checkout_events.last_checkout_id,
                    "last_failure_at": _iso(self.checkout_events.last_failure_at),
                    "last_failure_reason": self.checkout_events.last_failure_reason,
                },
            },
            "verification": {"totals": self.verification_totals},
            "webhooks": {
                "totals": self.webhook_totals,
                "events": {
                    "last_event_at": _iso(self.webhook_events.last_event_at),
                    "last_event_type": self.webhook_events.last_event_type,
                    "last_failure_at": _iso(self.webhook_events.last_failure_at),
                    "last_failure_reason": self.webhook_events.last_failure_reason,
                },
            },
        }


@dataclass
class PaymentObservabilityStore:
    _lock: Lock = field(default_factory=Lock)
    _checkout_totals: Counter = field(default_factory=Counter)
    _verification_totals: Counter = field(default_factory=Counter)
    _checkout_events: CheckoutEventLog = field(default_factory=CheckoutEventLog)
    _webhook_totals: Dict[str, Counter] = field(
        default_factory=lambda: {"processed": Counter(), "ignored": Counter(), "failed": Counter()}
    )
    _webhook_events: WebhookEventLog = field(default_factory=WebhookEventLog)

    def record_checkout(self, outcome: str, *, checkout_id: str | None = None, reason: str | None = None) -> None:
        """Count a checkout initiation: created, reused, recovered, in_progress, or failed."""

        with self._lock:
            self._checkout_totals[outcome] += 1
            now = _utcnow()
            if outcome == "failed":
                self._checkout_events.last_failure_at = now
                self._checkout_events.last_failure_reason = reason
            elif checkout_id:
                self._checkout_events.last_success_at = now
                self._checkout_events.last_checkout_id = checkout_id

    def record_verification(self, outcome: str) -> None:
        with self._lock:
            self._verification_totals[outcome] += 1

    def record_webhook(self, event_type: str, bucket: str, error: str | None = None) -> None:
        with self._lock:
            self._webhook_totals[bucket][event_type] += 1
            now = _utcnow()
            self._webhook_events.last_event_at = now
            self._webhook_events.last_event_type = event_type
            if bucket == "failed":
                self._webhook_events.last_failure_at = now
                self._webhook_events.last_failure_reason = error

    def snapshot(self) -> PaymentObservabilitySnapshot:
        with self._lock:
            return PaymentObservabilitySnapshot(
                checkout_totals=dict(self._checkout_totals),
                verification_totals=dict(self._verification_totals),
                webhook_totals={bucket: dict(counter) for bucket, counter in self._webhook_totals.items()},
                checkout_events=CheckoutEventLog(**vars(self._checkout_events)),
                webhook_events=WebhookEventLog(**vars(self._webhook_events)),
            )

    def reset(self) -> None:
        with self._lock:
            self._checkout_totals.clear()
            self._verification_totals.clear()
            for counter in self._webhook_totals.values():
                counter.clear()
            self._checkout_events = CheckoutEventLog()
            self._webhook_events = WebhookEventLog()


_PAYMENT_STORE = PaymentObservabilityStore()


def get_payment_store() -> PaymentObservabilityStore:
    return _PAYMENT_STORE
