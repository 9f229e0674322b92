"""Observability store for loyalty cycle scheduler runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class LoyaltyCycleSnapshot:
    """Serializable view of scheduler history."""

    totals: Dict[str, int]
    executing: bool
    last_trigger: str | None
    last_started_at: datetime | None
    last_completed_at: datetime | None
    last_runtime_seconds: float | None
    last_error: str | None
    last_summary: Dict[str, Any] | None

    def as_dict(self) -> Dict[str, object]:
        return {
            "totals": self.totals,
            "executing": self.executing,
            "last_trigger": self.last_trigger,
            "last_started_at": self.last_started_at.isoformat() if self.last_started_at else None,
            "last_completed_at": self.last_completed_at.isoformat() if self.last_completed_at else None,
            "last_runtime_seconds": self.last_runtime_seconds,
            "last_error": self.last_error,
            "last_summary": self.last_summary,
        }


@dataclass
class _RunState:
    runs: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    account_failures: int = 0
    executing: bool = False
    last_trigger: str | None = None
    last_started_at: datetime | None = None
    last_completed_at: datetime | None = None
    last_runtime_seconds: float | None = None
    last_error: str | None = None
    last_summary: Dict[str, Any] | None = field(default=None)


class LoyaltyCycleObservabilityStore:
    """Tracks loyalty cycle dispatches, overlaps, and per-account failures."""

    def __init__(self) -> None:
        self._lock: Lock = Lock()
        self._state = _RunState()

    def reset(self) -> None:
        with self._lock:
            self._state = _RunState()

    def record_started(self, trigger: str) -> None:
        with self._lock:
            self._state.runs += 1
            self._state.executing = True
            self._state.last_trigger = trigger
            self._state.last_started_at = _utcnow()
            self._state.last_completed_at = None

    def record_skipped(self, trigger: str) -> None:
        with self._lock:
            self._state.skipped += 1
            self._state.last_trigger = trigger

    def record_completed(self, summary: Dict[str, Any], *, runtime_seconds: float) -> None:
        with self._lock:
            self._state.completed += 1
            self._state.executing = False
            self._state.account_failures += len(summary.get("failures", []))
            self._state.last_completed_at = _utcnow()
            self._state.last_runtime_seconds = runtime_seconds
            self._state.last_error = None
            self._state.last_summary = summary

    def record_failure(self, error: str, *, runtime_seconds: float) -> None:
        with self._lock:
            self._state.failed += 1
            self._state.executing = False
            self._state.last_completed_at = _utcnow()
            self._state.last_runtime_seconds = runtime_seconds
            self._state.last_error = error

    def snapshot(self) -> LoyaltyCycleSnapshot:
        with self._lock:
            state = self._state
            return LoyaltyCycleSnapshot(
                totals={
                    "runs": state.runs,
                    "completed": state.completed,
                    "failed": state.failed,
                    "skipped": state.skipped,
                    "account_failures": state.account_failures,
                },
                executing=state.executing,
                last_trigger=state.last_trigger,
                last_started_at=state.last_started_at,
                last_completed_at=state.last_completed_at,
                last_runtime_seconds=state.last_runtime_seconds,
                last_error=state.last_error,
                last_summary=dict(state.last_summary) if state.last_summary else None,
            )


_LOYALTY_CYCLE_STORE = LoyaltyCycleObservabilityStore()


def get_loyalty_cycle_store() -> LoyaltyCycleObservabilityStore:
    return _LOYALTY_CYCLE_STORE


__all__ = [
    "LoyaltyCycleObservabilityStore",
    "LoyaltyCycleSnapshot",
    "get_loyalty_cycle_store",
]
