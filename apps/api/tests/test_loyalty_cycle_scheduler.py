from __future__ import annotations

import asyncio
from datetime import date

import pytest

from orderflow_api.jobs.loyalty.cycle import LoyaltyCycleSummary
from orderflow_api.observability.scheduler import get_loyalty_cycle_store
from orderflow_api.workers import loyalty_cycle as loyalty_cycle_module
from orderflow_api.workers.loyalty_cycle import JOB_ID, LoyaltyCycleScheduler

RUN_DATE = date(2026, 10, 19)


@pytest.mark.asyncio
async def test_overlapping_trigger_is_skipped(monkeypatch) -> None:
    started = asyncio.Event()
    release = asyncio.Event()
    calls: list[tuple[str, str]] = []

    async def slow_cycle(*, session_factory, today, triggered_by, timezone_name):
        calls.append((triggered_by, timezone_name))
        started.set()
        await release.wait()
        return LoyaltyCycleSummary(run_date=today, triggered_by=triggered_by, accounts_scanned=3)

    monkeypatch.setattr(loyalty_cycle_module, "run_loyalty_cycle", slow_cycle)
    scheduler = LoyaltyCycleScheduler(lambda: None, cron="0 2 * * *", timezone="Europe/Dublin")

    first = asyncio.create_task(scheduler.run_once(triggered_by="scheduler", today=RUN_DATE))
    await started.wait()
    assert scheduler.is_executing

    skipped = await scheduler.run_once(triggered_by="admin", today=RUN_DATE)
    release.set()
    completed = await first

    assert skipped.skipped is True
    assert completed.skipped is False
    assert completed.accounts_scanned == 3
    assert calls == [("scheduler", "Europe/Dublin")]
    assert not scheduler.is_executing

    snapshot = get_loyalty_cycle_store().snapshot()
    assert snapshot.totals["runs"] == 1
    assert snapshot.totals["completed"] == 1
    assert snapshot.totals["skipped"] == 1
    assert snapshot.executing is False
    assert snapshot.last_summary["accounts_scanned"] == 3


@pytest.mark.asyncio
async def test_failed_run_is_recorded_and_reraised(monkeypatch) -> None:
    async def broken_cycle(*, session_factory, today, triggered_by, timezone_name):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(loyalty_cycle_module, "run_loyalty_cycle", broken_cycle)
    scheduler = LoyaltyCycleScheduler(lambda: None)

    with pytest.raises(RuntimeError):
        await scheduler.run_once(today=RUN_DATE)

    snapshot = get_loyalty_cycle_store().snapshot()
    assert snapshot.totals["failed"] == 1
    assert snapshot.last_error == "database unavailable"
    assert snapshot.last_trigger == "scheduler"
    assert not scheduler.is_executing


@pytest.mark.asyncio
async def test_run_once_sweeps_real_accounts(session_factory) -> None:
    scheduler = LoyaltyCycleScheduler(session_factory)

    summary = await scheduler.run_once(triggered_by="admin", today=RUN_DATE)

    assert summary.triggered_by == "admin"
    assert summary.run_date == RUN_DATE
    assert get_loyalty_cycle_store().snapshot().as_dict()["last_summary"]["triggered_by"] == "admin"


@pytest.mark.asyncio
async def test_start_registers_single_cron_job_and_stop_is_idempotent() -> None:
    scheduler = LoyaltyCycleScheduler(lambda: None, cron="30 3 * * *", timezone="Europe/Dublin")

    scheduler.start()
    scheduler.start()
    try:
        assert scheduler.is_running
        job = scheduler._scheduler.get_job(JOB_ID)
        assert job is not None
        assert job.max_instances == 1
        assert len(scheduler._scheduler.get_jobs()) == 1
    finally:
        await scheduler.stop()

    assert not scheduler.is_running
    await scheduler.stop()
