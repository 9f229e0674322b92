"""Cron-driven runner for the daily loyalty cycle."""

from __future__ import annotations

import asyncio
import inspect
import time
from datetime import date
from typing import Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession
from zoneinfo import ZoneInfo

from orderflow_api.core.settings import settings
from orderflow_api.jobs.loyalty.cycle import LoyaltyCycleSummary, local_today, run_loyalty_cycle
from orderflow_api.observability.scheduler import get_loyalty_cycle_store

SessionFactory = Callable[[], Awaitable[AsyncSession]] | Callable[[], AsyncSession]

JOB_ID = "loyalty-cycle"


class LoyaltyCycleScheduler:
    """Registers the loyalty cycle on a cron trigger and prevents overlapping runs."""

    # meta: scheduler: loyalty-cycle

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        cron: str | None = None,
        timezone: str | None = None,
        trigger_label: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.cron = cron or settings.loyalty_cycle_cron
        self.timezone = timezone or settings.loyalty_cycle_timezone
        self._trigger_label = trigger_label or settings.loyalty_cycle_trigger_label
        self._scheduler: AsyncIOScheduler | None = None
        self._run_lock = asyncio.Lock()
        self._current_run: asyncio.Task | None = None
        self._observability = get_loyalty_cycle_store()

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None

    @property
    def is_executing(self) -> bool:
        return self._run_lock.locked()

    def start(self) -> None:
        if self._scheduler is not None:
            return
        zone = ZoneInfo(self.timezone)
        scheduler = AsyncIOScheduler(timezone=zone)
        scheduler.add_job(
            self._scheduled_run,
            trigger=CronTrigger.from_crontab(self.cron, timezone=zone),
            id=JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info("Loyalty cycle scheduler started", cron=self.cron, timezone=self.timezone)

    async def stop(self, *, timeout: float = 30.0) -> None:
        """Stop triggering new runs and wait for an in-flight run to finish."""

        if self._scheduler is not None:
            result = self._scheduler.shutdown(wait=False)
            if inspect.isawaitable(result):
                await result
            self._scheduler = None

        task = self._current_run
        if task is not None and not task.done():
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("Loyalty cycle run still executing at shutdown; cancelling", timeout=timeout)
                task.cancel()
        logger.info("Loyalty cycle scheduler stopped")

    async def run_once(
        self,
        *,
        triggered_by: str | None = None,
        today: date | None = None,
    ) -> LoyaltyCycleSummary:
        """Execute one cycle, or report a skipped run when one is already executing."""

        trigger = triggered_by or self._trigger_label
        run_date = today or local_today(self.timezone)
        if self._run_lock.locked():
            self._observability.record_skipped(trigger)
            logger.warning("Loyalty cycle already executing; skipping trigger", trigger=trigger)
            return LoyaltyCycleSummary(run_date=run_date, triggered_by=trigger, skipped=True)

        async with self._run_lock:
            self._current_run = asyncio.current_task()
            self._observability.record_started(trigger)
            started_at = time.perf_counter()
            try:
                summary = await run_loyalty_cycle(
                    session_factory=self._session_factory,
                    today=run_date,
                    triggered_by=trigger,
                    timezone_name=self.timezone,
                )
            except Exception as exc:
                runtime_seconds = time.perf_counter() - started_at
                self._observability.record_failure(str(exc), runtime_seconds=runtime_seconds)
                logger.exception("Loyalty cycle run failed", trigger=trigger, error=str(exc))
                raise
            finally:
                self._current_run = None

            runtime_seconds = time.perf_counter() - started_at
            self._observability.record_completed(summary.as_dict(), runtime_seconds=runtime_seconds)
            logger.info(
                "Loyalty cycle run completed",
                trigger=trigger,
                runtime_seconds=runtime_seconds,
                failures=len(summary.failures),
            )
            return summary

    async def _scheduled_run(self) -> None:
        try:
            await self.run_once()
        except Exception as exc:  # pragma: no cover - logged by run_once
            logger.error("Scheduled loyalty cycle raised", error=str(exc))


__all__ = ["JOB_ID", "LoyaltyCycleScheduler"]
