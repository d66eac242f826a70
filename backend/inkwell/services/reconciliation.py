"""
Inkwell Backend: Reconciliation Scheduler
=========================================

What:  Periodic sweep that guarantees every asset eventually reaches a
       terminal state.
How:   One asyncio task sleeps `interval_seconds` between runs. Each run
       fails extractions stuck in `processing` past the timeout and expires
       abandoned upload intents. Runs are single-flight: a trigger that
       arrives while a sweep is in progress is skipped, not queued.
Who:   Started and stopped by the FastAPI lifespan; `run_once()` is also
       called directly by tests.

Why a sweep is needed:
    A dispatched job can vanish (worker crash, lost callback, pool shutdown
    with jobs still queued). Nothing else would ever move such an asset out
    of `processing`.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from inkwell.config import settings
from inkwell.schemas.asset import ReconciliationReport
from inkwell.services.asset_lifecycle import AssetLifecycle

logger = logging.getLogger(__name__)


class ReconciliationScheduler:
    def __init__(
        self,
        lifecycle: AssetLifecycle,
        interval_seconds: Optional[float] = None,
        timeout: Optional[timedelta] = None,
    ):
        self.lifecycle = lifecycle
        self.interval_seconds = (
            interval_seconds
            if interval_seconds is not None
            else settings.reconciliation_interval_seconds
        )
        self.timeout = (
            timeout if timeout is not None else timedelta(minutes=settings.extraction_timeout_minutes)
        )
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self.last_report: Optional[ReconciliationReport] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop(), name="reconciliation")
        logger.info(
            "Reconciliation scheduler started (interval=%ss, timeout=%s)",
            self.interval_seconds,
            self.timeout,
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Reconciliation scheduler stopped")

    async def run_once(self, now: Optional[datetime] = None) -> Optional[ReconciliationReport]:
        """
        Run one sweep.

        Returns:
            The combined report, or None if a sweep was already running.
        """
        if self._lock.locked():
            logger.info("Reconciliation already running; skipping this trigger")
            return None

        async with self._lock:
            timeouts = await self.lifecycle.reconcile_timeouts(threshold=self.timeout, now=now)
            expiry = await self.lifecycle.expire_upload_intents(now=now)

        report = ReconciliationReport(
            stuck_found=timeouts.stuck_found,
            timed_out=timeouts.timed_out,
            expired_intents=expiry.expired_intents,
            errors=timeouts.errors + expiry.errors,
        )
        self.last_report = report
        logger.debug("Reconciliation finished: %s", report.model_dump())
        return report

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.run_once()
            except Exception:
                logger.exception("Reconciliation sweep failed; retrying next interval")
