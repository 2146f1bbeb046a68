"""Periodic reference-data sync.

Runs ``SyncOrchestrator.run_sync`` every ``sync_interval_hours`` (6 by
default) on the application's event loop. One process never overlaps its
own runs; separate processes may, and the writer's commit order handles that.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .models import SyncReport, utcnow
from .sync import SyncOrchestrator

logger = logging.getLogger(__name__)

JOB_ID = "reference_data_sync"


class SyncScheduler:
    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        interval_hours: float = 6,
        run_on_start: bool = False,
    ) -> None:
        self._orchestrator = orchestrator
        self._interval_hours = interval_hours
        self._run_on_start = run_on_start
        self._scheduler: Optional[AsyncIOScheduler] = None

    async def _sync_job(self) -> None:
        """Job function for the scheduled sync."""
        try:
            await self._orchestrator.run_sync()
        except Exception:
            logger.exception("Scheduled reference data sync crashed")

    @property
    def running(self) -> bool:
        return self._scheduler is not None

    def start(self) -> None:
        """Start the scheduler. Must be called with an event loop running."""
        if self._scheduler is not None:
            return

        self._scheduler = AsyncIOScheduler(timezone="UTC")
        job_options: Dict[str, Any] = {}
        if self._run_on_start:
            job_options["next_run_time"] = utcnow()
        self._scheduler.add_job(
            self._sync_job,
            trigger=IntervalTrigger(hours=self._interval_hours),
            id=JOB_ID,
            name="Reference data sync",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
            **job_options,
        )
        self._scheduler.start()
        logger.info("Sync scheduler started (every %sh)", self._interval_hours)

    def stop(self) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Sync scheduler stopped")

    def next_run_time(self) -> Optional[datetime]:
        if self._scheduler is None:
            return None
        job = self._scheduler.get_job(JOB_ID)
        return job.next_run_time if job else None

    async def run_now(self) -> SyncReport:
        """Run a sync immediately, outside the schedule."""
        return await self._orchestrator.run_sync()
