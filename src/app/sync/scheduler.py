"""Background maintenance scheduler for the sync queue.

Provides a lightweight APScheduler wrapper:
- Polling backup every POLLING_INTERVAL_SECONDS (catches writes that bypassed the outbox)
- Stale PROCESSING recovery every 5 minutes
- Daily cleanup of COMPLETED jobs at 3:00 AM

Exports:
    SyncScheduler: Async scheduler for queue maintenance jobs.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from src.app.sync.detector import ChangeDetector
from src.app.sync.store import SyncQueueStore

logger = structlog.get_logger(__name__)

STALE_RECOVERY_INTERVAL_MINUTES = 5


class SyncScheduler:
    """Runs queue maintenance on timers inside the application event loop.

    Each job logs and swallows its own failure so one bad run never
    unschedules the job.

    Args:
        detector: ChangeDetector whose polling backup is run.
        store: Queue store for stale recovery and cleanup.
        polling_interval_seconds: Seconds between polling backup passes.
        stale_after_seconds: PROCESSING age after which a job is reset.
        retention_days: Age after which COMPLETED jobs are deleted.
    """

    def __init__(
        self,
        detector: ChangeDetector,
        store: SyncQueueStore,
        polling_interval_seconds: int = 60,
        stale_after_seconds: int = 600,
        retention_days: int = 7,
    ) -> None:
        self._detector = detector
        self._store = store
        self._polling_interval = polling_interval_seconds
        self._stale_after = stale_after_seconds
        self._retention_days = retention_days
        self._scheduler: AsyncIOScheduler | None = None
        self._started = False
        self._last_poll: datetime | None = None

    @property
    def running(self) -> bool:
        return self._started

    def start(self) -> bool:
        """Start the scheduler. Returns False if it is already running."""
        if self._started:
            return False

        self._scheduler = AsyncIOScheduler(timezone=timezone.utc)

        self._scheduler.add_job(
            self.poll_missed_changes,
            trigger=IntervalTrigger(seconds=self._polling_interval),
            id="sync_polling_backup",
            name="Queue items modified outside the outbox",
            max_instances=1,
            coalesce=True,
        )

        self._scheduler.add_job(
            self.recover_stale_jobs,
            trigger=IntervalTrigger(minutes=STALE_RECOVERY_INTERVAL_MINUTES),
            id="sync_stale_recovery",
            name="Reset PROCESSING jobs left by stopped workers",
            max_instances=1,
            coalesce=True,
        )

        self._scheduler.add_job(
            self.cleanup_completed_jobs,
            trigger=CronTrigger(hour=3, minute=0),
            id="sync_completed_cleanup",
            name="Delete old COMPLETED jobs",
            misfire_grace_time=3600,
        )

        self._scheduler.start()
        self._started = True
        logger.info(
            "sync_scheduler_started",
            jobs=["polling_backup", "stale_recovery", "completed_cleanup"],
            polling_interval_seconds=self._polling_interval,
        )
        return True

    async def poll_missed_changes(self) -> int:
        """Run one polling backup pass over rows changed since the last pass."""
        now = datetime.now(timezone.utc)
        since = self._last_poll or now - timedelta(seconds=self._polling_interval * 2)
        try:
            job_ids = await self._detector.detect_missed_changes(since)
        except Exception as exc:
            logger.error("sync_polling_backup_failed", error=str(exc))
            return 0
        self._last_poll = now
        return len(job_ids)

    async def recover_stale_jobs(self) -> int:
        try:
            job_ids = await self._store.recover_stale(self._stale_after)
        except Exception as exc:
            logger.error("sync_stale_recovery_failed", error=str(exc))
            return 0
        return len(job_ids)

    async def cleanup_completed_jobs(self) -> int:
        try:
            return await self._store.cleanup_completed(self._retention_days)
        except Exception as exc:
            logger.error("sync_cleanup_failed", error=str(exc))
            return 0

    def stop(self) -> None:
        """Shut down the scheduler."""
        if self._scheduler and self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False
            logger.info("sync_scheduler_stopped")


__all__ = ["SyncScheduler"]
