"""Scheduler manager for the periodic sync jobs.

Two interval jobs run on APScheduler's asyncio scheduler:
- poll: pull every linked account (the webhook-independent fallback)
- leases: renew webhook subscriptions well before they expire
"""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from todobridge.core.config import AppConfig
from todobridge.core.engine import DisabledSyncEngine, TodoSyncEngine

logger = logging.getLogger(__name__)

POLL_JOB_ID = "microsoft_poll"
LEASE_JOB_ID = "microsoft_lease_renewal"


class SchedulerManager:
    """Runs the polling and lease-renewal jobs for the sync engine."""

    def __init__(self, engine: TodoSyncEngine | DisabledSyncEngine, config: AppConfig):
        """Initialize the scheduler manager.

        Args:
            engine: Sync engine the jobs call into
            config: Application configuration
        """
        self.engine = engine
        self.config = config
        self.scheduler = AsyncIOScheduler()
        self._running = False

    @property
    def is_running(self) -> bool:
        """Return True if the scheduler is actively running."""
        return self._running

    async def start(self) -> None:
        """Register the jobs and start the scheduler."""
        if self._running:
            logger.warning("Scheduler already running")
            return

        if not self.engine.enabled:
            logger.info("Sync engine disabled, scheduler not started")
            return

        sync = self.config.sync
        self.scheduler.add_job(
            self._run_poll,
            trigger=IntervalTrigger(minutes=sync.poll_interval_minutes),
            id=POLL_JOB_ID,
            name="Poll Microsoft To Do",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        self.scheduler.add_job(
            self._run_lease_renewal,
            trigger=IntervalTrigger(minutes=sync.lease_renewal_interval_minutes),
            id=LEASE_JOB_ID,
            name="Renew webhook leases",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )

        self.scheduler.start()
        self._running = True
        logger.info(
            f"Scheduler started: poll every {sync.poll_interval_minutes} min, "
            f"lease renewal every {sync.lease_renewal_interval_minutes} min"
        )

    async def stop(self) -> None:
        """Stop the scheduler."""
        if not self._running:
            return

        self.scheduler.shutdown(wait=False)
        self._running = False
        logger.info("Scheduler stopped")

    def next_run_times(self) -> dict[str, str | None]:
        """Next fire time of each job, ISO formatted."""
        result: dict[str, str | None] = {}
        for job in self.scheduler.get_jobs():
            next_run = getattr(job, "next_run_time", None)
            result[job.id] = next_run.isoformat() if next_run else None
        return result

    async def _run_poll(self) -> None:
        try:
            await self.engine.sync_all_users()
        except Exception as e:
            logger.error(f"Scheduled poll failed: {e}")

    async def _run_lease_renewal(self) -> None:
        try:
            await self.engine.renew_leases()
        except Exception as e:
            logger.error(f"Scheduled lease renewal failed: {e}")
