"""Scheduler service - runs the scanner, series compactor and retention sweeper.

- Scanner: one long-lived asyncio task; it paces itself (10s between batches,
  30s when idle or when the store is unreachable).
- Series compactor: APScheduler job every 5 minutes.
- Retention sweeper: APScheduler job every 24 hours.

All three observe the same stop event. Each loop writes its own columns
(scan timing, series blob, deletions), so no locking is needed between them.
"""
import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..config import Settings
from .alerter import AlerterService
from .compactor import SeriesCompactor
from .ledger import IssueLedger
from .notifier import SlackNotifier
from .probe import ProbeService
from .scanner import ScannerService
from .sweeper import RetentionSweeper

logger = logging.getLogger(__name__)

COMPACTION_INTERVAL_MINUTES = 5
RETENTION_INTERVAL_HOURS = 24

# Time allowed for an in-flight probe to finish on shutdown
SHUTDOWN_GRACE_SECONDS = 30


class SchedulerService:
    """Starts and stops the three background loops."""

    def __init__(self, scanner: ScannerService, compactor: SeriesCompactor, sweeper: RetentionSweeper):
        self.scanner = scanner
        self.compactor = compactor
        self.sweeper = sweeper
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.stop_event: Optional[asyncio.Event] = None
        self._scanner_task: Optional[asyncio.Task] = None
        self._job_tasks: Set[asyncio.Task] = set()
        self._running = False

    def start(self):
        """Start the loops. Must be called from a running event loop."""
        if self._running:
            return

        self.stop_event = asyncio.Event()
        self.scheduler = AsyncIOScheduler()

        self.scheduler.add_job(
            self._run_job,
            trigger=IntervalTrigger(minutes=COMPACTION_INTERVAL_MINUTES),
            args=["series compaction", self.compactor.run],
            id="compact_series",
            replace_existing=True,
            max_instances=1,
            next_run_time=datetime.now(),
        )

        self.scheduler.add_job(
            self._run_job,
            trigger=IntervalTrigger(hours=RETENTION_INTERVAL_HOURS),
            args=["retention sweep", self.sweeper.run],
            id="retention_sweep",
            replace_existing=True,
            max_instances=1,
            next_run_time=datetime.now(),
        )

        self.scheduler.start()
        self._scanner_task = asyncio.create_task(self.scanner.run(self.stop_event))
        self._running = True
        logger.info(
            f"Scheduler started (compaction every {COMPACTION_INTERVAL_MINUTES}m, "
            f"retention every {RETENTION_INTERVAL_HOURS}h)"
        )

    async def stop(self):
        """Signal all loops to stop and wait for the scanner to wind down."""
        if not self._running:
            return

        self.stop_event.set()
        self.scheduler.shutdown(wait=False)
        try:
            await asyncio.wait_for(self._scanner_task, timeout=SHUTDOWN_GRACE_SECONDS)
        except asyncio.TimeoutError:
            logger.warning("Scanner did not stop in time, cancelled")

        # Running jobs see the stop event and end after their current step
        if self._job_tasks:
            _done, pending = await asyncio.wait(set(self._job_tasks), timeout=SHUTDOWN_GRACE_SECONDS)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning(f"{len(pending)} background job(s) did not stop in time, cancelled")
                await asyncio.wait(pending)

        self._running = False
        logger.info("Scheduler stopped")

    async def _run_job(self, name: str, job: Callable[..., Awaitable]):
        """Run a periodic job so that stop() can wait for it."""
        task = asyncio.current_task()
        self._job_tasks.add(task)
        try:
            await job(stop_event=self.stop_event)
        except Exception as e:
            logger.exception(f"Error in {name}: {e}")
        finally:
            self._job_tasks.discard(task)

    @property
    def running(self) -> bool:
        return self._running


def create_scheduler(settings: Settings, session_factory: async_sessionmaker) -> SchedulerService:
    """Wire the services from settings."""
    notifier = SlackNotifier(settings.slack.url, timeout=settings.slack.timeout_seconds)
    alerter = AlerterService(notifier)
    ledger = IssueLedger(alerter)
    probe = ProbeService(timeout=settings.probe.timeout_seconds, ca_file=settings.probe.ca_file)
    scanner = ScannerService(
        session_factory,
        probe,
        ledger,
        alerter,
        ssl_warn_days=settings.probe.ssl_warn_days,
    )
    return SchedulerService(
        scanner,
        SeriesCompactor(session_factory),
        RetentionSweeper(session_factory),
    )
