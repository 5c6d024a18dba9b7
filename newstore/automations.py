import asyncio
import logging
from collections import Counter
from typing import Optional, Set

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from newstore.config import CONFIG, Config
from newstore.database.database import Database, db
from newstore.services.reconciliation_service import ReconciliationSweeper
from newstore.services.service_factory import ServiceFactory, get_service_factory
from newstore.tasks.job_expire_reservations import job_expire_reservations
from newstore.tasks.job_reconcile_payments import job_reconcile_payments

logger = logging.getLogger(__name__)


class NewStoreAutomations:
    """Periodic housekeeping plus tracked fire-and-forget jobs.

    Request handlers hand work to `track_job` instead of awaiting it; the
    scheduler runs the expiry sweep and, when enabled, the reconciliation
    sweep on fixed intervals.
    """

    def __init__(
        self,
        sweeper: Optional[ReconciliationSweeper] = None,
        database: Optional[Database] = None,
        factory: Optional[ServiceFactory] = None,
        config: Optional[Config] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self._running_jobs: Set[asyncio.Task] = set()
        self._job_lock = asyncio.Lock()
        self._shutdown_timeout = 30.0
        self._setup_done = False
        self.job_failures: Counter[str] = Counter()

        self.config = config or CONFIG
        self.database = database or db
        self.factory = factory or get_service_factory()
        self.sweeper = sweeper

        self.scheduler = scheduler or AsyncIOScheduler(
            executors={"default": AsyncIOExecutor()}
        )

    @property
    def active_jobs(self) -> int:
        return len(self._running_jobs)

    async def start(self):
        if not self.scheduler.running:
            self.scheduler.start()
            logger.debug("Scheduler started successfully")
        await self.setup_automations()

    async def stop(self):
        """Initiates shutdown and cleanup of scheduled jobs."""
        logger.info("Initiating shutdown of automations...")

        try:
            if self.scheduler.running:
                self.scheduler.pause()

            await self.wait_for_jobs_to_complete()

            if self.scheduler.running:
                self.scheduler.remove_all_jobs()
                self.scheduler.shutdown(wait=False)

            logger.info("Automation shutdown completed successfully")
        except Exception as e:
            logger.error(f"Error during automation shutdown: {e}")
            raise

    async def wait_for_jobs_to_complete(self, timeout: Optional[float] = None):
        """Waits for all active jobs to complete before completing."""
        timeout = self._shutdown_timeout if timeout is None else timeout
        async with self._job_lock:
            jobs = list(self._running_jobs)

        if not jobs:
            logger.info("No active jobs to wait for...")
            return

        logger.info(f"Waiting for {len(jobs)} job(s) to finish...")

        try:
            await asyncio.wait_for(
                asyncio.gather(*jobs, return_exceptions=True),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Timeout waiting for jobs to complete after {timeout}s, forcing shutdown"
            )
            for job in jobs:
                if not job.done():
                    job.cancel()
                    logger.warning(f"Cancelled job: {job.get_name()}")

    async def track_job(self, job_func, *args, **kwargs) -> asyncio.Task:
        """Track a running job by wrapping it in a task and storing the reference."""
        job_name = getattr(job_func, "__name__", str(job_func))
        task = asyncio.create_task(
            self._safe_job_wrapper(job_func, *args, **kwargs), name=job_name
        )

        async with self._job_lock:
            self._running_jobs.add(task)

        task.add_done_callback(self._job_done_callback)

        logger.debug(f"Started job: {job_name}")
        return task

    def _job_done_callback(self, task: asyncio.Task):
        """Remove the job from the running set once it is finished."""
        self._running_jobs.discard(task)
        logger.debug(f"Job {task.get_name()} done. {self.active_jobs} job(s) active.")

    def _job_wrapper(self, job_func, *args, **kwargs):
        """Scheduler entry point that routes each firing through track_job."""

        async def async_wrapper():
            try:
                await self.track_job(job_func, *args, **kwargs)
            except Exception as e:
                logger.error(
                    f"Failed to execute job {job_func.__name__}: {type(e).__name__}: {e}"
                )

        async_wrapper.__name__ = f"{job_func.__name__}_wrapper"
        async_wrapper.__qualname__ = f"NewStoreAutomations.{job_func.__name__}_wrapper"
        return async_wrapper

    async def _safe_job_wrapper(self, job_func, *args, **kwargs):
        """Run a job, logging and counting failures instead of propagating them."""
        job_name = getattr(job_func, "__name__", str(job_func))

        try:
            logger.debug(f"Starting job: {job_name}")
            result = await job_func(*args, **kwargs)
            logger.debug(f"Job completed successfully: {job_name}")
            return result
        except asyncio.CancelledError:
            logger.warning(f"Job was cancelled: {job_name}")
            raise
        except Exception as e:
            self.job_failures[job_name] += 1
            logger.error(
                f"Job failed with exception: {job_name} - {type(e).__name__}: {e}",
                exc_info=True,
            )
            return None

    async def setup_automations(self):
        """Add jobs to scheduler."""
        if self._setup_done:
            logger.warning("Automation setup already completed, skipping...")
            return

        self.scheduler.remove_all_jobs()

        self.scheduler.add_job(
            self._job_wrapper(
                job_expire_reservations, database=self.database, factory=self.factory
            ),
            IntervalTrigger(seconds=self.config.EXPIRE_SWEEP_INTERVAL_SECONDS),
            id="expire_reservations",
            name="Reservation Expiry Job",
            max_instances=1,
            coalesce=True,
        )

        interval = self.config.AUTO_RECONCILE_INTERVAL_SECONDS
        if interval > 0 and self.sweeper is not None:
            self.scheduler.add_job(
                self._job_wrapper(job_reconcile_payments, self.sweeper),
                IntervalTrigger(seconds=interval),
                id="reconcile_payments",
                name="Payment Reconciliation Job",
                max_instances=1,
                coalesce=True,
            )
        else:
            logger.info("Periodic payment reconciliation disabled")

        self._setup_done = True
        logger.info("Automation setup completed successfully")
