"""Background services: registers and drives every periodic worker."""

import logging
import time
from datetime import timedelta
from typing import Any, Dict, Optional

from quota_jobs.indexing import IndexingJobProcessor
from quota_jobs.models import BatchResult, utcnow
from quota_jobs.quota_reset import QuotaResetMonitor
from quota_jobs.rank_checks import DailyRankCheckJob, RankCheckBatchProcessor
from quota_jobs.rotator import CredentialRotator, CredentialScope
from quota_jobs.store import QuotaJobsStore
from quota_jobs.triggers import AsyncioTriggerRegistry, CronSpec, TriggerRegistry

DAILY_RANK_CHECK = "daily_rank_check"
QUOTA_RESET = "quota_reset"
QUOTA_RESET_FREQUENT = "quota_reset_frequent"
JOB_MONITOR = "job_monitor"


class JobMonitor:
    """Recovers stale job locks and runs due pending indexing jobs."""

    def __init__(
        self,
        store: QuotaJobsStore,
        processor: IndexingJobProcessor,
        lock_ttl_seconds: int = 3600,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.processor = processor
        self.lock_ttl_seconds = lock_ttl_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.is_running = False

    async def run(self) -> Optional[Dict[str, int]]:
        if self.is_running:
            self.logger.debug("Job monitor tick still running, skipping")
            return None

        self.is_running = True
        try:
            stale_before = utcnow() - timedelta(seconds=self.lock_ttl_seconds)
            reverted = await self.store.revert_stale_locks(stale_before)
            if reverted > 0:
                self.logger.warning(f"Reverted {reverted} jobs with stale locks to pending")

            completed = await self.processor.process_pending_jobs()
            return {"reverted": reverted, "completed": completed}
        finally:
            self.is_running = False


class BackgroundServices:
    """
    Owns the periodic triggers of a worker process.

    ``initialize()`` registers each trigger once per instance. The manual
    ``trigger_*`` methods call the workers directly and do not depend on
    the triggers being registered.
    """

    def __init__(
        self,
        rank_job: DailyRankCheckJob,
        quota_monitor: QuotaResetMonitor,
        job_monitor: JobMonitor,
        rank_rotator: CredentialRotator,
        triggers: Optional[TriggerRegistry] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.rank_job = rank_job
        self.quota_monitor = quota_monitor
        self.job_monitor = job_monitor
        self.rank_rotator = rank_rotator
        self.logger = logger or logging.getLogger(__name__)
        self.triggers = triggers if triggers is not None else AsyncioTriggerRegistry(self.logger)
        self._initialized = False
        self._started_at: Optional[float] = None

    @property
    def rank_processor(self) -> RankCheckBatchProcessor:
        return self.rank_job.processor

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Register and start all periodic triggers. Safe to call repeatedly."""
        if self._initialized:
            self.logger.debug("Background services already initialized")
            return

        reset_tz = self.quota_monitor.reset_tz_name

        schedules = [
            (DAILY_RANK_CHECK, CronSpec.parse("0 2 * * *", "UTC"), self._run_daily_rank_check),
            (QUOTA_RESET, CronSpec.parse("5 * * * *", reset_tz), self._run_quota_reset),
            (
                QUOTA_RESET_FREQUENT,
                CronSpec.parse("*/15 * * * *", reset_tz),
                self._run_frequent_quota_reset,
            ),
            (JOB_MONITOR, CronSpec.parse("* * * * *", "UTC"), self._run_job_monitor),
        ]
        for name, spec, callback in schedules:
            # Registrations survive shutdown(); re-initializing only restarts them.
            if not self.triggers.is_registered(name):
                self.triggers.register(name, spec, callback)
        await self.triggers.start()

        self._initialized = True
        self._started_at = time.monotonic()
        self.logger.info("Background services initialized")

        try:
            stats = await self.rank_processor.get_processing_stats()
            health = await self.rank_rotator.check_health(CredentialScope())
            self.logger.info(
                f"Rank checks: {stats.pending_checks}/{stats.total_keywords} due today; "
                f"rank-data quota {health.status} ({health.utilization_percentage}% used)"
            )
        except Exception as e:
            self.logger.warning(f"Could not load initial stats: {e}")

    async def _run_daily_rank_check(self) -> None:
        await self.rank_job.run()

    async def _run_quota_reset(self) -> None:
        await self.quota_monitor.check_and_resume()

    async def _run_frequent_quota_reset(self) -> None:
        if self.quota_monitor.in_reset_window():
            await self.quota_monitor.check_and_resume()

    async def _run_job_monitor(self) -> None:
        await self.job_monitor.run()

    def get_status(self) -> Dict[str, Any]:
        """Whether each trigger is registered and whether its worker is executing."""
        return {
            "initialized": self._initialized,
            "services": {
                DAILY_RANK_CHECK: {
                    "registered": self.triggers.is_registered(DAILY_RANK_CHECK),
                    "running": self.rank_job.is_running,
                },
                QUOTA_RESET: {
                    "registered": self.triggers.is_registered(QUOTA_RESET),
                    "running": self.quota_monitor.is_running,
                },
                QUOTA_RESET_FREQUENT: {
                    "registered": self.triggers.is_registered(QUOTA_RESET_FREQUENT),
                    "running": self.quota_monitor.is_running,
                },
                JOB_MONITOR: {
                    "registered": self.triggers.is_registered(JOB_MONITOR),
                    "running": self.job_monitor.is_running,
                },
            },
        }

    async def get_background_services_status(self) -> Dict[str, Any]:
        status = self.get_status()
        status["uptime_seconds"] = (
            round(time.monotonic() - self._started_at, 1) if self._started_at else 0.0
        )
        status["service_list"] = sorted(status["services"])
        status["triggers"] = self.triggers.status()
        status["rank_check"] = self.rank_job.status()

        try:
            health = await self.rank_rotator.check_health(CredentialScope())
            status["quota_health"] = health.model_dump()
        except Exception as e:
            self.logger.error(f"Failed to load quota health: {e}", exc_info=True)
            status["quota_health"] = None
        return status

    async def trigger_manual_rank_check(self) -> Optional[BatchResult]:
        """Run a rank-check cycle now. Raises JobAlreadyRunningError if one is running."""
        self.logger.info("Manual rank check triggered")
        return await self.rank_job.run(manual=True)

    async def trigger_job_monitor(self) -> Optional[Dict[str, int]]:
        self.logger.info("Manual job monitor run triggered")
        return await self.job_monitor.run()

    async def trigger_quota_reset_check(self) -> Dict[str, Optional[int]]:
        self.logger.info("Manual quota reset check triggered")
        return await self.quota_monitor.check_and_resume()

    async def shutdown(self) -> None:
        """Stop all periodic triggers."""
        await self.triggers.stop()
        self._initialized = False
        self.logger.info("Background services stopped")
