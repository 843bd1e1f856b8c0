"""Quota reset detection and resumption of quota-paused jobs."""

import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from dateutil import tz

from quota_jobs.errors import QUOTA_EXHAUSTED_MARKER
from quota_jobs.locking import JobLockManager
from quota_jobs.models import Credential, JobStatus, Service, utcnow
from quota_jobs.rotator import QUOTA_EXHAUSTED_NOTIFICATION
from quota_jobs.store import QuotaJobsStore

SWEEP_LOCK_NAME = "quota_reset"
NOTIFICATION_RETENTION = timedelta(hours=24)
RESET_WINDOW_HOURS = (23, 0)

# Services whose quota renews every day. Other services hold a total
# allotment that only grows when an operator raises the limit.
DAILY_QUOTA_SERVICES = frozenset({Service.INDEXING})


class QuotaResetMonitor:
    """
    Periodic sweep that undoes quota exhaustion once a new period starts.

    Three independent steps run on every sweep: reactivate credentials,
    resume jobs that failed for lack of quota, and purge old quota
    notifications. A failing step is logged and does not stop the others.
    """

    def __init__(
        self,
        store: QuotaJobsStore,
        locks: JobLockManager,
        usage_threshold: int = 10,
        sweep_lock_ttl_seconds: int = 900,
        reset_timezone: str = "America/Los_Angeles",
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.locks = locks
        self.usage_threshold = usage_threshold
        self.sweep_lock_ttl_seconds = sweep_lock_ttl_seconds
        self.reset_tz_name = reset_timezone
        self.reset_tz = tz.gettz(reset_timezone)
        if self.reset_tz is None:
            raise ValueError(f"Unknown time zone: {reset_timezone}")
        self.logger = logger or logging.getLogger(__name__)
        self.is_running = False

    def in_reset_window(self, now: Optional[datetime] = None) -> bool:
        """True during the hours around the upstream midnight quota reset."""
        now = now or utcnow()
        return now.astimezone(self.reset_tz).hour in RESET_WINDOW_HOURS

    async def check_and_resume(self) -> Dict[str, Optional[int]]:
        """
        Run one sweep.

        Returns:
            Count per step, or None for a step that failed. Empty when another
            worker holds the sweep lock.
        """
        if not await self.locks.acquire_sweep(SWEEP_LOCK_NAME, self.sweep_lock_ttl_seconds):
            self.logger.info("Quota reset sweep already running elsewhere, skipping")
            return {}

        results: Dict[str, Optional[int]] = {}
        self.is_running = True
        try:
            for step in (
                self.reactivate_credentials,
                self.resume_paused_jobs,
                self.cleanup_old_notifications,
            ):
                try:
                    results[step.__name__] = await step()
                except Exception as e:
                    self.logger.error(f"Quota reset step {step.__name__} failed: {e}", exc_info=True)
                    results[step.__name__] = None
        finally:
            self.is_running = False
            await self.locks.release_sweep(SWEEP_LOCK_NAME)

        self.logger.info(f"Quota reset sweep finished: {results}")
        return results

    async def reactivate_credentials(self) -> int:
        """
        Reactivate quota-exhausted credentials that can be used again.

        Daily-quota credentials start a new period with usage reset to 0.
        Total-allotment credentials keep their usage and come back only when
        their limit has been raised above it.
        """
        now = utcnow()
        reactivated = 0
        scope_has_active: Dict[tuple, bool] = {}
        for credential in await self.store.list_quota_exhausted_credentials():
            if not await self._has_reset(credential, now):
                continue

            # One active credential per scope; the rest become standby.
            scope = (credential.service, credential.owner_id)
            if scope not in scope_has_active:
                active = await self.store.count_active_credentials(*scope)
                scope_has_active[scope] = active > 0
            activate = not scope_has_active[scope]

            reset_usage = credential.service in DAILY_QUOTA_SERVICES
            if await self.store.reactivate_credential(
                credential.id, activate=activate, reset_usage=reset_usage
            ):
                reactivated += 1
                scope_has_active[scope] = True
                self.logger.info(
                    f"Reactivated {credential.service.value} credential {credential.id} "
                    f"(owner {credential.owner_id or 'site'}, "
                    f"{'active' if activate else 'standby'})"
                )
        return reactivated

    async def _has_reset(self, credential: Credential, now: datetime) -> bool:
        if credential.quota_resets_at is not None and credential.quota_resets_at > now:
            return False
        if credential.service not in DAILY_QUOTA_SERVICES:
            # Total allotment: back only once the limit covers more usage.
            return credential.remaining > 0
        if credential.quota_resets_at is not None:
            return True
        # No explicit reset time; near-zero usage today means a new period began.
        requests_today = await self.store.get_daily_requests(credential.id, now.date())
        return requests_today < self.usage_threshold

    async def resume_paused_jobs(self) -> int:
        """Move quota-failed jobs back to pending once their owner has capacity."""
        resumed = 0
        capacity: Dict[str, bool] = {}
        for job in await self.store.list_failed_jobs_with_error(QUOTA_EXHAUSTED_MARKER):
            if job.status != JobStatus.FAILED:
                continue
            if job.owner_id not in capacity:
                active = await self.store.count_active_credentials(Service.INDEXING, job.owner_id)
                capacity[job.owner_id] = active > 0
            if not capacity[job.owner_id]:
                continue
            if await self.store.resume_job(job.id):
                resumed += 1
                self.logger.info(f"Resumed quota-paused job {job.id} for owner {job.owner_id}")
        return resumed

    async def cleanup_old_notifications(self) -> int:
        deleted = await self.store.delete_notifications_older_than(
            QUOTA_EXHAUSTED_NOTIFICATION, utcnow() - NOTIFICATION_RETENTION
        )
        if deleted:
            self.logger.info(f"Deleted {deleted} old quota notifications")
        return deleted
