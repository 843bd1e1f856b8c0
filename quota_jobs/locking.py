"""Job and sweep locking."""

import logging
import random
import string
import time
from datetime import timedelta
from typing import Optional
from uuid import UUID

from quota_jobs.models import utcnow
from quota_jobs.store import QuotaJobsStore


def make_holder_token(prefix: str = "worker") -> str:
    """Holder token of the form ``<prefix>-<ms>-<random>``."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


class InFlightJobs:
    """Set of job ids currently executing in this process."""

    def __init__(self):
        self._job_ids = set()

    def try_add(self, job_id) -> bool:
        """Add ``job_id``; False if it was already present."""
        if job_id in self._job_ids:
            return False
        self._job_ids.add(job_id)
        return True

    def discard(self, job_id) -> None:
        self._job_ids.discard(job_id)

    def __contains__(self, job_id) -> bool:
        return job_id in self._job_ids

    def __len__(self) -> int:
        return len(self._job_ids)


class JobLockManager:
    """
    Exclusive claims on jobs and periodic sweeps.

    Every acquire is a single conditional write in the store, so two
    concurrent callers can never both win the same job.
    """

    def __init__(
        self,
        store: QuotaJobsStore,
        holder: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.holder = holder or make_holder_token()
        self.logger = logger or logging.getLogger(__name__)

    async def acquire(self, job_id: UUID) -> bool:
        """Claim a job. Returns False when another holder has it."""
        claimed = await self.store.claim_job(job_id, self.holder, utcnow())
        if claimed:
            self.logger.debug(f"Acquired lock on job {job_id} as {self.holder}")
        else:
            self.logger.debug(f"Job {job_id} is already locked, skipping")
        return claimed

    async def release(self, job_id: UUID) -> None:
        await self.store.release_job(job_id)
        self.logger.debug(f"Released lock on job {job_id}")

    async def acquire_sweep(self, name: str, ttl_seconds: int) -> bool:
        """Claim a named sweep lock; a claim older than ``ttl_seconds`` is taken over."""
        now = utcnow()
        claimed = await self.store.claim_sweep(
            name, self.holder, now, now - timedelta(seconds=ttl_seconds)
        )
        if not claimed:
            self.logger.debug(f"Sweep {name} is held by another worker, skipping")
        return claimed

    async def release_sweep(self, name: str) -> None:
        await self.store.release_sweep(name, self.holder)
