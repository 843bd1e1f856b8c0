"""Indexing job processing."""

import asyncio
import logging
from datetime import datetime
from typing import Optional, Set
from uuid import UUID

from dateutil.relativedelta import relativedelta

from quota_jobs.batching import BatchExecutor
from quota_jobs.clients import IndexingApiClient
from quota_jobs.errors import (
    JobNotFoundError,
    NoCredentialAvailableError,
    QuotaExhaustedError,
)
from quota_jobs.locking import InFlightJobs, JobLockManager
from quota_jobs.models import (
    Credential,
    Job,
    JobStatus,
    JobUpdate,
    ScheduleType,
    SubmissionStatus,
    UrlSubmission,
    utcnow,
)
from quota_jobs.notifier import ProgressNotifier, safe_broadcast
from quota_jobs.rotator import CredentialRotator, CredentialScope
from quota_jobs.store import QuotaJobsStore

SCHEDULE_STEPS = {
    ScheduleType.HOURLY: relativedelta(hours=1),
    ScheduleType.DAILY: relativedelta(days=1),
    ScheduleType.WEEKLY: relativedelta(weeks=1),
    ScheduleType.MONTHLY: relativedelta(months=1),
}


def next_run_time(
    schedule_type: ScheduleType, previous: Optional[datetime], now: datetime
) -> Optional[datetime]:
    """
    Next due time of a recurring job, strictly after ``now``.

    Advances from the previous due time so a job keeps its slot; runs that
    were missed entirely are skipped rather than queued up.
    """
    step = SCHEDULE_STEPS.get(ScheduleType(schedule_type))
    if step is None:
        return None

    candidate = (previous or now) + step
    while candidate <= now:
        candidate += step
    return candidate


class IndexingJobProcessor:
    """
    Submits the pending URLs of an indexing job to the indexing API.

    A job is processed by at most one worker at a time: the in-process
    set filters rapid re-triggers and the lock manager guards across
    workers. Lock fields and the in-process entry are always cleared,
    whatever the outcome.
    """

    def __init__(
        self,
        store: QuotaJobsStore,
        locks: JobLockManager,
        rotator: CredentialRotator,
        client: IndexingApiClient,
        batch_executor: Optional[BatchExecutor] = None,
        notifier: Optional[ProgressNotifier] = None,
        in_flight: Optional[InFlightJobs] = None,
        batch_size: int = 10,
        batch_delay_seconds: float = 1.0,
        pending_job_limit: int = 5,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.locks = locks
        self.rotator = rotator
        self.client = client
        self.logger = logger or logging.getLogger(__name__)
        self.batch_executor = batch_executor or BatchExecutor(logger=self.logger)
        self.notifier = notifier
        self.pending_broadcasts: Set[asyncio.Task] = set()
        self.in_flight = in_flight if in_flight is not None else InFlightJobs()
        self.batch_size = batch_size
        self.batch_delay_seconds = batch_delay_seconds
        self.pending_job_limit = pending_job_limit

    async def process_job(self, job_id: UUID) -> bool:
        """
        Process one job end to end.

        Returns:
            True if the job ran to completion, False if it was skipped or failed
        """
        if not self.in_flight.try_add(job_id):
            self.logger.debug(f"Job {job_id} is already being processed in this process")
            return False

        try:
            if not await self.locks.acquire(job_id):
                return False

            job = None
            try:
                try:
                    job = await self.store.get_job(job_id)
                except JobNotFoundError:
                    self.logger.warning(f"Job {job_id} not found, skipping")
                    return False

                return await self._run(job)

            except Exception as e:
                self.logger.error(f"Job {job_id} failed: {str(e)}", exc_info=True)
                await self.store.mark_job_failed(job_id, str(e))
                if job is not None:
                    self._notify(
                        job, JobStatus.FAILED, await self._progress_of(job), error_message=str(e)
                    )
                return False

            finally:
                await self.locks.release(job_id)

        finally:
            self.in_flight.discard(job_id)

    async def process_pending_jobs(self, limit: Optional[int] = None) -> int:
        """
        Run due pending jobs one after another.

        Returns:
            Number of jobs that ran to completion
        """
        jobs = await self.store.list_pending_jobs(utcnow(), limit or self.pending_job_limit)
        if not jobs:
            return 0

        self.logger.info(f"Found {len(jobs)} pending indexing jobs")
        completed = 0
        for job in jobs:
            if await self.process_job(job.id):
                completed += 1
        return completed

    async def _run(self, job: Job) -> bool:
        started_at = utcnow()
        await self.store.mark_job_running(job.id, started_at)
        job.status = JobStatus.RUNNING
        job.started_at = started_at
        self._notify(job, JobStatus.RUNNING, job.progress())

        submissions = await self.store.list_pending_submissions(job.id)
        if not submissions:
            self.logger.info(f"Job {job.id} has no pending URLs")
            await self._complete(job)
            return True

        scope = CredentialScope(job.owner_id)
        credential = await self.rotator.get_active_credential(scope)
        if credential is None:
            raise NoCredentialAvailableError(str(scope))

        self.logger.info(
            f"Processing job {job.id}: {len(submissions)} URLs with credential {credential.id}"
        )

        state = {"credential": credential, "batches_done": 0}
        total_batches = (len(submissions) + self.batch_size - 1) // self.batch_size

        async def submit(submission: UrlSubmission) -> str:
            current = state["credential"]
            try:
                await self.client.submit(submission.url, current)
            except QuotaExhaustedError as e:
                await self.store.mark_submission_failed(
                    submission.id, current.id, str(e), SubmissionStatus.QUOTA_EXCEEDED
                )
                await self._record_failure(current)
                await self.rotator.mark_exhausted(current)
                raise
            except Exception as e:
                await self.store.mark_submission_failed(submission.id, current.id, str(e))
                await self._record_failure(current)
                raise

            await self.store.mark_submission_submitted(submission.id, current.id, utcnow())
            try:
                await self.rotator.record_usage(current.id, self.rotator.request_cost)
            except Exception as e:
                self.logger.error(
                    f"Failed to record usage for credential {current.id}: {str(e)}",
                    exc_info=True,
                )
            return submission.url

        async def after_batch(batch, outcomes) -> None:
            failed = sum(1 for outcome in outcomes if isinstance(outcome, BaseException))
            await self._add_progress(job, len(batch) - failed, failed, batch[-1].url)

            state["batches_done"] += 1
            if state["batches_done"] < total_batches:
                refreshed = await self.rotator.get_active_credential(scope)
                if refreshed is None:
                    raise NoCredentialAvailableError(str(scope))
                state["credential"] = refreshed

        result = await self.batch_executor.run_batches(
            submissions,
            self.batch_size,
            submit,
            self.batch_delay_seconds,
            on_batch=after_batch,
        )
        self.logger.info(
            f"Job {job.id} submitted {result.processed} URLs, {result.errors} failed"
        )

        await self._complete(job)
        return True

    async def _record_failure(self, credential: Credential) -> None:
        try:
            await self.rotator.record_failure(credential.id)
        except Exception as e:
            self.logger.error(
                f"Failed to record failed call for credential {credential.id}: {str(e)}",
                exc_info=True,
            )

    async def _add_progress(
        self, job: Job, successful: int, failed: int, current_url: str
    ) -> None:
        # Only the lock holder writes these counters, so read-then-write is safe.
        fresh = await self.store.get_job(job.id)
        processed = fresh.processed_urls + successful + failed
        successful_total = fresh.successful_urls + successful
        failed_total = fresh.failed_urls + failed
        total = fresh.total_urls
        percentage = min(100.0, round(processed / total * 100, 2)) if total else 100.0

        await self.store.update_job_progress(
            job.id, processed, successful_total, failed_total, percentage
        )

        job.total_urls = total
        job.processed_urls = processed
        job.successful_urls = successful_total
        job.failed_urls = failed_total
        job.progress_percentage = percentage
        self._notify(job, JobStatus.RUNNING, job.progress(), current_url=current_url)

    async def _complete(self, job: Job) -> None:
        now = utcnow()
        await self.store.mark_job_completed(job.id, now)
        job.status = JobStatus.COMPLETED
        job.completed_at = now
        self.logger.info(
            f"Job {job.id} completed: {job.successful_urls} successful, "
            f"{job.failed_urls} failed of {job.total_urls}"
        )
        self._notify(job, JobStatus.COMPLETED, job.progress())

        if job.schedule_type != ScheduleType.ONE_TIME:
            next_run_at = next_run_time(job.schedule_type, job.next_run_at, now)
            created = await self.store.reschedule_job(job.id, next_run_at)
            self.logger.info(
                f"Rescheduled {job.schedule_type.value} job {job.id} for {next_run_at} "
                f"with {created} URLs"
            )

    async def _progress_of(self, job: Job):
        try:
            return (await self.store.get_job(job.id)).progress()
        except JobNotFoundError:
            return job.progress()

    def _notify(self, job: Job, status: JobStatus, progress, **extra) -> None:
        safe_broadcast(
            self.notifier,
            job.owner_id,
            job.id,
            JobUpdate(status=status, progress=progress, **extra),
            self.pending_broadcasts,
        )
