"""Database store layer for the quota jobs engine."""

from datetime import date, datetime
from typing import Optional
from uuid import UUID, uuid4

import asyncpg

from quota_jobs.errors import JobNotFoundError
from quota_jobs.models import (
    Credential,
    CredentialHealth,
    DeactivationReason,
    Job,
    JobStatus,
    KeywordTask,
    RankResult,
    Service,
    SubmissionStatus,
    UrlSubmission,
)


def _affected(result: Optional[str]) -> int:
    """Extract the row count from a status string like ``UPDATE 5``."""
    return int(result.split()[-1]) if result else 0


class QuotaJobsStore:
    """Database layer for jobs, submissions, credentials and keyword tasks."""

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    # Jobs

    async def claim_job(self, job_id: UUID, holder: str, now: datetime) -> bool:
        """
        Claim a job for processing with a single conditional update.

        The claim succeeds only if nobody holds the job or the job is not
        running. Returns True iff a row was updated.
        """
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE indexing_jobs
                SET locked_by = $1, locked_at = $2, status = $3, updated_at = now()
                WHERE id = $4
                  AND (locked_by IS NULL OR status <> $3)
                RETURNING id
                """,
                holder,
                now,
                JobStatus.RUNNING.value,
                job_id,
            )
        return row is not None

    async def release_job(self, job_id: UUID) -> None:
        """Clear the lock fields of a job unconditionally."""
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE indexing_jobs
                SET locked_by = NULL, locked_at = NULL, updated_at = now()
                WHERE id = $1
                """,
                job_id,
            )

    async def get_job(self, job_id: UUID) -> Job:
        """Get a job by ID."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM indexing_jobs WHERE id = $1", job_id)

        if not row:
            raise JobNotFoundError(str(job_id))

        return self._row_to_job(row)

    async def list_pending_jobs(self, now: datetime, limit: int) -> list[Job]:
        """Pending, unlocked jobs whose next run is due, oldest first."""
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM indexing_jobs
                WHERE status = $1
                  AND locked_by IS NULL
                  AND (next_run_at IS NULL OR next_run_at <= $2)
                ORDER BY created_at ASC
                LIMIT $3
                """,
                JobStatus.PENDING.value,
                now,
                limit,
            )
        return [self._row_to_job(row) for row in rows]

    async def mark_job_running(self, job_id: UUID, started_at: datetime) -> None:
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE indexing_jobs
                SET status = $1, started_at = $2, error_message = NULL, updated_at = now()
                WHERE id = $3
                """,
                JobStatus.RUNNING.value,
                started_at,
                job_id,
            )

    async def update_job_progress(
        self,
        job_id: UUID,
        processed: int,
        successful: int,
        failed: int,
        progress_percentage: float,
    ) -> None:
        """Write the job's counters."""
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE indexing_jobs
                SET processed_urls = $1,
                    successful_urls = $2,
                    failed_urls = $3,
                    progress_percentage = $4,
                    updated_at = now()
                WHERE id = $5
                """,
                processed,
                successful,
                failed,
                progress_percentage,
                job_id,
            )

    async def mark_job_completed(self, job_id: UUID, completed_at: datetime) -> None:
        """Mark a job as completed and clear its lock."""
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE indexing_jobs
                SET status = $1,
                    completed_at = $2,
                    locked_by = NULL,
                    locked_at = NULL,
                    updated_at = now()
                WHERE id = $3
                """,
                JobStatus.COMPLETED.value,
                completed_at,
                job_id,
            )

    async def mark_job_failed(self, job_id: UUID, error_message: str) -> None:
        """Mark a job as failed and clear its lock."""
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE indexing_jobs
                SET status = $1,
                    error_message = $2,
                    locked_by = NULL,
                    locked_at = NULL,
                    updated_at = now()
                WHERE id = $3
                """,
                JobStatus.FAILED.value,
                error_message,
                job_id,
            )

    async def list_failed_jobs_with_error(self, marker: str) -> list[Job]:
        """Failed jobs whose error message contains ``marker`` (case-insensitive)."""
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM indexing_jobs
                WHERE status = $1
                  AND error_message ILIKE $2
                ORDER BY created_at ASC
                """,
                JobStatus.FAILED.value,
                f"%{marker}%",
            )
        return [self._row_to_job(row) for row in rows]

    async def resume_job(self, job_id: UUID) -> bool:
        """Move a failed job back to pending and clear its error message."""
        async with self.db_pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE indexing_jobs
                SET status = $1, error_message = NULL, updated_at = now()
                WHERE id = $2 AND status = $3
                """,
                JobStatus.PENDING.value,
                job_id,
                JobStatus.FAILED.value,
            )
        return _affected(result) > 0

    async def revert_stale_locks(self, stale_before: datetime) -> int:
        """
        Return running jobs whose lock is older than ``stale_before`` to pending.

        Returns the number of jobs reverted.
        """
        async with self.db_pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE indexing_jobs
                SET status = $1,
                    locked_by = NULL,
                    locked_at = NULL,
                    error_message = 'Lock expired - worker may have crashed',
                    updated_at = now()
                WHERE status = $2
                  AND locked_at < $3
                """,
                JobStatus.PENDING.value,
                JobStatus.RUNNING.value,
                stale_before,
            )
        return _affected(result)

    async def reschedule_job(self, job_id: UUID, next_run_at: datetime) -> int:
        """
        Queue the next run of a recurring job.

        Inserts a fresh pending submission for every URL of the latest run
        (older rows are kept as history), resets the counters and moves the
        job back to pending. Returns the number of submissions created.
        """
        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                last_run = await conn.fetchval(
                    "SELECT COALESCE(MAX(run_number), 0) FROM url_submissions WHERE job_id = $1",
                    job_id,
                )
                urls = await conn.fetch(
                    """
                    SELECT url FROM url_submissions
                    WHERE job_id = $1 AND run_number = $2
                    ORDER BY created_at ASC
                    """,
                    job_id,
                    last_run,
                )
                await conn.executemany(
                    """
                    INSERT INTO url_submissions (id, job_id, url, status, run_number)
                    VALUES ($1, $2, $3, $4, $5)
                    """,
                    [
                        (uuid4(), job_id, row["url"], SubmissionStatus.PENDING.value, last_run + 1)
                        for row in urls
                    ],
                )
                await conn.execute(
                    """
                    UPDATE indexing_jobs
                    SET status = $1,
                        total_urls = $2,
                        processed_urls = 0,
                        successful_urls = 0,
                        failed_urls = 0,
                        progress_percentage = 0,
                        next_run_at = $3,
                        locked_by = NULL,
                        locked_at = NULL,
                        updated_at = now()
                    WHERE id = $4
                    """,
                    JobStatus.PENDING.value,
                    len(urls),
                    next_run_at,
                    job_id,
                )
        return len(urls)

    # URL submissions

    async def list_pending_submissions(self, job_id: UUID) -> list[UrlSubmission]:
        """Pending submissions of a job in creation order."""
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM url_submissions
                WHERE job_id = $1 AND status = $2
                ORDER BY created_at ASC
                """,
                job_id,
                SubmissionStatus.PENDING.value,
            )
        return [self._row_to_submission(row) for row in rows]

    async def mark_submission_submitted(
        self, submission_id: UUID, credential_id: UUID, submitted_at: datetime
    ) -> None:
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE url_submissions
                SET status = $1, credential_id = $2, submitted_at = $3, error_message = NULL
                WHERE id = $4 AND status = $5
                """,
                SubmissionStatus.SUBMITTED.value,
                credential_id,
                submitted_at,
                submission_id,
                SubmissionStatus.PENDING.value,
            )

    async def mark_submission_failed(
        self,
        submission_id: UUID,
        credential_id: Optional[UUID],
        error_message: str,
        status: SubmissionStatus = SubmissionStatus.FAILED,
    ) -> None:
        """Record a failed submission and bump its retry count."""
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE url_submissions
                SET status = $1,
                    credential_id = $2,
                    error_message = $3,
                    retry_count = retry_count + 1
                WHERE id = $4 AND status = $5
                """,
                status.value,
                credential_id,
                error_message,
                submission_id,
                SubmissionStatus.PENDING.value,
            )

    # Credentials

    async def get_active_credential(
        self, service: Service, owner_id: Optional[str]
    ) -> Optional[Credential]:
        """The active credential of a scope, if any."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM credentials
                WHERE service = $1
                  AND owner_id IS NOT DISTINCT FROM $2
                  AND is_active
                ORDER BY created_at ASC
                LIMIT 1
                """,
                service.value,
                owner_id,
            )
        return self._row_to_credential(row) if row else None

    async def list_credentials(
        self, service: Service, owner_id: Optional[str]
    ) -> list[Credential]:
        """Every credential of a scope in creation order."""
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM credentials
                WHERE service = $1 AND owner_id IS NOT DISTINCT FROM $2
                ORDER BY created_at ASC
                """,
                service.value,
                owner_id,
            )
        return [self._row_to_credential(row) for row in rows]

    async def list_inactive_credentials(
        self, service: Service, owner_id: Optional[str]
    ) -> list[Credential]:
        """
        Standby credentials of a scope in creation order.

        Credentials switched off for a reason stay out until the reason is
        cleared.
        """
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM credentials
                WHERE service = $1
                  AND owner_id IS NOT DISTINCT FROM $2
                  AND NOT is_active
                  AND deactivation_reason IS NULL
                ORDER BY created_at ASC
                """,
                service.value,
                owner_id,
            )
        return [self._row_to_credential(row) for row in rows]

    async def list_quota_exhausted_credentials(self) -> list[Credential]:
        """Credentials switched off by quota exhaustion, across all scopes."""
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM credentials
                WHERE NOT is_active AND deactivation_reason = $1
                ORDER BY created_at ASC
                """,
                DeactivationReason.QUOTA_EXHAUSTED.value,
            )
        return [self._row_to_credential(row) for row in rows]

    async def count_active_credentials(
        self, service: Service, owner_id: Optional[str]
    ) -> int:
        async with self.db_pool.acquire() as conn:
            count = await conn.fetchval(
                """
                SELECT COUNT(*) FROM credentials
                WHERE service = $1 AND owner_id IS NOT DISTINCT FROM $2 AND is_active
                """,
                service.value,
                owner_id,
            )
        return count

    async def activate_credential(self, credential_id: UUID) -> bool:
        """Switch a standby credential on."""
        async with self.db_pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE credentials
                SET is_active = TRUE, updated_at = now()
                WHERE id = $1 AND NOT is_active AND deactivation_reason IS NULL
                """,
                credential_id,
            )
        return _affected(result) > 0

    async def deactivate_credential(
        self, credential_id: UUID, reason: DeactivationReason
    ) -> bool:
        """Switch an active credential off. Only one concurrent caller wins."""
        async with self.db_pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE credentials
                SET is_active = FALSE,
                    deactivation_reason = $1,
                    health_status = $2,
                    updated_at = now()
                WHERE id = $3 AND is_active
                """,
                reason.value,
                CredentialHealth.ERROR.value,
                credential_id,
            )
        return _affected(result) > 0

    async def reactivate_credential(
        self, credential_id: UUID, activate: bool = True, reset_usage: bool = True
    ) -> bool:
        """
        Clear the exhaustion of a credential deactivated by running out of quota.

        With ``reset_usage`` the credential starts a new quota period. With
        ``activate=False`` it stays inactive as a standby the rotator can fail
        over to.
        """
        async with self.db_pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE credentials
                SET is_active = $4,
                    quota_used = CASE WHEN $5 THEN 0 ELSE quota_used END,
                    deactivation_reason = NULL,
                    health_status = $1,
                    quota_resets_at = NULL,
                    updated_at = now()
                WHERE id = $2 AND NOT is_active AND deactivation_reason = $3
                """,
                CredentialHealth.UNKNOWN.value,
                credential_id,
                DeactivationReason.QUOTA_EXHAUSTED.value,
                activate,
                reset_usage,
            )
        return _affected(result) > 0

    async def increment_credential_usage(
        self, credential_id: UUID, units: int, now: datetime
    ) -> Credential:
        """Atomically add ``units`` to a credential's quota usage."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE credentials
                SET quota_used = quota_used + $1,
                    last_used_at = $2,
                    health_status = CASE
                        WHEN quota_limit <= 0 THEN 'unknown'
                        WHEN quota_used + $1 >= quota_limit THEN 'error'
                        WHEN (quota_used + $1) * 4 >= quota_limit * 3 THEN 'warning'
                        ELSE 'healthy'
                    END,
                    updated_at = now()
                WHERE id = $3
                RETURNING *
                """,
                units,
                now,
                credential_id,
            )
        if not row:
            raise ValueError(f"Credential {credential_id} not found")
        return self._row_to_credential(row)

    async def record_daily_usage(
        self,
        credential_id: UUID,
        day: date,
        units: int,
        successful: bool,
        now: datetime,
    ) -> None:
        """Upsert the per-day usage row of a credential."""
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO credential_usage (
                    credential_id, date, requests_made, requests_successful,
                    requests_failed, units_used, last_request_at
                ) VALUES ($1, $2, 1, $3, $4, $5, $6)
                ON CONFLICT (credential_id, date) DO UPDATE
                SET requests_made = credential_usage.requests_made + 1,
                    requests_successful = credential_usage.requests_successful + $3,
                    requests_failed = credential_usage.requests_failed + $4,
                    units_used = credential_usage.units_used + $5,
                    last_request_at = $6
                """,
                credential_id,
                day,
                1 if successful else 0,
                0 if successful else 1,
                units,
                now,
            )

    async def get_daily_requests(self, credential_id: UUID, day: date) -> int:
        """Requests made by a credential on ``day``; 0 when nothing is recorded."""
        async with self.db_pool.acquire() as conn:
            count = await conn.fetchval(
                """
                SELECT requests_made FROM credential_usage
                WHERE credential_id = $1 AND date = $2
                """,
                credential_id,
                day,
            )
        return count or 0

    # Keyword tasks

    async def list_due_keyword_tasks(self, today: date) -> list[KeywordTask]:
        """Active tasks not yet checked on ``today``, by owner then creation time."""
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM keyword_tasks
                WHERE is_active
                  AND (last_check_date IS NULL OR last_check_date <> $1)
                ORDER BY owner_id ASC, created_at ASC
                """,
                today,
            )
        return [self._row_to_keyword_task(row) for row in rows]

    async def record_rank_result(
        self, task_id: UUID, result: RankResult, check_date: date
    ) -> None:
        """Persist a rank check and mark the task as checked for ``check_date``."""
        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO rank_history (
                        id, task_id, check_date, position, url, found,
                        total_results, units_consumed
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                    ON CONFLICT (task_id, check_date) DO UPDATE
                    SET position = EXCLUDED.position,
                        url = EXCLUDED.url,
                        found = EXCLUDED.found,
                        total_results = EXCLUDED.total_results,
                        units_consumed = EXCLUDED.units_consumed
                    """,
                    uuid4(),
                    task_id,
                    check_date,
                    result.position,
                    result.url,
                    result.found,
                    result.total_results,
                    result.units_consumed,
                )
                await conn.execute(
                    "UPDATE keyword_tasks SET last_check_date = $1 WHERE id = $2",
                    check_date,
                    task_id,
                )

    async def count_active_keyword_tasks(self) -> int:
        async with self.db_pool.acquire() as conn:
            return await conn.fetchval("SELECT COUNT(*) FROM keyword_tasks WHERE is_active")

    async def count_due_keyword_tasks(self, today: date) -> int:
        async with self.db_pool.acquire() as conn:
            return await conn.fetchval(
                """
                SELECT COUNT(*) FROM keyword_tasks
                WHERE is_active
                  AND (last_check_date IS NULL OR last_check_date <> $1)
                """,
                today,
            )

    async def count_rank_checks_on(self, day: date) -> int:
        async with self.db_pool.acquire() as conn:
            return await conn.fetchval(
                "SELECT COUNT(*) FROM rank_history WHERE check_date = $1", day
            )

    # Notifications

    async def insert_notification(
        self, type: str, owner_id: Optional[str], message: str
    ) -> None:
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO notifications (id, owner_id, type, message)
                VALUES ($1, $2, $3, $4)
                """,
                uuid4(),
                owner_id,
                type,
                message,
            )

    async def delete_notifications_older_than(self, type: str, cutoff: datetime) -> int:
        async with self.db_pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM notifications WHERE type = $1 AND created_at < $2",
                type,
                cutoff,
            )
        return _affected(result)

    # Sweep locks

    async def claim_sweep(
        self, name: str, holder: str, now: datetime, stale_before: datetime
    ) -> bool:
        """
        Claim a named sweep lock.

        Succeeds when the lock row is new, released, or older than
        ``stale_before``.
        """
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO sweep_locks (name, locked_by, locked_at)
                VALUES ($1, $2, $3)
                ON CONFLICT (name) DO UPDATE
                SET locked_by = EXCLUDED.locked_by, locked_at = EXCLUDED.locked_at
                WHERE sweep_locks.locked_by IS NULL OR sweep_locks.locked_at < $4
                RETURNING name
                """,
                name,
                holder,
                now,
                stale_before,
            )
        return row is not None

    async def release_sweep(self, name: str, holder: str) -> None:
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE sweep_locks
                SET locked_by = NULL, locked_at = NULL
                WHERE name = $1 AND locked_by = $2
                """,
                name,
                holder,
            )

    def _row_to_job(self, row: asyncpg.Record) -> Job:
        """Convert a database row to a Job model."""
        return Job(
            id=row["id"],
            owner_id=row["owner_id"],
            name=row["name"],
            status=JobStatus(row["status"]),
            total_urls=row["total_urls"],
            processed_urls=row["processed_urls"],
            successful_urls=row["successful_urls"],
            failed_urls=row["failed_urls"],
            progress_percentage=row["progress_percentage"],
            locked_by=row["locked_by"],
            locked_at=row["locked_at"],
            error_message=row["error_message"],
            schedule_type=row["schedule_type"],
            next_run_at=row["next_run_at"],
            created_at=row["created_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_submission(self, row: asyncpg.Record) -> UrlSubmission:
        return UrlSubmission(
            id=row["id"],
            job_id=row["job_id"],
            url=row["url"],
            status=row["status"],
            retry_count=row["retry_count"],
            credential_id=row["credential_id"],
            error_message=row["error_message"],
            run_number=row["run_number"],
            created_at=row["created_at"],
            submitted_at=row["submitted_at"],
        )

    def _row_to_credential(self, row: asyncpg.Record) -> Credential:
        return Credential(
            id=row["id"],
            service=row["service"],
            name=row["name"],
            secret=row["secret"],
            owner_id=row["owner_id"],
            quota_limit=row["quota_limit"],
            quota_used=row["quota_used"],
            is_active=row["is_active"],
            health_status=row["health_status"],
            deactivation_reason=row["deactivation_reason"],
            quota_resets_at=row["quota_resets_at"],
            last_used_at=row["last_used_at"],
            created_at=row["created_at"],
        )

    def _row_to_keyword_task(self, row: asyncpg.Record) -> KeywordTask:
        return KeywordTask(
            id=row["id"],
            owner_id=row["owner_id"],
            keyword=row["keyword"],
            domain=row["domain"],
            device_type=row["device_type"],
            country_code=row["country_code"],
            is_active=row["is_active"],
            last_check_date=row["last_check_date"],
            created_at=row["created_at"],
        )
