"""Unit tests for the asyncpg store against a mocked pool."""

from datetime import date, datetime, timezone
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest

from quota_jobs.errors import JobNotFoundError
from quota_jobs.models import (
    CredentialHealth,
    DeactivationReason,
    JobStatus,
    RankResult,
    ScheduleType,
    Service,
)
from quota_jobs.store import QuotaJobsStore, _affected

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def conn():
    """Mocked connection; transaction() works as an async context manager."""
    connection = AsyncMock()
    connection.transaction = MagicMock()
    return connection


@pytest.fixture
def store(conn):
    pool = MagicMock()
    pool.acquire.return_value.__aenter__.return_value = conn
    return QuotaJobsStore(pool)


def job_row(**overrides):
    row = {
        "id": uuid4(),
        "owner_id": "user-1",
        "name": "Sitemap",
        "status": "pending",
        "total_urls": 3,
        "processed_urls": 0,
        "successful_urls": 0,
        "failed_urls": 0,
        "progress_percentage": 0.0,
        "locked_by": None,
        "locked_at": None,
        "error_message": None,
        "schedule_type": "daily",
        "next_run_at": None,
        "created_at": NOW,
        "started_at": None,
        "completed_at": None,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def credential_row(**overrides):
    row = {
        "id": uuid4(),
        "service": "rank_data",
        "name": "primary",
        "secret": "secret",
        "owner_id": None,
        "quota_limit": 100,
        "quota_used": 80,
        "is_active": True,
        "health_status": "warning",
        "deactivation_reason": None,
        "quota_resets_at": None,
        "last_used_at": NOW,
        "created_at": NOW,
    }
    row.update(overrides)
    return row


def test_affected():
    assert _affected("UPDATE 5") == 5
    assert _affected("DELETE 0") == 0
    assert _affected(None) == 0


@pytest.mark.asyncio
async def test_claim_job_is_conditional_update(store, conn):
    job_id = uuid4()
    conn.fetchrow.return_value = {"id": job_id}

    assert await store.claim_job(job_id, "worker-a", NOW)

    query, *args = conn.fetchrow.call_args.args
    assert "locked_by IS NULL OR status <> $3" in query
    assert "RETURNING id" in query
    assert args == ["worker-a", NOW, "running", job_id]


@pytest.mark.asyncio
async def test_claim_job_lost(store, conn):
    conn.fetchrow.return_value = None
    assert not await store.claim_job(uuid4(), "worker-a", NOW)


@pytest.mark.asyncio
async def test_get_job_maps_row(store, conn):
    row = job_row(status="failed", error_message="quota exhausted")
    conn.fetchrow.return_value = row

    job = await store.get_job(row["id"])

    assert job.id == row["id"]
    assert job.status == JobStatus.FAILED
    assert job.schedule_type == ScheduleType.DAILY
    assert job.error_message == "quota exhausted"


@pytest.mark.asyncio
async def test_get_job_not_found(store, conn):
    conn.fetchrow.return_value = None
    with pytest.raises(JobNotFoundError):
        await store.get_job(uuid4())


@pytest.mark.asyncio
async def test_resume_job_only_from_failed(store, conn):
    conn.execute.return_value = "UPDATE 1"
    assert await store.resume_job(uuid4())

    query, *args = conn.execute.call_args.args
    assert "status = $3" in query
    assert args[0] == "pending"
    assert args[2] == "failed"

    conn.execute.return_value = "UPDATE 0"
    assert not await store.resume_job(uuid4())


@pytest.mark.asyncio
async def test_failed_jobs_matched_case_insensitively(store, conn):
    conn.fetch.return_value = [job_row(status="failed", error_message="API Quota Exhausted")]

    jobs = await store.list_failed_jobs_with_error("quota exhausted")

    query, *args = conn.fetch.call_args.args
    assert "ILIKE" in query
    assert args == ["failed", "%quota exhausted%"]
    assert len(jobs) == 1


@pytest.mark.asyncio
async def test_revert_stale_locks_returns_count(store, conn):
    conn.execute.return_value = "UPDATE 2"
    assert await store.revert_stale_locks(NOW) == 2


@pytest.mark.asyncio
async def test_reschedule_job_clones_latest_run(store, conn):
    job_id = uuid4()
    conn.fetchval.return_value = 1
    conn.fetch.return_value = [{"url": "https://example.com/a"}, {"url": "https://example.com/b"}]

    created = await store.reschedule_job(job_id, NOW)

    assert created == 2
    conn.transaction.assert_called_once()
    inserted = conn.executemany.call_args.args[1]
    assert [(row[1], row[2], row[3], row[4]) for row in inserted] == [
        (job_id, "https://example.com/a", "pending", 2),
        (job_id, "https://example.com/b", "pending", 2),
    ]
    update_args = conn.execute.call_args.args[1:]
    assert update_args == ("pending", 2, NOW, job_id)


@pytest.mark.asyncio
async def test_active_credential_lookup_handles_site_scope(store, conn):
    conn.fetchrow.return_value = credential_row()

    credential = await store.get_active_credential(Service.RANK_DATA, None)

    query, *args = conn.fetchrow.call_args.args
    assert "owner_id IS NOT DISTINCT FROM $2" in query
    assert args == ["rank_data", None]
    assert credential.service == Service.RANK_DATA
    assert credential.health_status == CredentialHealth.WARNING
    assert credential.remaining == 20


@pytest.mark.asyncio
async def test_no_active_credential(store, conn):
    conn.fetchrow.return_value = None
    assert await store.get_active_credential(Service.INDEXING, "user-1") is None


@pytest.mark.asyncio
async def test_deactivate_credential_only_when_active(store, conn):
    conn.execute.return_value = "UPDATE 0"

    assert not await store.deactivate_credential(uuid4(), DeactivationReason.QUOTA_EXHAUSTED)

    query, *args = conn.execute.call_args.args
    assert "WHERE id = $3 AND is_active" in query
    assert args[:2] == ["quota_exhausted", "error"]


@pytest.mark.asyncio
async def test_reactivate_credential_standby(store, conn):
    conn.execute.return_value = "UPDATE 1"
    credential_id = uuid4()

    assert await store.reactivate_credential(credential_id, activate=False)

    args = conn.execute.call_args.args[1:]
    assert args == ("unknown", credential_id, "quota_exhausted", False, True)


@pytest.mark.asyncio
async def test_reactivate_credential_keeps_usage(store, conn):
    conn.execute.return_value = "UPDATE 1"
    credential_id = uuid4()

    assert await store.reactivate_credential(credential_id, reset_usage=False)

    query, *args = conn.execute.call_args.args
    assert "CASE WHEN $5 THEN 0 ELSE quota_used END" in query
    assert args == ["unknown", credential_id, "quota_exhausted", True, False]


@pytest.mark.asyncio
async def test_successors_are_standby_credentials_only(store, conn):
    conn.fetch.return_value = []
    conn.execute.return_value = "UPDATE 0"

    await store.list_inactive_credentials(Service.INDEXING, "user-1")
    assert "deactivation_reason IS NULL" in conn.fetch.call_args.args[0]
    assert conn.fetch.call_args.args[1:] == ("indexing", "user-1")

    assert not await store.activate_credential(uuid4())
    assert "deactivation_reason IS NULL" in conn.execute.call_args.args[0]


@pytest.mark.asyncio
async def test_increment_usage_is_atomic(store, conn):
    row = credential_row(quota_used=105, health_status="error")
    conn.fetchrow.return_value = row

    credential = await store.increment_credential_usage(row["id"], 10, NOW)

    query = conn.fetchrow.call_args.args[0]
    assert "quota_used = quota_used + $1" in query
    assert credential.quota_used == 105
    assert credential.is_exhausted


@pytest.mark.asyncio
async def test_increment_usage_unknown_credential(store, conn):
    conn.fetchrow.return_value = None
    with pytest.raises(ValueError):
        await store.increment_credential_usage(uuid4(), 1, NOW)


@pytest.mark.asyncio
async def test_record_daily_usage_upserts(store, conn):
    credential_id = uuid4()

    await store.record_daily_usage(credential_id, date(2024, 1, 1), 10, False, NOW)

    query, *args = conn.execute.call_args.args
    assert "ON CONFLICT (credential_id, date) DO UPDATE" in query
    assert args == [credential_id, date(2024, 1, 1), 0, 1, 10, NOW]


@pytest.mark.asyncio
async def test_daily_requests_default_to_zero(store, conn):
    conn.fetchval.return_value = None
    assert await store.get_daily_requests(uuid4(), date(2024, 1, 1)) == 0


@pytest.mark.asyncio
async def test_record_rank_result_in_transaction(store, conn):
    task_id = uuid4()
    result = RankResult(position=3, url="https://example.com/", found=True, total_results=100, units_consumed=10)

    await store.record_rank_result(task_id, result, date(2024, 1, 1))

    conn.transaction.assert_called_once()
    assert conn.execute.await_count == 2
    last_args = conn.execute.call_args.args[1:]
    assert last_args == (date(2024, 1, 1), task_id)


@pytest.mark.asyncio
async def test_list_due_keyword_tasks(store, conn):
    conn.fetch.return_value = [
        {
            "id": uuid4(),
            "owner_id": "user-1",
            "keyword": "shoes",
            "domain": "example.com",
            "device_type": "mobile",
            "country_code": "gb",
            "is_active": True,
            "last_check_date": None,
            "created_at": NOW,
        }
    ]

    tasks = await store.list_due_keyword_tasks(date(2024, 1, 1))

    assert tasks[0].keyword == "shoes"
    assert tasks[0].is_due(date(2024, 1, 1))
    assert "ORDER BY owner_id ASC, created_at ASC" in conn.fetch.call_args.args[0]


@pytest.mark.asyncio
async def test_claim_sweep(store, conn):
    conn.fetchrow.return_value = None
    assert not await store.claim_sweep("quota_reset", "worker-a", NOW, NOW)

    conn.fetchrow.return_value = {"name": "quota_reset"}
    assert await store.claim_sweep("quota_reset", "worker-a", NOW, NOW)
    assert "sweep_locks.locked_at < $4" in conn.fetchrow.call_args.args[0]


@pytest.mark.asyncio
async def test_delete_old_notifications(store, conn):
    conn.execute.return_value = "DELETE 3"
    assert await store.delete_notifications_older_than("quota_exhausted", NOW) == 3
