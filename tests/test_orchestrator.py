"""Tests for background services and the job monitor."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from fakes import no_sleep

from quota_jobs.indexing import IndexingJobProcessor
from quota_jobs.models import BatchResult, JobStatus, Service, utcnow
from quota_jobs.orchestrator import (
    DAILY_RANK_CHECK,
    JOB_MONITOR,
    QUOTA_RESET,
    QUOTA_RESET_FREQUENT,
    BackgroundServices,
    JobMonitor,
)
from quota_jobs.quota_reset import QuotaResetMonitor
from quota_jobs.rank_checks import DailyRankCheckJob, RankCheckBatchProcessor
from quota_jobs.triggers import TriggerRegistry


@pytest.fixture
def job_processor(store, locks, indexing_rotator, indexing_client, executor):
    return IndexingJobProcessor(
        store, locks, indexing_rotator, indexing_client, batch_executor=executor
    )


@pytest.fixture
def job_monitor(store, job_processor):
    return JobMonitor(store, job_processor, lock_ttl_seconds=600)


@pytest.fixture
def services(store, locks, rank_rotator, rank_client, job_monitor):
    rank_job = DailyRankCheckJob(
        RankCheckBatchProcessor(store, rank_rotator, rank_client, sleep=no_sleep)
    )
    return BackgroundServices(
        rank_job,
        QuotaResetMonitor(store, locks),
        job_monitor,
        rank_rotator,
        triggers=TriggerRegistry(),
    )


@pytest.mark.asyncio
async def test_initialize_registers_each_trigger_once(services):
    await services.initialize()
    await services.initialize()

    assert services.is_initialized
    assert sorted(services.triggers.callbacks) == sorted(
        [DAILY_RANK_CHECK, QUOTA_RESET, QUOTA_RESET_FREQUENT, JOB_MONITOR]
    )


@pytest.mark.asyncio
async def test_initialize_after_shutdown(services):
    await services.initialize()
    await services.shutdown()
    assert not services.is_initialized

    await services.initialize()
    assert services.is_initialized
    assert len(services.triggers.triggers) == 4


@pytest.mark.asyncio
async def test_status_before_and_after_initialize(services):
    status = services.get_status()
    assert status["initialized"] is False
    assert status["services"][DAILY_RANK_CHECK] == {"registered": False, "running": False}

    await services.initialize()

    status = services.get_status()
    assert status["initialized"] is True
    assert all(entry["registered"] for entry in status["services"].values())


@pytest.mark.asyncio
async def test_background_services_status(services, store):
    store.add_credential(Service.RANK_DATA, quota_limit=100, is_active=True)
    await services.initialize()

    status = await services.get_background_services_status()

    assert status["service_list"] == sorted(
        [DAILY_RANK_CHECK, QUOTA_RESET, QUOTA_RESET_FREQUENT, JOB_MONITOR]
    )
    assert status["quota_health"]["status"] == "healthy"
    assert status["rank_check"]["is_running"] is False
    assert status["triggers"][DAILY_RANK_CHECK]["schedule"] == "0 2 * * *"
    assert status["uptime_seconds"] >= 0


@pytest.mark.asyncio
async def test_manual_triggers_work_without_initialize(services, store):
    store.add_credential(Service.RANK_DATA, quota_limit=100, is_active=True)
    store.add_keyword_task("owner-1", "shoes")

    assert await services.trigger_manual_rank_check() == BatchResult(processed=1, errors=0)
    assert await services.trigger_job_monitor() == {"reverted": 0, "completed": 0}
    assert await services.trigger_quota_reset_check() == {
        "reactivate_credentials": 0,
        "resume_paused_jobs": 0,
        "cleanup_old_notifications": 0,
    }
    assert not services.is_initialized


@pytest.mark.asyncio
async def test_frequent_quota_reset_only_runs_in_window(services):
    services.quota_monitor.check_and_resume = AsyncMock(return_value={})
    await services.initialize()

    services.quota_monitor.in_reset_window = lambda: False
    await services.triggers.fire(QUOTA_RESET_FREQUENT)
    services.quota_monitor.check_and_resume.assert_not_called()

    services.quota_monitor.in_reset_window = lambda: True
    await services.triggers.fire(QUOTA_RESET_FREQUENT)
    services.quota_monitor.check_and_resume.assert_awaited_once()

    await services.triggers.fire(QUOTA_RESET)
    assert services.quota_monitor.check_and_resume.await_count == 2


@pytest.mark.asyncio
async def test_daily_trigger_runs_rank_checks(services, store, rank_client):
    store.add_credential(Service.RANK_DATA, quota_limit=100, is_active=True)
    store.add_keyword_task("owner-1", "shoes")
    await services.initialize()

    await services.triggers.fire(DAILY_RANK_CHECK)

    assert rank_client.calls == ["shoes"]
    assert services.rank_job.last_result == BatchResult(processed=1, errors=0)


@pytest.mark.asyncio
async def test_job_monitor_recovers_stale_locks(store, job_monitor):
    store.add_credential(quota_limit=100, is_active=True, owner_id="user-1")
    stale = store.add_job(
        "user-1",
        ["https://example.com/a"],
        status=JobStatus.RUNNING,
        locked_by="worker-dead",
        locked_at=utcnow() - timedelta(hours=2),
    )
    fresh = store.add_job(
        "user-1",
        ["https://example.com/b"],
        status=JobStatus.RUNNING,
        locked_by="worker-alive",
        locked_at=utcnow(),
    )

    result = await job_monitor.run()

    assert result == {"reverted": 1, "completed": 1}
    assert store.jobs[stale.id].status == JobStatus.COMPLETED
    assert store.jobs[fresh.id].locked_by == "worker-alive"
    assert job_monitor.is_running is False


@pytest.mark.asyncio
async def test_job_monitor_skips_overlapping_tick(job_monitor):
    job_monitor.is_running = True
    assert await job_monitor.run() is None
