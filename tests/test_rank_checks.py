"""Tests for daily rank checks."""

from unittest.mock import AsyncMock

import pytest
from fakes import FakeRankClient, no_sleep

from quota_jobs.errors import JobAlreadyRunningError, QuotaExhaustedError
from quota_jobs.models import BatchResult, DeactivationReason, Service, utcnow
from quota_jobs.rank_checks import DailyRankCheckJob, RankCheckBatchProcessor, group_by_owner


def make_processor(store, rotator, client, sleep=no_sleep, **kwargs):
    return RankCheckBatchProcessor(store, rotator, client, sleep=sleep, **kwargs)


def test_group_by_owner_keeps_order(store):
    tasks = [
        store.add_keyword_task("b", "one"),
        store.add_keyword_task("a", "two"),
        store.add_keyword_task("b", "three"),
    ]
    groups = group_by_owner(tasks)
    assert list(groups) == ["b", "a"]
    assert [t.keyword for t in groups["b"]] == ["one", "three"]


@pytest.mark.asyncio
async def test_checks_are_limited_by_available_quota(store, rank_rotator, rank_client):
    """Limit 50 at cost 10 allows 5 of 12 checks; the other 7 stay due."""
    credential = store.add_credential(Service.RANK_DATA, quota_limit=50, is_active=True)
    for i in range(12):
        store.add_keyword_task("owner-1", f"keyword {i}")
    processor = make_processor(store, rank_rotator, rank_client)

    result = await processor.process_daily_rank_checks()

    assert result == BatchResult(processed=5, errors=0)
    assert len(store.rank_history) == 5
    assert len(await store.list_due_keyword_tasks(utcnow().date())) == 7
    assert store.credentials[credential.id].quota_used == 50
    assert store.credentials[credential.id].is_active is False


@pytest.mark.asyncio
async def test_no_quota_skips_all_tasks(store, rank_rotator, rank_client):
    store.add_keyword_task("owner-1", "shoes")
    processor = make_processor(store, rank_rotator, rank_client)

    result = await processor.process_daily_rank_checks()

    assert result == BatchResult(processed=0, errors=0)
    assert rank_client.calls == []


@pytest.mark.asyncio
async def test_no_due_tasks(store, rank_rotator, rank_client):
    store.add_credential(Service.RANK_DATA, quota_limit=100, is_active=True)
    task = store.add_keyword_task("owner-1", "shoes")
    store.keyword_tasks[task.id].last_check_date = utcnow().date()
    processor = make_processor(store, rank_rotator, rank_client)

    assert await processor.process_daily_rank_checks() == BatchResult()
    assert rank_client.calls == []


@pytest.mark.asyncio
async def test_owner_failure_does_not_stop_other_owners(store, rank_rotator, rank_client):
    store.add_credential(Service.RANK_DATA, quota_limit=1000, is_active=True)
    store.add_keyword_task("owner-a", "first")
    store.add_keyword_task("owner-a", "second")
    store.add_keyword_task("owner-b", "third")
    rank_rotator.available_requests = AsyncMock(side_effect=[RuntimeError("db down"), 100])
    processor = make_processor(store, rank_rotator, rank_client)

    result = await processor.process_daily_rank_checks()

    assert result == BatchResult(processed=1, errors=2)
    assert rank_client.calls == ["third"]


@pytest.mark.asyncio
async def test_item_failure_is_counted_and_task_stays_due(store, rank_rotator):
    credential = store.add_credential(Service.RANK_DATA, quota_limit=1000, is_active=True)
    store.add_keyword_task("owner-1", "good")
    bad = store.add_keyword_task("owner-1", "bad")
    processor = make_processor(store, rank_rotator, FakeRankClient(failing={"bad"}))

    result = await processor.process_daily_rank_checks()

    assert result == BatchResult(processed=1, errors=1)
    assert store.keyword_tasks[bad.id].last_check_date is None
    assert store.credentials[credential.id].quota_used == 10
    usage = store.daily_usage[(credential.id, utcnow().date())]
    assert usage["requests_successful"] == 1
    assert usage["requests_failed"] == 1


@pytest.mark.asyncio
async def test_quota_error_from_api_deactivates_credential(store, rank_rotator):
    class ExhaustedClient:
        async def check_rank(self, keyword, domain, device, country, credential):
            raise QuotaExhaustedError("HTTP 402: out of credits", credential_id=credential.id)

    credential = store.add_credential(Service.RANK_DATA, quota_limit=1000, is_active=True)
    store.add_keyword_task("owner-1", "shoes")
    processor = make_processor(store, rank_rotator, ExhaustedClient())

    result = await processor.process_daily_rank_checks()

    assert result == BatchResult(processed=0, errors=1)
    assert store.credentials[credential.id].deactivation_reason == DeactivationReason.QUOTA_EXHAUSTED


@pytest.mark.asyncio
async def test_key_too_low_for_one_check_is_rotated_out(store, rank_rotator, rank_client):
    """An active key with 5 left at cost 10 does not block the run forever."""
    stuck = store.add_credential(Service.RANK_DATA, quota_limit=1000, quota_used=995, is_active=True)
    spare = store.add_credential(Service.RANK_DATA, quota_limit=100)
    store.add_keyword_task("owner-1", "shoes")
    processor = make_processor(store, rank_rotator, rank_client)

    result = await processor.process_daily_rank_checks()

    assert result == BatchResult(processed=1, errors=0)
    assert rank_client.calls == ["shoes"]
    assert store.credentials[stuck.id].is_active is False
    assert store.credentials[stuck.id].deactivation_reason == DeactivationReason.QUOTA_EXHAUSTED
    assert store.credentials[spare.id].is_active is True
    assert store.credentials[spare.id].quota_used == 10


@pytest.mark.asyncio
async def test_standby_key_is_used_when_none_active(store, rank_rotator, rank_client):
    spare = store.add_credential(Service.RANK_DATA, quota_limit=100)
    store.add_keyword_task("owner-1", "shoes")
    store.add_keyword_task("owner-2", "boots")
    processor = make_processor(store, rank_rotator, rank_client)

    result = await processor.process_daily_rank_checks()

    assert result == BatchResult(processed=2, errors=0)
    assert store.credentials[spare.id].is_active is True
    assert store.credentials[spare.id].quota_used == 20


@pytest.mark.asyncio
async def test_units_reported_by_api_are_charged(store, rank_rotator):
    credential = store.add_credential(Service.RANK_DATA, quota_limit=1000, is_active=True)
    store.add_keyword_task("owner-1", "shoes")
    processor = make_processor(store, rank_rotator, FakeRankClient(units=7))

    await processor.process_daily_rank_checks()

    assert store.credentials[credential.id].quota_used == 7


@pytest.mark.asyncio
async def test_delay_between_owners(store, rank_rotator, rank_client, executor):
    store.add_credential(Service.RANK_DATA, quota_limit=1000, is_active=True)
    for owner in ("owner-a", "owner-b", "owner-c"):
        store.add_keyword_task(owner, f"{owner} keyword")
    sleep = AsyncMock()
    processor = make_processor(
        store, rank_rotator, rank_client, sleep=sleep, batch_executor=executor, owner_delay_seconds=5.0
    )

    result = await processor.process_daily_rank_checks()

    assert result.processed == 3
    assert sleep.await_count == 2
    sleep.assert_awaited_with(5.0)


@pytest.mark.asyncio
async def test_processing_stats(store, rank_rotator, rank_client):
    tasks = [store.add_keyword_task("owner-1", f"keyword {i}") for i in range(4)]
    store.add_keyword_task("owner-1", "paused", is_active=False)
    await store.record_rank_result(tasks[0].id, await rank_client.check_rank("x", "example.com", "desktop", "us", None), utcnow().date())
    processor = make_processor(store, rank_rotator, rank_client)

    stats = await processor.get_processing_stats()

    assert stats.total_keywords == 4
    assert stats.pending_checks == 3
    assert stats.checked_today == 1
    assert stats.completion_rate == 25.0


@pytest.mark.asyncio
async def test_daily_job_records_result(store, rank_rotator, rank_client):
    store.add_credential(Service.RANK_DATA, quota_limit=1000, is_active=True)
    store.add_keyword_task("owner-1", "shoes")
    job = DailyRankCheckJob(make_processor(store, rank_rotator, rank_client))

    result = await job.run()

    assert result == BatchResult(processed=1, errors=0)
    status = job.status()
    assert status["is_running"] is False
    assert status["last_run_at"] is not None
    assert status["last_result"] == {"processed": 1, "errors": 0}


@pytest.mark.asyncio
async def test_overlapping_scheduled_run_is_skipped(store, rank_rotator, rank_client):
    processor = make_processor(store, rank_rotator, rank_client)
    processor.process_daily_rank_checks = AsyncMock()
    job = DailyRankCheckJob(processor)
    job.is_running = True

    assert await job.run() is None
    processor.process_daily_rank_checks.assert_not_called()


@pytest.mark.asyncio
async def test_overlapping_manual_run_raises(store, rank_rotator, rank_client):
    job = DailyRankCheckJob(make_processor(store, rank_rotator, rank_client))
    job.is_running = True

    with pytest.raises(JobAlreadyRunningError):
        await job.run(manual=True)


@pytest.mark.asyncio
async def test_running_flag_cleared_after_failure(store, rank_rotator, rank_client):
    processor = make_processor(store, rank_rotator, rank_client)
    processor.process_daily_rank_checks = AsyncMock(side_effect=RuntimeError("boom"))
    job = DailyRankCheckJob(processor)

    with pytest.raises(RuntimeError):
        await job.run()

    assert job.is_running is False
    assert job.last_run_at is not None
