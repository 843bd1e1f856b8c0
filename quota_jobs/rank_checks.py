"""Daily keyword rank checks."""

import asyncio
import logging
import time
from collections import OrderedDict
from typing import Awaitable, Callable, Dict, List, Optional

from quota_jobs.batching import BatchExecutor
from quota_jobs.clients import RankDataClient
from quota_jobs.errors import JobAlreadyRunningError, NoCredentialAvailableError, QuotaExhaustedError
from quota_jobs.models import BatchResult, Credential, KeywordTask, RankCheckStats, RankResult, utcnow
from quota_jobs.rotator import CredentialRotator, CredentialScope
from quota_jobs.store import QuotaJobsStore


def group_by_owner(tasks: List[KeywordTask]) -> "OrderedDict[str, List[KeywordTask]]":
    """Group tasks per owner, keeping first-seen owner order and task order."""
    groups: "OrderedDict[str, List[KeywordTask]]" = OrderedDict()
    for task in tasks:
        groups.setdefault(task.owner_id, []).append(task)
    return groups


class RankCheckBatchProcessor:
    """
    Checks every due keyword task once a day, one owner at a time.

    Rank-data credentials are a site-wide pool shared by every owner, so
    each owner only gets as many checks as the active credential can still
    afford when its turn comes.
    """

    def __init__(
        self,
        store: QuotaJobsStore,
        rotator: CredentialRotator,
        client: RankDataClient,
        batch_executor: Optional[BatchExecutor] = None,
        batch_size: int = 5,
        batch_delay_seconds: float = 2.0,
        owner_delay_seconds: float = 5.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.rotator = rotator
        self.client = client
        self.logger = logger or logging.getLogger(__name__)
        self.batch_executor = batch_executor or BatchExecutor(sleep=sleep, logger=self.logger)
        self.batch_size = batch_size
        self.batch_delay_seconds = batch_delay_seconds
        self.owner_delay_seconds = owner_delay_seconds
        self._sleep = sleep
        self.site_scope = CredentialScope()

    async def process_daily_rank_checks(self) -> BatchResult:
        """Check all due tasks, owner by owner, within the available quota."""
        today = utcnow().date()
        tasks = await self.store.list_due_keyword_tasks(today)
        if not tasks:
            self.logger.info("No keyword tasks due for rank checks")
            return BatchResult()

        groups = group_by_owner(tasks)
        self.logger.info(
            f"Processing {len(tasks)} due keyword tasks for {len(groups)} owners"
        )

        total = BatchResult()
        for index, (owner_id, owner_tasks) in enumerate(groups.items()):
            if index > 0:
                await self._sleep(self.owner_delay_seconds)

            try:
                result = await self._process_owner(owner_id, owner_tasks, today)
            except Exception as e:
                self.logger.error(
                    f"Rank checks failed for owner {owner_id}: {str(e)}", exc_info=True
                )
                result = BatchResult(errors=len(owner_tasks))

            total += result

        self.logger.info(
            f"Rank checks finished: {total.processed} processed, {total.errors} errors"
        )
        return total

    async def _process_owner(
        self, owner_id: str, tasks: List[KeywordTask], today
    ) -> BatchResult:
        available = await self.rotator.available_requests(self.site_scope)
        if available <= 0:
            self.logger.warning(
                f"No rank-check quota left, skipping {len(tasks)} tasks for owner {owner_id}"
            )
            return BatchResult()

        if available < len(tasks):
            self.logger.warning(
                f"Quota allows {available} of {len(tasks)} rank checks for owner {owner_id}; "
                f"{len(tasks) - available} deferred to the next cycle"
            )
            tasks = tasks[:available]

        async def check(task: KeywordTask) -> RankResult:
            return await self._check_task(task, today)

        return await self.batch_executor.run_batches(
            tasks, self.batch_size, check, self.batch_delay_seconds
        )

    async def _check_task(self, task: KeywordTask, today) -> RankResult:
        credential = await self.rotator.get_active_credential(self.site_scope)
        if credential is None:
            raise NoCredentialAvailableError(str(self.site_scope))

        try:
            result = await self.client.check_rank(
                task.keyword, task.domain, task.device_type, task.country_code, credential
            )
        except QuotaExhaustedError:
            await self._record_failure(credential)
            await self.rotator.mark_exhausted(credential)
            raise
        except Exception:
            await self._record_failure(credential)
            raise

        units = result.units_consumed or self.rotator.request_cost
        await self.rotator.record_usage(credential.id, units)
        await self.store.record_rank_result(task.id, result, today)
        return result

    async def _record_failure(self, credential: Credential) -> None:
        try:
            await self.rotator.record_failure(credential.id)
        except Exception as e:
            self.logger.error(
                f"Failed to record failed call for credential {credential.id}: {str(e)}",
                exc_info=True,
            )

    async def get_processing_stats(self) -> RankCheckStats:
        """Progress of today's checks. Read-only."""
        today = utcnow().date()
        total = await self.store.count_active_keyword_tasks()
        pending = await self.store.count_due_keyword_tasks(today)
        checked = await self.store.count_rank_checks_on(today)
        completion = round(checked / total * 100, 2) if total else 0.0
        return RankCheckStats(
            total_keywords=total,
            pending_checks=pending,
            checked_today=checked,
            completion_rate=completion,
        )


class DailyRankCheckJob:
    """Schedulable wrapper that keeps daily rank-check runs from overlapping."""

    def __init__(
        self, processor: RankCheckBatchProcessor, logger: Optional[logging.Logger] = None
    ):
        self.processor = processor
        self.logger = logger or logging.getLogger(__name__)
        self.is_running = False
        self.last_run_at = None
        self.last_result: Optional[BatchResult] = None

    async def run(self, manual: bool = False) -> Optional[BatchResult]:
        """
        Execute one rank-check cycle.

        A scheduled run that overlaps a running one is skipped; a manual
        one raises JobAlreadyRunningError.
        """
        if self.is_running:
            if manual:
                raise JobAlreadyRunningError("Daily rank check is already running")
            self.logger.warning("Daily rank check still running, skipping this tick")
            return None

        self.is_running = True
        started = time.monotonic()
        try:
            before = await self.processor.get_processing_stats()
            self.logger.info(
                f"Starting {'manual' if manual else 'scheduled'} rank check: "
                f"{before.pending_checks} of {before.total_keywords} keywords due"
            )

            result = await self.processor.process_daily_rank_checks()

            after = await self.processor.get_processing_stats()
            self.logger.info(
                f"Rank check finished in {time.monotonic() - started:.1f}s: "
                f"{result.processed} processed, {result.errors} errors, "
                f"completion {after.completion_rate}%"
            )
            self.last_result = result
            return result
        finally:
            self.last_run_at = utcnow()
            self.is_running = False

    def status(self) -> Dict[str, object]:
        return {
            "is_running": self.is_running,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_result": self.last_result.model_dump() if self.last_result else None,
        }
