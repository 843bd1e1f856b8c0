"""CLI entrypoint and programmatic interface for the background worker."""

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import Optional

import aiohttp
import asyncpg

from quota_jobs.clients import IndexingApiClient, RankDataClient
from quota_jobs.config import QuotaJobsConfig
from quota_jobs.indexing import IndexingJobProcessor
from quota_jobs.locking import InFlightJobs, JobLockManager
from quota_jobs.models import Service
from quota_jobs.notifier import LoggingProgressNotifier, WebhookProgressNotifier
from quota_jobs.orchestrator import BackgroundServices, JobMonitor
from quota_jobs.quota_reset import QuotaResetMonitor
from quota_jobs.rank_checks import DailyRankCheckJob, RankCheckBatchProcessor
from quota_jobs.rotator import CredentialRotator
from quota_jobs.store import QuotaJobsStore

RUN_ONCE_CHOICES = ("rank-check", "job-monitor", "quota-reset")


def setup_logging():
    """Setup logging configuration."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


async def create_db_pool(config: QuotaJobsConfig):
    """Create database connection pool."""
    return await asyncpg.create_pool(config.db_dsn, min_size=2, max_size=10)


def build_services(
    config: QuotaJobsConfig,
    db_pool,
    session: Optional[aiohttp.ClientSession] = None,
    logger: Optional[logging.Logger] = None,
) -> BackgroundServices:
    """Wire the store, rotators, clients and processors into BackgroundServices."""
    store = QuotaJobsStore(db_pool)
    locks = JobLockManager(store, logger=logger)

    indexing_rotator = CredentialRotator(
        store, Service.INDEXING, config.indexing_request_cost, logger=logger
    )
    rank_rotator = CredentialRotator(
        store, Service.RANK_DATA, config.rank_request_cost, logger=logger
    )

    if config.notifier_webhook_url:
        notifier = WebhookProgressNotifier(
            config.notifier_webhook_url,
            session=session,
            auth_token=config.ops_auth_token,
        )
    else:
        notifier = LoggingProgressNotifier(logger)

    indexing_processor = IndexingJobProcessor(
        store,
        locks,
        indexing_rotator,
        IndexingApiClient(
            config.indexing_api_url,
            session=session,
            timeout=config.http_timeout_seconds,
            logger=logger,
        ),
        notifier=notifier,
        in_flight=InFlightJobs(),
        batch_size=config.indexing_batch_size,
        batch_delay_seconds=config.indexing_batch_delay_seconds,
        pending_job_limit=config.job_monitor_batch_limit,
        logger=logger,
    )

    rank_processor = RankCheckBatchProcessor(
        store,
        rank_rotator,
        RankDataClient(
            config.rank_api_url,
            default_units=config.rank_request_cost,
            session=session,
            timeout=config.http_timeout_seconds,
            logger=logger,
        ),
        batch_size=config.rank_batch_size,
        batch_delay_seconds=config.rank_batch_delay_seconds,
        owner_delay_seconds=config.rank_owner_delay_seconds,
        logger=logger,
    )

    quota_monitor = QuotaResetMonitor(
        store,
        locks,
        usage_threshold=config.reactivation_usage_threshold,
        sweep_lock_ttl_seconds=config.sweep_lock_ttl_seconds,
        reset_timezone=config.reset_timezone,
        logger=logger,
    )

    return BackgroundServices(
        rank_job=DailyRankCheckJob(rank_processor, logger),
        quota_monitor=quota_monitor,
        job_monitor=JobMonitor(
            store, indexing_processor, lock_ttl_seconds=config.lock_ttl_seconds, logger=logger
        ),
        rank_rotator=rank_rotator,
        logger=logger,
    )


async def run_once(services: BackgroundServices, task: str):
    """Run a single manual trigger and return its result."""
    if task == "rank-check":
        return await services.trigger_manual_rank_check()
    if task == "job-monitor":
        return await services.trigger_job_monitor()
    if task == "quota-reset":
        return await services.trigger_quota_reset_check()
    raise ValueError(f"Unknown task {task!r}, expected one of {', '.join(RUN_ONCE_CHOICES)}")


async def run_services(
    config: Optional[QuotaJobsConfig] = None,
    db_pool=None,
    logger: Optional[logging.Logger] = None,
    shutdown_event: Optional[asyncio.Event] = None,
    task: Optional[str] = None,
):
    """
    Run the background services programmatically.

    Args:
        config: QuotaJobsConfig instance. If None, will load from environment.
        db_pool: Database connection pool. If None, will create from config.
        logger: Logger instance. If None, will create default logger.
        shutdown_event: Event that stops the services when set.
        task: Run only this manual trigger (see RUN_ONCE_CHOICES) and return.
    """
    if config is None:
        config = QuotaJobsConfig.from_env()

    if logger is None:
        logger = logging.getLogger(__name__)

    if shutdown_event is None:
        shutdown_event = asyncio.Event()

    db_pool_provided = db_pool is not None
    if db_pool is None:
        db_pool = await create_db_pool(config)

    try:
        async with aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=config.http_timeout_seconds)
        ) as session:
            services = build_services(config, db_pool, session=session, logger=logger)

            if task is not None:
                result = await run_once(services, task)
                logger.info(f"{task} finished: {result}")
                return result

            await services.initialize()
            try:
                await shutdown_event.wait()
            finally:
                await services.shutdown()
    finally:
        if not db_pool_provided and db_pool:
            await db_pool.close()


def main():
    """Main entrypoint for the background worker."""
    setup_logging()
    logger = logging.getLogger(__name__)

    parser = argparse.ArgumentParser(description="Quota-aware indexing and rank-check worker")
    parser.add_argument(
        "--run-once",
        choices=RUN_ONCE_CHOICES,
        help="Run a single task immediately and exit",
    )

    args = parser.parse_args()

    try:
        config = QuotaJobsConfig.from_env()
    except Exception as e:
        logger.error(f"Failed to load config: {e}")
        sys.exit(1)

    async def run():
        """Async main function."""
        shutdown_event = asyncio.Event()
        loop = asyncio.get_running_loop()

        def signal_handler(signum):
            logger.info(f"Received signal {signum}, shutting down...")
            shutdown_event.set()

        for signum in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(signum, signal_handler, signum)

        try:
            logger.info("Starting quota jobs worker...")
            await run_services(
                config=config,
                logger=logger,
                shutdown_event=shutdown_event,
                task=args.run_once,
            )
        except Exception as e:
            logger.error(f"Fatal error in worker: {e}", exc_info=True)
            sys.exit(1)

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")


if __name__ == "__main__":
    main()
