"""Quota-aware indexing and rank-check job processing."""

from quota_jobs.batching import BatchExecutor
from quota_jobs.clients import IndexingApiClient, RankDataClient
from quota_jobs.config import QuotaJobsConfig
from quota_jobs.ddl import QUOTA_JOBS_DDL
from quota_jobs.errors import (
    AuthTokenError,
    JobAlreadyRunningError,
    JobNotFoundError,
    NoCredentialAvailableError,
    QuotaExhaustedError,
    QuotaJobsError,
    RemoteHttpError,
)
from quota_jobs.indexing import IndexingJobProcessor
from quota_jobs.ledger import QuotaLedger
from quota_jobs.locking import InFlightJobs, JobLockManager
from quota_jobs.models import (
    BatchResult,
    Credential,
    Job,
    JobStatus,
    JobUpdate,
    KeywordTask,
    RankResult,
    Service,
    SubmissionStatus,
    UrlSubmission,
)
from quota_jobs.notifier import (
    LoggingProgressNotifier,
    ProgressNotifier,
    WebhookProgressNotifier,
    safe_broadcast,
)
from quota_jobs.orchestrator import BackgroundServices, JobMonitor
from quota_jobs.quota_reset import QuotaResetMonitor
from quota_jobs.rank_checks import DailyRankCheckJob, RankCheckBatchProcessor
from quota_jobs.rotator import CredentialRotator, CredentialScope
from quota_jobs.store import QuotaJobsStore
from quota_jobs.triggers import AsyncioTriggerRegistry, CronSpec, TriggerRegistry

__version__ = "0.1.0"

__all__ = [
    "BatchExecutor",
    "IndexingApiClient",
    "RankDataClient",
    "QuotaJobsConfig",
    "QUOTA_JOBS_DDL",
    "AuthTokenError",
    "JobAlreadyRunningError",
    "JobNotFoundError",
    "NoCredentialAvailableError",
    "QuotaExhaustedError",
    "QuotaJobsError",
    "RemoteHttpError",
    "IndexingJobProcessor",
    "QuotaLedger",
    "InFlightJobs",
    "JobLockManager",
    "BatchResult",
    "Credential",
    "Job",
    "JobStatus",
    "JobUpdate",
    "KeywordTask",
    "RankResult",
    "Service",
    "SubmissionStatus",
    "UrlSubmission",
    "LoggingProgressNotifier",
    "ProgressNotifier",
    "WebhookProgressNotifier",
    "safe_broadcast",
    "BackgroundServices",
    "JobMonitor",
    "QuotaResetMonitor",
    "DailyRankCheckJob",
    "RankCheckBatchProcessor",
    "CredentialRotator",
    "CredentialScope",
    "QuotaJobsStore",
    "AsyncioTriggerRegistry",
    "CronSpec",
    "TriggerRegistry",
]
